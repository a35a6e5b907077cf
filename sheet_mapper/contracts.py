"""Versioned contracts for sheet-mapper JSON outputs."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any

CONTRACT_VERSIONS = {
    "sheet_mapper.analyze": "1.0.0",
    "sheet_mapper.suggest": "1.0.0",
    "sheet_mapper.convert": "1.0.0",
    "sheet_mapper.evaluate": "1.0.0",
}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def build_contract(name: str) -> dict[str, str]:
    return {"name": name, "version": CONTRACT_VERSIONS[name]}


def build_run_summary(
    *,
    command: str,
    input_path: Path | None = None,
    status: str = "ok",
    output_path: Path | None = None,
    metrics: dict[str, Any] | None = None,
    warnings: list[str] | None = None,
) -> dict[str, Any]:
    return {
        "tool": "sheet-mapper",
        "command": command,
        "status": status,
        "generated_at": utc_now_iso(),
        "input_file": str(input_path) if input_path else None,
        "output_file": str(output_path) if output_path else None,
        "warnings_count": len(warnings or []),
        "warnings": list(warnings or []),
        "metrics": metrics or {},
    }


def with_contract(payload: dict[str, Any], name: str, run_summary: dict[str, Any]) -> dict[str, Any]:
    return {"contract": build_contract(name), **payload, "run_summary": run_summary}
