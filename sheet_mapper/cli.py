from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from sheet_mapper import __version__ as TOOL_VERSION
from sheet_mapper.contracts import build_run_summary, with_contract
from sheet_mapper.errors import InvalidInputError
from sheet_mapper.formula import Evaluator
from sheet_mapper.loader import ALL_FORMATS, LoadedGrid, load_grid
from sheet_mapper.logging_config import setup_logging
from sheet_mapper.mapping import ColumnMapping, apply_mapping, suggest_column_mapping
from sheet_mapper.region_detector import DataSection, analyze_sheet, detect_data_section, extract_records
from sheet_mapper.shared import MIN_DETECTION_CONFIDENCE, Settings, load_settings
from sheet_mapper.writer import write_records

EXIT_SUCCESS = 0
EXIT_COMMAND_ERROR = 1
EXIT_PARSE_FAILED = 2
EXIT_LOW_CONFIDENCE = 3


class CliError(Exception):
    def __init__(self, message: str, code: int = EXIT_COMMAND_ERROR) -> None:
        super().__init__(message)
        self.code = code


class SheetMapperArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:
        raise CliError(message, EXIT_COMMAND_ERROR)


def eprint(message: str) -> None:
    print(message, file=sys.stderr)


def emit_human(message: str, *, quiet: bool = False) -> None:
    if not quiet:
        eprint(message)


def json_dumps(payload: Any) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False, sort_keys=True, default=str)


def write_json(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json_dumps(payload), encoding="utf-8")


def timestamp_token(settings: Settings) -> str:
    if settings.output_stamp:
        return settings.output_stamp
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def default_output_dir(input_path: Path, settings: Settings) -> Path:
    return Path.cwd() / "sheet-mapper-output" / f"{input_path.stem}-{timestamp_token(settings)}"


def classify_backend_exception(exc: Exception) -> int:
    if isinstance(exc, CliError):
        return exc.code
    if isinstance(exc, (ImportError, UnicodeDecodeError)):
        return EXIT_PARSE_FAILED
    if isinstance(exc, FileNotFoundError):
        return EXIT_COMMAND_ERROR
    if isinstance(exc, InvalidInputError):
        return EXIT_COMMAND_ERROR
    if isinstance(exc, ValueError):
        return EXIT_PARSE_FAILED
    return EXIT_COMMAND_ERROR


def configure_logging(args: argparse.Namespace, settings: Settings) -> None:
    if getattr(args, "verbose", False):
        level = "DEBUG"
    elif getattr(args, "quiet", False) or getattr(args, "json", False):
        level = "WARNING"
    else:
        level = settings.log_level
    setup_logging(level)


def require_input(path_text: str) -> Path:
    input_path = Path(path_text)
    if not input_path.exists():
        raise CliError(f"File not found: {input_path}", EXIT_COMMAND_ERROR)
    if input_path.suffix.lower() not in ALL_FORMATS:
        raise CliError(
            f"Unsupported file type '{input_path.suffix or '[missing extension]'}'. "
            f"Supported: {', '.join(sorted(ALL_FORMATS))}",
            EXIT_COMMAND_ERROR,
        )
    return input_path


def load_targets(args: argparse.Namespace) -> list[str]:
    if args.targets and args.targets_file:
        raise CliError("Use either --targets or --targets-file, not both.", EXIT_COMMAND_ERROR)
    if args.targets:
        targets = [item.strip() for item in args.targets.split(",") if item.strip()]
    elif args.targets_file:
        path = Path(args.targets_file)
        if not path.exists():
            raise CliError(f"Targets file not found: {path}", EXIT_COMMAND_ERROR)
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise CliError(f"Targets file is not valid JSON: {exc}", EXIT_COMMAND_ERROR) from exc
        if not isinstance(payload, list) or not all(isinstance(item, str) for item in payload):
            raise CliError("Targets file must contain a JSON list of field names.", EXIT_COMMAND_ERROR)
        targets = [item.strip() for item in payload if item.strip()]
    else:
        raise CliError("One of --targets or --targets-file is required.", EXIT_COMMAND_ERROR)
    if not targets:
        raise CliError("No target fields given.", EXIT_COMMAND_ERROR)
    return targets


def load_row(args: argparse.Namespace) -> dict[str, Any]:
    if args.row and args.row_file:
        raise CliError("Use either --row or --row-file, not both.", EXIT_COMMAND_ERROR)
    raw = args.row
    if args.row_file:
        path = Path(args.row_file)
        if not path.exists():
            raise CliError(f"Row file not found: {path}", EXIT_COMMAND_ERROR)
        raw = path.read_text(encoding="utf-8")
    if not raw:
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise CliError(f"Row is not valid JSON: {exc}", EXIT_COMMAND_ERROR) from exc
    if not isinstance(payload, dict):
        raise CliError("Row must be a JSON object of column -> value.", EXIT_COMMAND_ERROR)
    return payload


def detection_exit_code(section: DataSection, min_confidence: float) -> int:
    if section.confidence < min_confidence:
        return EXIT_LOW_CONFIDENCE
    return EXIT_SUCCESS


# ══════════════════════════════════════════════════════════════════════════════
# RENDERING
# ══════════════════════════════════════════════════════════════════════════════

def render_section_lines(loaded: LoadedGrid, section: DataSection) -> list[str]:
    lines = [
        f"File: {loaded.path}",
        f"Format: {loaded.detected_format}",
    ]
    if loaded.detected_encoding:
        lines.append(f"Encoding: {loaded.detected_encoding}")
    if loaded.sheet_name:
        lines.append(f"Sheet: {loaded.sheet_name}")
    lines.append(f"Grid: {loaded.grid.row_count} rows x {loaded.grid.col_count} columns")
    if section.header_row_index is None:
        lines.append("Table: not detected")
    else:
        lines.extend(
            [
                f"Start cell: {section.start_cell}",
                f"Header row: {section.header_row_index + 1}",
                f"Columns: {section.start_column_index + 1}-{section.end_column_index + 1} ({section.column_count})",
                f"Data rows: {section.data_start_index + 1}-{section.data_end_index + 1} ({section.length})",
            ]
        )
        if section.summary_rows:
            lines.append(f"Summary rows excluded: {', '.join(str(row + 1) for row in section.summary_rows)}")
    lines.append(f"Confidence: {section.confidence:.2f}")
    if section.reason:
        lines.append(f"Reason: {section.reason}")
    return lines


def render_analysis_text(loaded: LoadedGrid, analysis: Any) -> str:
    lines = ["sheet-mapper analyze"] + render_section_lines(loaded, analysis.data_section)
    if analysis.header_analysis.suggested_columns:
        lines.append(f"Headers: {', '.join(analysis.header_analysis.suggested_columns)}")
    for recommendation in analysis.suggestions.recommendations:
        lines.append(f"- {recommendation}")
    for warning in analysis.suggestions.warnings + loaded.warnings:
        lines.append(f"! {warning}")
    return "\n".join(lines) + "\n"


def render_suggestion_text(suggestion: Any, targets: list[str]) -> str:
    lines = ["sheet-mapper suggest", f"Threshold: {suggestion.threshold:g}"]
    for target in targets:
        if target in suggestion.mapping:
            lines.append(
                f"  {target} <- {suggestion.mapping[target]} ({suggestion.confidence_scores[target]:.1f}%)"
            )
        else:
            lines.append(f"  {target} <- [unmapped]")
    lines.append(f"Mapped {suggestion.assignment_count} of {len(targets)} target fields")
    return "\n".join(lines) + "\n"


# ══════════════════════════════════════════════════════════════════════════════
# COMMANDS
# ══════════════════════════════════════════════════════════════════════════════

def build_parser() -> argparse.ArgumentParser:
    parser = SheetMapperArgumentParser(
        prog="sheet-mapper",
        description="Detect the table in partner spreadsheets and map it onto a fixed schema.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    analyze = subparsers.add_parser("analyze", help="Detect the data section and analyse the sheet.")
    analyze.add_argument("input", help="Input file path")
    analyze.add_argument("--sheet", dest="sheet_name", help="Workbook sheet name")
    analyze.add_argument("--keep-empty-rows", action="store_true", help="Do not drop fully empty rows before detection")
    analyze.add_argument("--output", help="Also write the JSON analysis to this path")
    analyze.add_argument("--min-confidence", type=float, default=MIN_DETECTION_CONFIDENCE, help="Exit 3 below this detection confidence")
    analyze.add_argument("--json", action="store_true", help="Write machine JSON to stdout")
    analyze.add_argument("-q", "--quiet", action="store_true", help="Minimal human logs")
    analyze.add_argument("-v", "--verbose", action="store_true", help="More human logs")

    suggest = subparsers.add_parser("suggest", help="Suggest a column mapping onto target fields.")
    suggest.add_argument("input", help="Input file path")
    suggest.add_argument("--targets", help="Comma-separated target field names")
    suggest.add_argument("--targets-file", help="JSON list of target field names")
    suggest.add_argument("--threshold", type=float, default=None, help="Minimum match confidence (0-100)")
    suggest.add_argument("--save-mapping", help="Write the suggested mapping JSON to this path")
    suggest.add_argument("--sheet", dest="sheet_name", help="Workbook sheet name")
    suggest.add_argument("--min-confidence", type=float, default=MIN_DETECTION_CONFIDENCE, help="Exit 3 below this detection confidence")
    suggest.add_argument("--json", action="store_true", help="Write machine JSON to stdout")
    suggest.add_argument("-q", "--quiet", action="store_true", help="Minimal human logs")
    suggest.add_argument("-v", "--verbose", action="store_true", help="More human logs")

    convert = subparsers.add_parser("convert", help="Apply a mapping and write normalized records.")
    convert.add_argument("input", help="Input file path")
    convert.add_argument("--mapping", required=True, help="Mapping JSON (target -> column | FIXED:value | CALC:expr)")
    convert.add_argument("--output", help="Explicit output path (.xlsx or .csv)")
    convert.add_argument("-o", "--out", dest="out_dir", help="Output directory")
    convert.add_argument("--format", choices=["xlsx", "csv"], default="xlsx", help="Output format when --output is not given")
    convert.add_argument("--sheet", dest="sheet_name", help="Workbook sheet name")
    convert.add_argument("--footer-keyword", help="Stop extracting at the first row containing this text")
    convert.add_argument("--min-confidence", type=float, default=MIN_DETECTION_CONFIDENCE, help="Refuse to convert below this detection confidence")
    convert.add_argument("--force", action="store_true", help="Convert even when detection confidence is low")
    convert.add_argument("--dry-run", action="store_true", help="Map records without writing output")
    convert.add_argument("--json", action="store_true", help="Write machine JSON to stdout")
    convert.add_argument("-q", "--quiet", action="store_true", help="Minimal human logs")
    convert.add_argument("-v", "--verbose", action="store_true", help="More human logs")

    evaluate = subparsers.add_parser("evaluate", help="Evaluate a CALC expression against one row.")
    evaluate.add_argument("expression", help='Expression, e.g. \'LEFT(Filename, FIND("_", Filename)-1)\'')
    evaluate.add_argument("--row", help="Row as a JSON object")
    evaluate.add_argument("--row-file", help="Path to a JSON object row")
    evaluate.add_argument("--json", action="store_true", help="Write machine JSON to stdout")
    evaluate.add_argument("-q", "--quiet", action="store_true", help="Minimal human logs")
    evaluate.add_argument("-v", "--verbose", action="store_true", help="More human logs")

    subparsers.add_parser("version", help="Print version")
    return parser


def run_analyze(args: argparse.Namespace, settings: Settings) -> int:
    try:
        input_path = require_input(args.input)
        loaded = load_grid(input_path, args.sheet_name, compact=not args.keep_empty_rows)
        analysis = analyze_sheet(loaded.grid)
        section = analysis.data_section
        payload = with_contract(
            {"source": loaded.to_dict(), "analysis": analysis.to_dict()},
            "sheet_mapper.analyze",
            build_run_summary(
                command="analyze",
                input_path=input_path,
                output_path=Path(args.output) if args.output else None,
                metrics={
                    "confidence": round(section.confidence, 4),
                    "data_rows": section.length if section.found else 0,
                    "removed_empty_rows": loaded.removed_empty_rows,
                },
                warnings=loaded.warnings + analysis.suggestions.warnings,
            ),
        )
        if args.output:
            write_json(Path(args.output), payload)
        if args.json:
            print(json_dumps(payload))
        else:
            emit_human(render_analysis_text(loaded, analysis).rstrip(), quiet=args.quiet)
            if args.output:
                emit_human(f"Analysis written: {args.output}", quiet=args.quiet)
        return detection_exit_code(section, args.min_confidence)
    except Exception as exc:
        eprint(str(exc))
        return classify_backend_exception(exc)


def run_suggest(args: argparse.Namespace, settings: Settings) -> int:
    try:
        input_path = require_input(args.input)
        targets = load_targets(args)
        threshold = settings.confidence_threshold if args.threshold is None else args.threshold
        loaded = load_grid(input_path, args.sheet_name)
        section = detect_data_section(loaded.grid)
        mapping, suggestion = suggest_column_mapping(loaded.grid, section, targets, threshold)
        if args.save_mapping:
            mapping.save(args.save_mapping)

        payload = with_contract(
            {
                "source": loaded.to_dict(),
                "data_section": section.to_dict(),
                "suggestion": suggestion.to_dict(),
                "mapping": mapping.to_dict(),
            },
            "sheet_mapper.suggest",
            build_run_summary(
                command="suggest",
                input_path=input_path,
                output_path=Path(args.save_mapping) if args.save_mapping else None,
                metrics={
                    "targets": len(targets),
                    "mapped": suggestion.assignment_count,
                    "threshold": threshold,
                    "confidence": round(section.confidence, 4),
                },
                warnings=loaded.warnings,
            ),
        )
        if args.json:
            print(json_dumps(payload))
        else:
            emit_human("\n".join(render_section_lines(loaded, section)), quiet=args.quiet)
            emit_human(render_suggestion_text(suggestion, targets).rstrip(), quiet=args.quiet)
            if args.save_mapping:
                emit_human(f"Mapping written: {args.save_mapping}", quiet=args.quiet)
        return detection_exit_code(section, args.min_confidence)
    except Exception as exc:
        eprint(str(exc))
        return classify_backend_exception(exc)


def convert_output_path(args: argparse.Namespace, input_path: Path, settings: Settings) -> Path:
    if args.output:
        return Path(args.output)
    out_dir = Path(args.out_dir) if args.out_dir else default_output_dir(input_path, settings)
    return out_dir / f"{input_path.stem}-mapped.{args.format}"


def run_convert(args: argparse.Namespace, settings: Settings) -> int:
    try:
        input_path = require_input(args.input)
        mapping_path = Path(args.mapping)
        if not mapping_path.exists():
            raise CliError(f"Mapping not found: {mapping_path}", EXIT_COMMAND_ERROR)
        mapping = ColumnMapping.load(mapping_path)
        if not len(mapping):
            raise CliError("Mapping is empty.", EXIT_COMMAND_ERROR)

        output_path = convert_output_path(args, input_path, settings)
        if not args.dry_run and output_path.exists():
            raise CliError(f"Refusing to overwrite existing output: {output_path}", EXIT_COMMAND_ERROR)

        loaded = load_grid(input_path, args.sheet_name)
        section = detect_data_section(loaded.grid)
        if not section.found:
            raise CliError(f"No data section detected: {section.reason}", EXIT_LOW_CONFIDENCE)
        if section.confidence < args.min_confidence and not args.force:
            raise CliError(
                f"Detection confidence {section.confidence:.2f} is below {args.min_confidence:.2f}; "
                "check the file or rerun with --force.",
                EXIT_LOW_CONFIDENCE,
            )

        records = extract_records(loaded.grid, section, input_path.name, footer_keyword=args.footer_keyword)
        evaluator = Evaluator(max_depth=settings.max_formula_depth)
        mapped = apply_mapping(records, mapping, evaluator)
        if not args.dry_run:
            write_records(mapped, mapping.targets, output_path, mapping=mapping)

        payload = with_contract(
            {
                "source": loaded.to_dict(),
                "data_section": section.to_dict(),
                "mapping": mapping.to_dict(),
                "records_preview": mapped[:5],
            },
            "sheet_mapper.convert",
            build_run_summary(
                command="convert",
                input_path=input_path,
                output_path=None if args.dry_run else output_path,
                metrics={
                    "records": len(mapped),
                    "fields": len(mapping),
                    "confidence": round(section.confidence, 4),
                },
                warnings=loaded.warnings,
            ),
        )
        if args.json:
            print(json_dumps(payload))
        else:
            emit_human("\n".join(render_section_lines(loaded, section)), quiet=args.quiet)
            emit_human(f"Records mapped: {len(mapped)}", quiet=args.quiet)
            if not args.dry_run:
                emit_human(f"Output written: {output_path}", quiet=args.quiet)
        return EXIT_SUCCESS
    except Exception as exc:
        eprint(str(exc))
        return classify_backend_exception(exc)


def run_evaluate(args: argparse.Namespace, settings: Settings) -> int:
    try:
        row = load_row(args)
        result = Evaluator(max_depth=settings.max_formula_depth).evaluate(args.expression, row)
        if args.json:
            payload = with_contract(
                {"expression": args.expression, "row": row, "result": result},
                "sheet_mapper.evaluate",
                build_run_summary(command="evaluate", metrics={"result_type": type(result).__name__}),
            )
            print(json_dumps(payload))
        else:
            print(Evaluator.to_text(result))
        return EXIT_SUCCESS
    except Exception as exc:
        eprint(str(exc))
        return classify_backend_exception(exc)


def run_version() -> int:
    print(TOOL_VERSION)
    return EXIT_SUCCESS


def main(argv: list[str] | None = None) -> int:
    try:
        parser = build_parser()
        args = parser.parse_args(argv)
        settings = load_settings()
        configure_logging(args, settings)
        if args.command == "analyze":
            return run_analyze(args, settings)
        if args.command == "suggest":
            return run_suggest(args, settings)
        if args.command == "convert":
            return run_convert(args, settings)
        if args.command == "evaluate":
            return run_evaluate(args, settings)
        if args.command == "version":
            return run_version()
        raise CliError(f"Unknown command: {args.command}", EXIT_COMMAND_ERROR)
    except CliError as exc:
        eprint(str(exc))
        return exc.code


if __name__ == "__main__":
    raise SystemExit(main())
