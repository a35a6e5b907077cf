from __future__ import annotations

import csv
import json
import os
import shutil
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path

from openpyxl import load_workbook

ROOT = Path(__file__).resolve().parents[1]
CLI = [sys.executable, "-m", "sheet_mapper.cli"]
FIXED_STAMP = "20260301T010203Z"

MAPPING = {
    "Polis": "Polisnummer",
    "Start": "Ingangsdatum",
    "Maatschappij": "FIXED:AON",
    "Bruto incl": "CALC:ROUND(Bruto * 1.21, 2)",
    "Bron": 'CALC:LEFT(Filename, FIND("_", Filename)-1)',
}


def run_cli(*args: str, env: dict[str, str] | None = None) -> subprocess.CompletedProcess[str]:
    merged_env = dict(os.environ)
    merged_env["SHEET_MAPPER_OUTPUT_STAMP"] = FIXED_STAMP
    merged_env.pop("SHEET_MAPPER_LOG_LEVEL", None)
    if env:
        merged_env.update(env)
    return subprocess.run(
        [*CLI, *args],
        cwd=ROOT,
        capture_output=True,
        text=True,
        env=merged_env,
    )


def write_bordereau(directory: Path, name: str = "AON_01-2024.csv") -> Path:
    lines = [
        "Provisie-overzicht AON;;;;",
        "Periode: 01-2024;;;;",
        "Polisnummer;Relatie;Ingangsdatum;Bruto;Status",
    ]
    for i in range(12):
        lines.append(f"P{i + 1:04d};Relatie {i + 1};01-01-2024;{100 + i},00;Actief")
    lines.append("Totaal;-;-;1.266,00;-")
    path = directory / name
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def write_mapping(directory: Path) -> Path:
    path = directory / "mapping.json"
    path.write_text(json.dumps(MAPPING), encoding="utf-8")
    return path


class AnalyzeCommandTests(unittest.TestCase):
    def test_analyze_json_stdout_contains_only_json(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            source = write_bordereau(Path(tmpdir))
            proc = run_cli("analyze", str(source), "--json")
            self.assertEqual(proc.returncode, 0, proc.stderr)
            self.assertEqual(proc.stderr.strip(), "")
            payload = json.loads(proc.stdout)
            self.assertEqual(payload["contract"]["name"], "sheet_mapper.analyze")
            section = payload["analysis"]["data_section"]
            self.assertEqual(section["start_cell"], "A3")
            self.assertEqual(section["summary_rows"], [15])
            self.assertEqual(payload["run_summary"]["metrics"]["data_rows"], 12)
            self.assertEqual(payload["source"]["delimiter"], ";")

    def test_analyze_human_output(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            source = write_bordereau(Path(tmpdir))
            proc = run_cli("analyze", str(source))
            self.assertEqual(proc.returncode, 0, proc.stderr)
            self.assertIn("Start cell: A3", proc.stderr)
            self.assertIn("Summary rows excluded: 16", proc.stderr)

    def test_analyze_writes_output_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            source = write_bordereau(Path(tmpdir))
            output = Path(tmpdir) / "reports" / "analysis.json"
            proc = run_cli("analyze", str(source), "--output", str(output), "-q")
            self.assertEqual(proc.returncode, 0, proc.stderr)
            payload = json.loads(output.read_text(encoding="utf-8"))
            self.assertEqual(payload["run_summary"]["output_file"], str(output))

    def test_low_confidence_returns_exit_3(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            source = write_bordereau(Path(tmpdir))
            proc = run_cli("analyze", str(source), "--json", "--min-confidence", "1.01")
            self.assertEqual(proc.returncode, 3, proc.stderr)
            self.assertIn("confidence", json.loads(proc.stdout)["run_summary"]["metrics"])

    def test_missing_input_returns_exit_1(self):
        proc = run_cli("analyze", "does/not/exist.csv")
        self.assertEqual(proc.returncode, 1)
        self.assertIn("File not found", proc.stderr)

    def test_unsupported_extension_returns_exit_1(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "notes.pdf"
            path.write_bytes(b"%PDF-1.4")
            proc = run_cli("analyze", str(path))
            self.assertEqual(proc.returncode, 1)
            self.assertIn("Unsupported file type", proc.stderr)

    def test_unreadable_workbook_returns_exit_2(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "corrupt.xlsx"
            path.write_bytes(b"not a zip file")
            proc = run_cli("analyze", str(path))
            self.assertEqual(proc.returncode, 2)
            self.assertIn("Could not read workbook", proc.stderr)

    def test_bad_arguments_return_exit_1(self):
        proc = run_cli("analyze")
        self.assertEqual(proc.returncode, 1)


class SuggestCommandTests(unittest.TestCase):
    def test_suggest_json_and_saved_mapping(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            source = write_bordereau(Path(tmpdir))
            saved = Path(tmpdir) / "suggested.json"
            proc = run_cli(
                "suggest",
                str(source),
                "--targets",
                "Bruto, Status, Onbekend veld",
                "--save-mapping",
                str(saved),
                "--json",
            )
            self.assertEqual(proc.returncode, 0, proc.stderr)
            payload = json.loads(proc.stdout)
            self.assertEqual(payload["contract"]["name"], "sheet_mapper.suggest")
            self.assertEqual(payload["mapping"]["Bruto"], "Bruto")
            self.assertEqual(payload["suggestion"]["confidence_scores"]["Status"], 100.0)
            self.assertEqual(json.loads(saved.read_text(encoding="utf-8"))["Status"], "Status")

    def test_targets_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            source = write_bordereau(Path(tmpdir))
            targets = Path(tmpdir) / "targets.json"
            targets.write_text(json.dumps(["Relatie", "Bruto"]), encoding="utf-8")
            proc = run_cli("suggest", str(source), "--targets-file", str(targets))
            self.assertEqual(proc.returncode, 0, proc.stderr)
            self.assertIn("Relatie <- Relatie (100.0%)", proc.stderr)

    def test_targets_are_required(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            source = write_bordereau(Path(tmpdir))
            proc = run_cli("suggest", str(source))
            self.assertEqual(proc.returncode, 1)
            self.assertIn("--targets", proc.stderr)


class ConvertCommandTests(unittest.TestCase):
    def test_convert_to_csv(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            source = write_bordereau(Path(tmpdir))
            mapping = write_mapping(Path(tmpdir))
            output = Path(tmpdir) / "out" / "mapped.csv"
            proc = run_cli("convert", str(source), "--mapping", str(mapping), "--output", str(output))
            self.assertEqual(proc.returncode, 0, proc.stderr)
            self.assertIn("Output written:", proc.stderr)
            with output.open(encoding="utf-8", newline="") as handle:
                rows = list(csv.reader(handle))
            self.assertEqual(rows[0], list(MAPPING))
            self.assertEqual(len(rows), 13)
            self.assertEqual(rows[1], ["P0001", "01-01-2024", "AON", "121", "AON"])

    def test_convert_json_preview(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            source = write_bordereau(Path(tmpdir))
            mapping = write_mapping(Path(tmpdir))
            proc = run_cli("convert", str(source), "--mapping", str(mapping), "--dry-run", "--json")
            self.assertEqual(proc.returncode, 0, proc.stderr)
            payload = json.loads(proc.stdout)
            self.assertEqual(payload["contract"]["name"], "sheet_mapper.convert")
            self.assertEqual(payload["run_summary"]["metrics"]["records"], 12)
            self.assertIsNone(payload["run_summary"]["output_file"])
            self.assertEqual(payload["records_preview"][1]["Bruto incl"], 122.21)

    def test_convert_default_output_directory(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            source = write_bordereau(Path(tmpdir))
            mapping = write_mapping(Path(tmpdir))
            proc = run_cli("convert", str(source), "--mapping", str(mapping))
            self.assertEqual(proc.returncode, 0, proc.stderr)
            output_dir = ROOT / "sheet-mapper-output" / f"AON_01-2024-{FIXED_STAMP}"
            try:
                output = output_dir / "AON_01-2024-mapped.xlsx"
                self.assertTrue(output.exists())
                workbook = load_workbook(output, read_only=True)
                self.assertEqual(workbook.sheetnames, ["Data", "Mapping"])
                workbook.close()
            finally:
                if output_dir.parent.exists():
                    shutil.rmtree(output_dir.parent)

    def test_convert_refuses_to_overwrite(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            source = write_bordereau(Path(tmpdir))
            mapping = write_mapping(Path(tmpdir))
            output = Path(tmpdir) / "mapped.csv"
            output.write_text("keep me\n", encoding="utf-8")
            proc = run_cli("convert", str(source), "--mapping", str(mapping), "--output", str(output))
            self.assertEqual(proc.returncode, 1)
            self.assertIn("Refusing to overwrite", proc.stderr)
            self.assertEqual(output.read_text(encoding="utf-8"), "keep me\n")

    def test_convert_without_detected_table_returns_exit_3(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            source = Path(tmpdir) / "sparse.csv"
            source.write_text("a;;;\n;b;;\n", encoding="utf-8")
            mapping = write_mapping(Path(tmpdir))
            proc = run_cli("convert", str(source), "--mapping", str(mapping), "--dry-run")
            self.assertEqual(proc.returncode, 3)
            self.assertIn("No data section detected", proc.stderr)

    def test_invalid_mapping_returns_exit_1(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            source = write_bordereau(Path(tmpdir))
            mapping = Path(tmpdir) / "mapping.json"
            mapping.write_text("{broken", encoding="utf-8")
            proc = run_cli("convert", str(source), "--mapping", str(mapping), "--dry-run")
            self.assertEqual(proc.returncode, 1)
            self.assertIn("not valid JSON", proc.stderr)


class EvaluateCommandTests(unittest.TestCase):
    def test_evaluate_prints_result(self):
        proc = run_cli(
            "evaluate",
            'LEFT(Filename, FIND("_", Filename)-1)',
            "--row",
            json.dumps({"Filename": "AON_01-2024.xlsx"}),
        )
        self.assertEqual(proc.returncode, 0, proc.stderr)
        self.assertEqual(proc.stdout.strip(), "AON")

    def test_evaluate_json(self):
        proc = run_cli("evaluate", "ROUND(Bruto * 1.21, 2)", "--row", '{"Bruto": "1.000,50"}', "--json")
        self.assertEqual(proc.returncode, 0, proc.stderr)
        payload = json.loads(proc.stdout)
        self.assertEqual(payload["result"], 1210.61)
        self.assertEqual(payload["contract"]["name"], "sheet_mapper.evaluate")

    def test_evaluate_rejects_non_object_row(self):
        proc = run_cli("evaluate", "1 + 1", "--row", "[1, 2]")
        self.assertEqual(proc.returncode, 1)
        self.assertIn("JSON object", proc.stderr)

    def test_version(self):
        proc = run_cli("version")
        self.assertEqual(proc.returncode, 0)
        self.assertEqual(proc.stdout.strip(), "0.1.0")


if __name__ == "__main__":
    unittest.main()
