from __future__ import annotations

import re
import unittest
from pathlib import Path

from sheet_mapper.contracts import (
    CONTRACT_VERSIONS,
    build_contract,
    build_run_summary,
    utc_now_iso,
    with_contract,
)


class ContractTests(unittest.TestCase):
    def test_every_command_has_a_versioned_contract(self):
        for command in ("analyze", "suggest", "convert", "evaluate"):
            contract = build_contract(f"sheet_mapper.{command}")
            self.assertEqual(contract["name"], f"sheet_mapper.{command}")
            self.assertRegex(contract["version"], r"^\d+\.\d+\.\d+$")

    def test_unknown_contract_name_raises(self):
        with self.assertRaises(KeyError):
            build_contract("sheet_mapper.unknown")

    def test_run_summary_shape(self):
        summary = build_run_summary(
            command="convert",
            input_path=Path("in.csv"),
            output_path=Path("out.xlsx"),
            metrics={"records": 3},
            warnings=["Multiple sheets found"],
        )
        self.assertEqual(summary["tool"], "sheet-mapper")
        self.assertEqual(summary["status"], "ok")
        self.assertEqual(summary["input_file"], "in.csv")
        self.assertEqual(summary["output_file"], "out.xlsx")
        self.assertEqual(summary["warnings_count"], 1)
        self.assertEqual(summary["metrics"], {"records": 3})

    def test_run_summary_defaults(self):
        summary = build_run_summary(command="evaluate")
        self.assertIsNone(summary["input_file"])
        self.assertIsNone(summary["output_file"])
        self.assertEqual(summary["warnings"], [])
        self.assertEqual(summary["metrics"], {})

    def test_with_contract_wraps_payload(self):
        payload = with_contract({"result": 1}, "sheet_mapper.evaluate", build_run_summary(command="evaluate"))
        self.assertEqual(list(payload), ["contract", "result", "run_summary"])
        self.assertEqual(payload["contract"]["version"], CONTRACT_VERSIONS["sheet_mapper.evaluate"])

    def test_timestamps_are_utc_seconds(self):
        self.assertRegex(utc_now_iso(), re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z$"))


if __name__ == "__main__":
    unittest.main()
