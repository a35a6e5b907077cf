from __future__ import annotations

import unittest

from sheet_mapper.grid import Grid
from sheet_mapper.region_detector import (
    NOT_DETECTED,
    DensityProfile,
    analyze_sheet,
    detect_data_section,
    extract_headers,
    extract_records,
    scan_header_span,
)
from sheet_mapper.shared import SUMMARY_ROW_RE

HEADERS = [
    "Polisnummer",
    "Relatie",
    "Makelaar",
    "Ingangsdatum",
    "Vervaldatum",
    "Bruto",
    "Provisie",
    "Netto",
    "Product",
    "Status",
]


def data_row(i: int) -> list:
    return [f"POL{i:04d}", f"Relatie {i}", "AON", 45292 + i, 45657 + i, 100.0 + i, 10.0 + i, 90.0, "Auto", "Actief"]


def bordereau_grid() -> Grid:
    """Three blank rows, header at row 3, 20 data rows and a dense Totaal row."""
    rows: list[list] = [[], [], []]
    rows.append(list(HEADERS))
    rows.extend(data_row(i) for i in range(20))
    rows.append(["Totaal", "-", "-", "-", "-", 2190.0, 390.0, 1800.0, "-", "-"])
    return Grid.from_rows(rows)


class DensityProfileTests(unittest.TestCase):
    def test_counts_empty_string_as_unfilled(self):
        grid = Grid.from_rows([["a", "", None, "d"]])
        profile = DensityProfile.compute(grid)
        self.assertEqual(profile.rows[0].filled, 2)
        self.assertAlmostEqual(profile.rows[0].density, 0.5)
        self.assertEqual([line.filled for line in profile.columns], [1, 0, 0, 1])

    def test_thresholds_have_floors(self):
        grid = Grid.from_rows([["a", None, None, None]])
        profile = DensityProfile.compute(grid)
        self.assertAlmostEqual(profile.row_threshold, 0.5)
        self.assertAlmostEqual(profile.col_threshold, 0.7)

    def test_rows_by_density_keeps_sheet_order_for_ties(self):
        grid = Grid.from_rows([["a", None], ["b", "c"], ["d", "e"]])
        ordered = DensityProfile.compute(grid).rows_by_density()
        self.assertEqual([line.index for line in ordered], [1, 2, 0])


class DetectDataSectionTests(unittest.TestCase):
    def test_bordereau_with_totaal_row(self):
        section = detect_data_section(bordereau_grid())
        self.assertEqual(section.header_row_index, 3)
        self.assertEqual(section.start_column_index, 0)
        self.assertEqual(section.end_column_index, 9)
        self.assertEqual(section.column_count, 10)
        self.assertEqual(section.data_start_index, 4)
        self.assertEqual(section.data_end_index, 23)
        self.assertEqual(section.length, 20)
        self.assertEqual(section.summary_rows, (24,))
        self.assertEqual(section.start_cell, "A4")
        self.assertAlmostEqual(section.confidence, 1.0)
        self.assertIsNone(section.reason)
        self.assertTrue(section.found)

    def test_detection_is_deterministic(self):
        grid = bordereau_grid()
        self.assertEqual(detect_data_section(grid), detect_data_section(grid))

    def test_data_start_follows_header(self):
        section = detect_data_section(bordereau_grid())
        self.assertEqual(section.data_start_index, section.header_row_index + 1)
        self.assertGreaterEqual(section.end_column_index, section.start_column_index)

    def test_offset_table_reports_start_cell(self):
        rows: list[list] = [["Commissie overzicht"], []]
        rows.append([None, "Polis", "Naam", "Bedrag", "Datum", "Product"])
        rows.extend([None, f"P{i}", f"N{i}", i * 10, "01-01-2024", "Auto"] for i in range(1, 7))
        section = detect_data_section(Grid.from_rows(rows))
        self.assertEqual(section.header_row_index, 2)
        self.assertEqual(section.start_column_index, 1)
        self.assertEqual(section.end_column_index, 5)
        self.assertEqual(section.start_cell, "B3")
        self.assertEqual((section.data_start_index, section.data_end_index), (3, 8))

    def test_single_filled_row_has_length_one(self):
        section = detect_data_section(Grid.from_rows([["a", "b", "c"]]))
        self.assertEqual(section.header_row_index, 0)
        self.assertEqual(section.length, 1)
        self.assertEqual(list(section.data_rows()), [])

    def test_empty_grid_fails_with_reason(self):
        section = detect_data_section(Grid.from_rows([]))
        self.assertEqual(section.confidence, 0.0)
        self.assertIsNone(section.header_row_index)
        self.assertEqual(section.reason, "Grid is empty")
        self.assertFalse(section.found)

    def test_sparse_grid_has_no_header(self):
        grid = Grid.from_rows([["a", None, None, None], [None, "b", None, None]])
        section = detect_data_section(grid)
        self.assertEqual(section.confidence, 0.0)
        self.assertIn("No header row", section.reason)
        self.assertEqual(section.start_cell, NOT_DETECTED)

    def test_no_clear_start_column_falls_back(self):
        rows: list[list] = [["a", "b", "c", "d", "e"]]
        rows.extend([] for _ in range(9))
        section = detect_data_section(Grid.from_rows(rows))
        self.assertEqual(section.header_row_index, 0)
        self.assertEqual(section.start_column_index, 0)
        self.assertEqual(section.end_column_index, 4)
        self.assertAlmostEqual(section.confidence, 0.6)
        self.assertEqual(section.start_cell, NOT_DETECTED)
        self.assertIn("No clear start column", section.reason)

    def test_header_scan_bridges_two_empty_cells(self):
        grid = Grid.from_rows([["A", None, None, "D", "E"]])
        self.assertEqual(scan_header_span(grid, 0, 0), 4)

    def test_header_scan_stops_after_three_empty_cells(self):
        grid = Grid.from_rows([["A", "B", None, None, None, "F"]])
        self.assertEqual(scan_header_span(grid, 0, 0), 1)

    def test_summary_keywords(self):
        for text in ("Totaal", "subtotal", "Grand Total", "eindtotaal", "sum"):
            self.assertIsNotNone(SUMMARY_ROW_RE.search(text), text)
        self.assertIsNone(SUMMARY_ROW_RE.search("checksum"))

    def test_sparse_summary_row_is_kept_as_data(self):
        rows: list[list] = [list(HEADERS)]
        rows.extend(data_row(i) for i in range(5))
        rows.append(["Totaal", None, None, None, None, 500.0, None, None, None, None])
        section = detect_data_section(Grid.from_rows(rows))
        self.assertEqual(section.summary_rows, ())
        self.assertEqual(section.data_end_index, 6)


class AnalyzeSheetTests(unittest.TestCase):
    def test_bordereau_analysis(self):
        analysis = analyze_sheet(bordereau_grid())
        self.assertEqual(analysis.header_analysis.row, 3)
        self.assertEqual(analysis.header_analysis.suggested_columns, HEADERS)
        self.assertAlmostEqual(analysis.header_analysis.fill_ratio, 1.0)
        self.assertEqual(analysis.quality_analysis.sample_size, 10)
        self.assertAlmostEqual(analysis.quality_analysis.average_fill_ratio, 1.0)
        self.assertEqual([item.column for item in analysis.date_columns], [3, 4])
        self.assertIsNone(analysis.multi_row_pattern)
        self.assertEqual(analysis.suggestions.confidence, "high")
        self.assertEqual(analysis.suggestions.skip_rows, 3)
        self.assertTrue(analysis.suggestions.use_header_row)

    def test_short_section_is_flagged_low(self):
        rows = [list(HEADERS), data_row(0), data_row(1)]
        analysis = analyze_sheet(Grid.from_rows(rows))
        self.assertEqual(analysis.suggestions.confidence, "low")
        self.assertTrue(analysis.suggestions.warnings)

    def test_alternating_two_row_records(self):
        rows: list[list] = [["A", "B", "C", "D"]]
        for _ in range(3):
            rows.append(["x", "y", None, None])
            rows.append([None, None, "z", "w"])
        pattern = analyze_sheet(Grid.from_rows(rows)).multi_row_pattern
        self.assertIsNotNone(pattern)
        self.assertEqual(pattern.pattern1, "FFEE")
        self.assertEqual(pattern.pattern2, "EEFF")

    def test_to_dict_is_json_ready(self):
        payload = analyze_sheet(bordereau_grid()).to_dict()
        self.assertEqual(payload["data_section"]["start_cell"], "A4")
        self.assertEqual(payload["data_section"]["summary_rows"], [24])


class ExtractionTests(unittest.TestCase):
    def test_headers_are_cleaned_and_deduplicated(self):
        rows: list[list] = [[" Polis\nnummer ", None, "Naam", "Naam"]]
        rows.extend([f"P{i}", None, "Jan", "Piet"] for i in range(4))
        grid = Grid.from_rows(rows)
        section = detect_data_section(grid)
        self.assertEqual(extract_headers(grid, section), ["Polis nummer", "Column2", "Naam", "Naam_2"])

    def test_records_carry_row_index_and_filename(self):
        grid = bordereau_grid()
        records = extract_records(grid, detect_data_section(grid), "AON_01-2024.xlsx")
        self.assertEqual(len(records), 20)
        self.assertEqual(records[0]["Polisnummer"], "POL0000")
        self.assertEqual(records[0]["__row_index"], 4)
        self.assertEqual(records[0]["Filename"], "AON_01-2024.xlsx")
        self.assertNotIn("Totaal", [record["Polisnummer"] for record in records])

    def test_empty_rows_inside_data_are_skipped(self):
        grid = Grid.from_rows([list(HEADERS), data_row(0), [], data_row(1)])
        records = extract_records(grid, detect_data_section(grid))
        self.assertEqual([record["__row_index"] for record in records], [1, 3])
        self.assertNotIn("Filename", records[0])

    def test_footer_keyword_stops_extraction(self):
        grid = bordereau_grid()
        records = extract_records(grid, detect_data_section(grid), footer_keyword="Relatie 5")
        self.assertEqual(len(records), 5)

    def test_failed_section_extracts_nothing(self):
        grid = Grid.from_rows([["a", None, None, None]])
        self.assertEqual(extract_records(grid, detect_data_section(grid)), [])


if __name__ == "__main__":
    unittest.main()
