"""sheet-mapper: table detection, fuzzy column mapping and row formulas for partner spreadsheets."""

__version__ = "0.1.0"
