"""Tests for workbook loading and grid derivation."""

from datetime import datetime

import pytest

from services.errors import LoadFailure
from services.sheet_engine.loader import (
    datetime_to_serial,
    load_sheet,
    serial_to_datetime,
    sheet_rectangle,
)
from services.sheet_engine.package import load_workbook, sniff_format
from services.sheet_engine.schemas import CellType
from xlsx_factory import CUSTOM_DATE_STYLE, build_xlsx, worksheet


class TestLoadWorkbook:

    def test_sheet_names_in_order(self, quote_xlsx):
        workbook = load_workbook(quote_xlsx, "quote.xlsx")
        assert workbook.sheet_names == ["Quote", "Details"]
        assert workbook.source_format == "xlsx"
        assert workbook.shared_strings[0] == "Item"

    def test_sniff_format(self, quote_xlsx):
        assert sniff_format(quote_xlsx) == "xlsx"
        assert sniff_format(b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1rest") == "xls"
        assert sniff_format(b"plain text") is None

    @pytest.mark.parametrize("data", [b"", b"not a workbook", b"PK\x03\x04broken zip"])
    def test_unparsable_bytes(self, data):
        with pytest.raises(LoadFailure):
            load_workbook(data, "bad.xlsx")

    def test_workbook_without_worksheets(self):
        data = build_xlsx([])
        with pytest.raises(LoadFailure):
            load_workbook(data, "empty.xlsx")

    def test_unknown_sheet(self, quote_xlsx):
        workbook = load_workbook(quote_xlsx, "quote.xlsx")
        assert load_sheet(workbook, "Nope") is None


class TestLoadSheet:

    @pytest.fixture
    def quote(self, quote_xlsx):
        workbook = load_workbook(quote_xlsx, "quote.xlsx")
        return load_sheet(workbook, "Quote")

    @pytest.fixture
    def details(self, quote_xlsx):
        workbook = load_workbook(quote_xlsx, "quote.xlsx")
        return load_sheet(workbook, "Details")

    def test_grid_covers_dimension(self, quote):
        grid = quote.grid
        assert (grid.n_rows, grid.n_cols) == (4, 3)
        assert grid.cell_at(0, 0).value == "Item"
        assert grid.cell_at(1, 1).value == 3
        assert grid.cell_at(1, 2).value == 1.5

    def test_value_kinds(self, quote, details):
        assert quote.grid.cell_at(0, 0).type == CellType.STRING
        assert quote.grid.cell_at(1, 1).type == CellType.NUMBER
        assert details.grid.cell_at(1, 0).value == datetime(2024, 1, 1)
        assert details.grid.cell_at(1, 0).type == CellType.DATE
        assert details.grid.cell_at(1, 1).value is True
        assert details.grid.cell_at(1, 1).type == CellType.BOOLEAN
        assert details.grid.cell_at(1, 2).value == "#DIV/0!"
        assert details.grid.cell_at(1, 2).type == CellType.ERROR

    def test_formula_without_equals(self, quote):
        total = quote.grid.cell_at(3, 1)
        assert total.formula == "SUM(B2:B3)"
        assert total.value == 5

    def test_style_map_only_holds_styled_cells(self, quote):
        assert set(quote.styles) == {(0, 1), (3, 0), (3, 2)}
        assert quote.styles[(0, 1)].bold is True
        assert quote.grid.cell_at(0, 1).style == quote.styles[(0, 1)]
        assert quote.grid.cell_at(0, 0).style is None

    def test_cells_sharing_a_style_record_get_own_styles(self, quote):
        header, total = quote.grid.cell_at(0, 1).style, quote.grid.cell_at(3, 0).style
        assert header == total
        assert header is not total
        header.bold = False
        assert total.bold is True
        assert quote.styles[(3, 0)].bold is True

    def test_styled_blank_is_empty_cell(self, quote):
        blank = quote.grid.cell_at(3, 2)
        assert blank.value == ""
        assert blank.type == CellType.EMPTY
        assert blank.style.background_color == "#FFFF00"

    def test_merges(self, details, quote):
        assert [m.ref for m in details.merges] == ["A1:B1"]
        assert details.is_merged(0, 1)
        assert not details.is_merged(1, 1)
        assert quote.merges == []


class TestRectangle:

    def _sheet(self, rows, dimension):
        data = build_xlsx([("S", worksheet(rows, dimension))], shared_strings=[])
        return load_sheet(load_workbook(data, "s.xlsx"), "S")

    def test_missing_cells_are_empty_stubs(self):
        loaded = self._sheet('<row r="2"><c r="B2"><v>7</v></c></row>', "A1:B2")
        grid = loaded.grid
        assert grid.n_rows == 2
        assert grid.cell_at(0, 0).value == ""
        assert grid.cell_at(0, 0).formula is None
        assert grid.cell_at(0, 0).style is None
        assert grid.cell_at(1, 1).value == 7

    def test_empty_sheet_is_single_cell(self):
        loaded = self._sheet("", None)
        assert (loaded.grid.n_rows, loaded.grid.n_cols) == (1, 1)
        assert loaded.grid.cell_at(0, 0).value == ""

    def test_dimension_not_at_a1(self):
        loaded = self._sheet('<row r="3"><c r="C3"><v>1</v></c><c r="D3"><v>2</v></c></row>', "C3:D3")
        grid = loaded.grid
        assert (grid.origin_row, grid.origin_col) == (2, 2)
        assert grid.cell_at(2, 3).value == 2
        assert not grid.contains(0, 0)

    def test_missing_dimension_uses_populated_extent(self):
        loaded = self._sheet('<row r="1"><c r="A1"><v>1</v></c></row><row r="3"><c r="B3"><v>2</v></c></row>', None)
        assert (loaded.grid.n_rows, loaded.grid.n_cols) == (3, 2)

    def test_oversized_dimension_falls_back(self):
        workbook = load_workbook(
            build_xlsx([("S", worksheet('<row r="1"><c r="A1"><v>1</v></c></row>', "A1:XFD1048576"))]),
            "s.xlsx",
        )
        assert sheet_rectangle(workbook.get_sheet("S")) == (0, 0, 0, 0)

    def test_oversized_dimension_on_empty_sheet(self):
        loaded = self._sheet("", "A1:XFD1048576")
        assert (loaded.grid.n_rows, loaded.grid.n_cols) == (1, 1)
        assert loaded.grid.cell_at(0, 0).value == ""

    def test_inline_and_formula_strings(self):
        rows = (
            '<row r="1"><c r="A1" t="inlineStr"><is><t>inline</t></is></c>'
            '<c r="B1" t="str"><f>A1&amp;"!"</f><v>inline!</v></c></row>'
        )
        grid = self._sheet(rows, "A1:B1").grid
        assert grid.cell_at(0, 0).value == "inline"
        assert grid.cell_at(0, 1).value == "inline!"
        assert grid.cell_at(0, 1).formula == 'A1&"!"'

    def test_custom_date_format(self):
        grid = self._sheet(f'<row r="1"><c r="A1" s="{CUSTOM_DATE_STYLE}"><v>45292.5</v></c></row>', "A1").grid
        assert grid.cell_at(0, 0).value == datetime(2024, 1, 1, 12, 0)

    def test_shared_formula_dependents_expand(self):
        rows = (
            '<row r="1"><c r="A1"><v>1</v></c><c r="B1"><f t="shared" ref="B1:B3" si="0">A1*2</f><v>2</v></c></row>'
            '<row r="2"><c r="A2"><v>2</v></c><c r="B2"><f t="shared" si="0"/><v>4</v></c></row>'
            '<row r="3"><c r="A3"><v>3</v></c><c r="B3"><f t="shared" si="0"/><v>6</v></c></row>'
        )
        grid = self._sheet(rows, "A1:B3").grid
        assert [grid.cell_at(r, 1).formula for r in range(3)] == ["A1*2", "A2*2", "A3*2"]


class TestDateSerials:

    @pytest.mark.parametrize("serial,expected", [
        (1, datetime(1900, 1, 1)),
        (59, datetime(1900, 2, 28)),
        (61, datetime(1900, 3, 1)),
        (45292, datetime(2024, 1, 1)),
        (45292.25, datetime(2024, 1, 1, 6, 0)),
    ])
    def test_1900_system(self, serial, expected):
        assert serial_to_datetime(serial) == expected
        assert datetime_to_serial(expected) == serial

    def test_1904_system(self):
        assert serial_to_datetime(0, date1904=True) == datetime(1904, 1, 1)
        assert datetime_to_serial(datetime(2024, 1, 1), date1904=True) == 45292 - 1462

    def test_date1904_workbook(self):
        data = build_xlsx(
            [("S", worksheet('<row r="1"><c r="A1" s="2"><v>43830</v></c></row>', "A1"))],
            date1904=True,
        )
        grid = load_sheet(load_workbook(data, "s.xlsx"), "S").grid
        assert grid.cell_at(0, 0).value == datetime(2024, 1, 1)
