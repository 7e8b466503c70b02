"""Tests for the A1 address codec and formula reference shifting."""

import pytest

from services.errors import AddressError
from services.sheet_engine.address import (
    col_index_to_letter,
    col_letter_to_index,
    decode_cell,
    decode_range,
    encode_cell,
    encode_range,
    shift_formula,
)


class TestCellAddresses:
    """Zero-based (row, col) <-> A1."""

    @pytest.mark.parametrize("row,col,address", [
        (0, 0, "A1"),
        (1, 1, "B2"),
        (9, 25, "Z10"),
        (0, 26, "AA1"),
        (99, 702, "AAA100"),
    ])
    def test_encode_decode(self, row, col, address):
        assert encode_cell(row, col) == address
        assert decode_cell(address) == (row, col)

    def test_decode_accepts_absolute_and_lowercase(self):
        assert decode_cell("$c$5") == (4, 2)
        assert decode_cell(" b2 ") == (1, 1)

    @pytest.mark.parametrize("bad", ["", "A0", "1A", "A-1", "ABCD1", "XFE1", "A1048577", "A1:B2", None, 12])
    def test_decode_rejects_invalid(self, bad):
        with pytest.raises(AddressError):
            decode_cell(bad)

    def test_address_error_is_value_error(self):
        with pytest.raises(ValueError):
            decode_cell("nope")

    def test_encode_rejects_negative(self):
        with pytest.raises(AddressError):
            encode_cell(-1, 0)

    def test_column_letters(self):
        assert col_letter_to_index("A") == 1
        assert col_letter_to_index("AZ") == 52
        assert col_index_to_letter(52) == "AZ"
        assert col_index_to_letter(16384) == "XFD"


class TestRanges:

    def test_decode_range_normalizes(self):
        assert decode_range("C3:A1") == (0, 0, 2, 2)

    def test_single_cell_range(self):
        assert decode_range("B2") == (1, 1, 1, 1)
        assert encode_range(1, 1, 1, 1) == "B2"

    def test_encode_range(self):
        assert encode_range(0, 0, 3, 2) == "A1:C4"

    def test_malformed_range(self):
        with pytest.raises(AddressError):
            decode_range("A1:B2:C3")


class TestShiftFormula:

    def test_relative_references_move(self):
        assert shift_formula("B2*C2", 1, 0) == "B3*C3"
        assert shift_formula("SUM(A1:A3)", 0, 2) == "SUM(C1:C3)"

    def test_absolute_parts_stay(self):
        assert shift_formula("$A$1+A$1+$A1", 2, 3) == "$A$1+D$1+$A3"

    def test_string_literals_untouched(self):
        assert shift_formula('IF(A1>0,"B2",A2)', 1, 0) == 'IF(A2>0,"B2",A3)'

    def test_quoted_sheet_reference(self):
        assert shift_formula("'My Sheet'!A1+1", 1, 0) == "'My Sheet'!A2+1"

    def test_function_names_untouched(self):
        assert shift_formula("LOG10(A1)", 1, 0) == "LOG10(A2)"

    def test_reference_off_sheet(self):
        assert shift_formula("A1+B2", -1, 0) == "#REF!+B1"

    def test_zero_offset(self):
        assert shift_formula("A1", 0, 0) == "A1"
