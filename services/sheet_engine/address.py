"""A1 address codec.

Cells are keyed structurally by zero-based ``(row, col)`` pairs; the A1
string form ("A1", "AA100") is only a rendering, converted here.
"""

from __future__ import annotations

import re
from typing import List, Tuple

from services.errors import AddressError


MAX_ROWS = 1_048_576
MAX_COLS = 16_384

_CELL_RE = re.compile(r"^\$?([A-Za-z]{1,3})\$?([0-9]+)$")

# A relative/absolute A1 reference inside a formula. Function names such as
# LOG10( and identifiers glued to letters are excluded by the lookarounds.
_FORMULA_REF_RE = re.compile(
    r"(?<![A-Za-z0-9_.$])(\$?)([A-Z]{1,3})(\$?)([0-9]+)(?![0-9A-Za-z_(])"
)


def col_letter_to_index(col: str) -> int:
    """Convert column letter(s) to 1-indexed number. A=1, B=2, ..., Z=26, AA=27."""
    result = 0
    for char in col.upper():
        result = result * 26 + (ord(char) - ord("A") + 1)
    return result


def col_index_to_letter(index: int) -> str:
    """Convert 1-indexed column number to letter(s). 1=A, 2=B, ..., 27=AA."""
    result = ""
    while index > 0:
        index -= 1
        result = chr(ord("A") + (index % 26)) + result
        index //= 26
    return result


def encode_cell(row: int, col: int) -> str:
    """Render a zero-based (row, col) pair as an A1 address. (0, 0) -> "A1"."""
    if row < 0 or col < 0:
        raise AddressError(f"Negative cell coordinates: ({row}, {col})")
    return f"{col_index_to_letter(col + 1)}{row + 1}"


def decode_cell(address: str) -> Tuple[int, int]:
    """Parse an A1 address into a zero-based (row, col) pair.

    Absolute markers ("$B$2") and lowercase letters are accepted.
    Raises AddressError on anything else.
    """
    if not isinstance(address, str):
        raise AddressError(f"Invalid cell reference: {address!r}")
    match = _CELL_RE.match(address.strip())
    if not match:
        raise AddressError(f"Invalid cell reference: {address!r}")
    col = col_letter_to_index(match.group(1))
    row = int(match.group(2))
    if row < 1 or row > MAX_ROWS or col > MAX_COLS:
        raise AddressError(f"Cell reference out of range: {address!r}")
    return row - 1, col - 1


def decode_range(ref: str) -> Tuple[int, int, int, int]:
    """Parse 'B2:F6' (or a single 'B2') into zero-based (start_row, start_col, end_row, end_col).

    The rectangle is normalized so start <= end on both axes.
    """
    parts = ref.strip().split(":")
    if len(parts) == 1:
        row, col = decode_cell(parts[0])
        return row, col, row, col
    if len(parts) != 2:
        raise AddressError(f"Invalid range reference: {ref!r}")
    r1, c1 = decode_cell(parts[0])
    r2, c2 = decode_cell(parts[1])
    return min(r1, r2), min(c1, c2), max(r1, r2), max(c1, c2)


def encode_range(start_row: int, start_col: int, end_row: int, end_col: int) -> str:
    """Render a zero-based inclusive rectangle, collapsing single cells to 'A1'."""
    start = encode_cell(start_row, start_col)
    end = encode_cell(end_row, end_col)
    return start if start == end else f"{start}:{end}"


def _split_quoted(formula: str) -> List[Tuple[bool, str]]:
    """Split a formula into (is_quoted, text) segments on "..." and '...' literals."""
    segments: List[Tuple[bool, str]] = []
    buf = ""
    quote = None
    i = 0
    while i < len(formula):
        ch = formula[i]
        if quote is None:
            if ch in ('"', "'"):
                if buf:
                    segments.append((False, buf))
                buf = ch
                quote = ch
            else:
                buf += ch
        else:
            buf += ch
            if ch == quote:
                # Doubled quote is an escaped quote inside the literal
                if i + 1 < len(formula) and formula[i + 1] == quote:
                    buf += quote
                    i += 1
                else:
                    segments.append((True, buf))
                    buf = ""
                    quote = None
        i += 1
    if buf:
        segments.append((quote is not None, buf))
    return segments


def shift_formula(formula: str, d_row: int, d_col: int) -> str:
    """Shift the relative references of a formula by (d_row, d_col).

    Used to expand shared formulas for the cells that only carry a
    reference to the group's master formula. Absolute parts ($) are kept;
    references pushed off the sheet become #REF!.
    """
    if not d_row and not d_col:
        return formula

    def _shift(match: re.Match) -> str:
        col_abs, col_letters, row_abs, row_digits = match.groups()
        col = col_letter_to_index(col_letters)
        row = int(row_digits)
        if not col_abs:
            col += d_col
        if not row_abs:
            row += d_row
        if col < 1 or row < 1 or col > MAX_COLS or row > MAX_ROWS:
            return "#REF!"
        return f"{col_abs}{col_index_to_letter(col)}{row_abs}{row}"

    return "".join(
        text if quoted else _FORMULA_REF_RE.sub(_shift, text)
        for quoted, text in _split_quoted(formula)
    )
