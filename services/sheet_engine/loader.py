"""Sheet loader - derives the editable grid from the persisted workbook.

Walks the sheet's declared rectangle, producing a dense grid of cells
(value, formula, type, style), a style map holding only cells with at
least one style field, and the merge regions.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple
from xml.etree import ElementTree as ET

from services.errors import AddressError

from .address import decode_range, shift_formula
from .package import NS, SheetPart, Workbook
from .schemas import Cell, CellStyle, CellType, LoadedSheet, MergeRegion, SheetGrid
from .styles import decode_style, is_date_format


logger = logging.getLogger(__name__)

# Declared rectangles larger than this fall back to the populated extent
_MAX_GRID_CELLS = 2_000_000

_INT_RE = re.compile(r"^-?\d+$")

_EPOCH_1900 = datetime(1899, 12, 30)
_EPOCH_1904 = datetime(1904, 1, 1)


# =============================================================================
# DATES
# =============================================================================

def serial_to_datetime(serial: float, date1904: bool = False) -> datetime:
    """Convert a spreadsheet serial date to a datetime (millisecond precision)."""
    if date1904:
        base = _EPOCH_1904
    elif serial < 60:
        # Serials before the phantom 1900-02-29 are off by one day
        base = _EPOCH_1900 + timedelta(days=1)
    else:
        base = _EPOCH_1900
    return base + timedelta(milliseconds=round(serial * 86_400_000))


def datetime_to_serial(value: datetime, date1904: bool = False) -> float:
    """Convert a datetime to a spreadsheet serial date."""
    if value.tzinfo is not None:
        value = value.replace(tzinfo=None)
    if date1904:
        delta = value - _EPOCH_1904
    else:
        delta = value - _EPOCH_1900
    serial = delta.days + delta.seconds / 86_400 + delta.microseconds / 86_400_000_000
    if not date1904 and serial < 61:
        serial -= 1
    return serial


# =============================================================================
# FORMULAS
# =============================================================================

def shared_formula_masters(sheet: SheetPart) -> Dict[str, Tuple[int, int, str]]:
    """Map shared-formula group ids to (row, col, formula) of the master cell."""
    ns = NS["main"]
    masters: Dict[str, Tuple[int, int, str]] = {}
    for (row, col), cell_el in sheet.cells.items():
        f_el = cell_el.find(f"{{{ns}}}f")
        if f_el is None or f_el.get("t") != "shared" or not f_el.text:
            continue
        si = f_el.get("si")
        if si is not None:
            masters[si] = (row, col, f_el.text)
    return masters


def formula_text(
    cell_el: ET.Element,
    row: int,
    col: int,
    masters: Dict[str, Tuple[int, int, str]],
) -> Optional[str]:
    """Formula of a persisted cell, expanding shared-formula dependents."""
    f_el = cell_el.find(f"{{{NS['main']}}}f")
    if f_el is None:
        return None
    if f_el.text:
        return f_el.text
    if f_el.get("t") == "shared":
        master = masters.get(f_el.get("si", ""))
        if master is not None:
            m_row, m_col, m_formula = master
            return shift_formula(m_formula, row - m_row, col - m_col)
    return None


# =============================================================================
# CELL VALUES
# =============================================================================

def _parse_number(raw: str):
    text = raw.strip()
    if _INT_RE.match(text):
        return int(text)
    return float(text)


def decode_persisted_cell(
    cell_el: ET.Element,
    workbook: Workbook,
    formula: Optional[str] = None,
) -> Cell:
    """Decode a persisted <c> entry into a Cell without style."""
    ns = NS["main"]
    data_type = cell_el.get("t", "n")
    v_el = cell_el.find(f"{{{ns}}}v")
    raw = v_el.text if v_el is not None else None

    if data_type == "inlineStr":
        is_el = cell_el.find(f"{{{ns}}}is")
        text = "".join(t.text or "" for t in is_el.iter(f"{{{ns}}}t")) if is_el is not None else ""
        return Cell(value=text, formula=formula, type=CellType.STRING)

    if raw is None:
        return Cell(value="", formula=formula, type=CellType.EMPTY)

    if data_type == "s":
        text = None
        if raw.strip().isdigit():
            text = workbook.shared_string(int(raw))
        return Cell(value=raw if text is None else text, formula=formula, type=CellType.STRING)
    if data_type == "str":
        return Cell(value=raw, formula=formula, type=CellType.STRING)
    if data_type == "b":
        return Cell(value=raw.strip() in ("1", "true", "TRUE"), formula=formula, type=CellType.BOOLEAN)
    if data_type == "e":
        return Cell(value=raw, formula=formula, type=CellType.ERROR)
    if data_type == "d":
        try:
            return Cell(value=datetime.fromisoformat(raw.strip().rstrip("Z")), formula=formula, type=CellType.DATE)
        except ValueError:
            return Cell(value=raw, formula=formula, type=CellType.STRING)

    try:
        number = _parse_number(raw)
    except ValueError:
        return Cell(value=raw, formula=formula, type=CellType.STRING)

    style_index = int(cell_el.get("s", "0")) if cell_el.get("s", "0").isdigit() else 0
    fmt_id = workbook.styles.number_format_id(style_index)
    if is_date_format(fmt_id, workbook.styles.number_formats.get(fmt_id)):
        try:
            return Cell(
                value=serial_to_datetime(float(number), workbook.date1904),
                formula=formula,
                type=CellType.DATE,
            )
        except OverflowError:
            pass
    return Cell(value=number, formula=formula, type=CellType.NUMBER)


# =============================================================================
# SHEET LOADING
# =============================================================================

def parse_merges(sheet: SheetPart) -> List[MergeRegion]:
    """Parse merged cell ranges from a worksheet."""
    ns = NS["main"]
    merges: List[MergeRegion] = []
    merge_cells_el = sheet.root.find(f"{{{ns}}}mergeCells")
    if merge_cells_el is None:
        return merges
    for merge_cell in merge_cells_el.findall(f"{{{ns}}}mergeCell"):
        ref = merge_cell.get("ref")
        if not ref:
            continue
        try:
            start_row, start_col, end_row, end_col = decode_range(ref)
        except AddressError:
            continue
        merges.append(MergeRegion(start_row=start_row, start_col=start_col, end_row=end_row, end_col=end_col))
    return merges


def sheet_rectangle(sheet: SheetPart) -> Tuple[int, int, int, int]:
    """The sheet's declared occupied rectangle, zero-based and inclusive.

    Uses the <dimension> element, then the extent of the persisted cells,
    then a single A1 cell.
    """
    extent = sheet.used_extent()
    declared = sheet.dimension()
    if declared:
        try:
            r1, c1, r2, c2 = decode_range(declared)
        except AddressError:
            logger.warning(f"[LOAD] Ignoring malformed dimension {declared!r} on {sheet.name}")
        else:
            if (r2 - r1 + 1) * (c2 - c1 + 1) <= _MAX_GRID_CELLS:
                return r1, c1, r2, c2
            logger.warning(f"[LOAD] Dimension {declared} on {sheet.name} too large, using populated extent")
    if extent is not None:
        return extent
    return 0, 0, 0, 0


def load_sheet(workbook: Workbook, sheet_name: str) -> Optional[LoadedSheet]:
    """Load one sheet's grid, style map and merges.

    Returns None when the sheet does not exist; callers keep their prior state.
    """
    sheet = workbook.get_sheet(sheet_name)
    if sheet is None:
        return None

    start_row, start_col, end_row, end_col = sheet_rectangle(sheet)
    masters = shared_formula_masters(sheet)
    style_cache: Dict[int, CellStyle] = {}
    styles: Dict[Tuple[int, int], CellStyle] = {}
    rows: List[List[Cell]] = []

    for row in range(start_row, end_row + 1):
        grid_row: List[Cell] = []
        for col in range(start_col, end_col + 1):
            cell_el = sheet.persisted_entry(row, col)
            if cell_el is None:
                grid_row.append(Cell(value=""))
                continue

            cell = decode_persisted_cell(cell_el, workbook, formula_text(cell_el, row, col, masters))

            s_attr = cell_el.get("s")
            if s_attr and s_attr.isdigit():
                style_index = int(s_attr)
                if style_index not in style_cache:
                    style_cache[style_index] = decode_style(workbook.styles.raw_style(style_index))
                style = style_cache[style_index].model_copy()
                if not style.is_empty():
                    cell.style = style
                    styles[(row, col)] = style

            grid_row.append(cell)
        rows.append(grid_row)

    grid = SheetGrid(origin_row=start_row, origin_col=start_col, rows=rows)
    merges = parse_merges(sheet)
    logger.info(
        f"[LOAD] Sheet {sheet_name!r}: {grid.n_rows}x{grid.n_cols} grid, "
        f"{len(styles)} styled cells, {len(merges)} merges"
    )
    return LoadedSheet(name=sheet_name, grid=grid, styles=styles, merges=merges)
