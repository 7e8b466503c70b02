"""Pydantic schemas for the editable sheet model.

These schemas model the in-memory side of a workbook:
- Cells with a closed set of value kinds
- Read-only display styles decoded from the style table
- Merge regions (read-side only)
- Address-keyed updates and the change records they produce
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, FiniteFloat

from .address import encode_range


class CellType(str, Enum):
    """Value kinds a cell can hold."""
    EMPTY = "z"
    NUMBER = "n"
    STRING = "s"
    BOOLEAN = "b"
    DATE = "d"
    ERROR = "e"


CellValue = Union[bool, int, float, datetime, str, None]


def is_empty_value(value: Any) -> bool:
    """Empty cells hold either None or the empty string."""
    return value is None or value == ""


def infer_cell_type(value: Any) -> CellType:
    """Infer the kind of a plain Python value."""
    if is_empty_value(value):
        return CellType.EMPTY
    if isinstance(value, bool):
        return CellType.BOOLEAN
    if isinstance(value, (int, float)):
        return CellType.NUMBER
    if isinstance(value, datetime):
        return CellType.DATE
    return CellType.STRING


class CellStyle(BaseModel):
    """Display style derived from a cell's style record.

    Every field is optional; an unset field means the record did not
    specify it. Never used as the source of truth when writing.
    """
    background_color: Optional[str] = None  # "#RRGGBB"
    color: Optional[str] = None  # Text color "#RRGGBB"
    bold: Optional[bool] = None
    italic: Optional[bool] = None
    underline: Optional[bool] = None
    font_size: Optional[str] = None  # e.g. "11px"
    font_family: Optional[str] = None
    text_align: Optional[str] = None  # Horizontal alignment, verbatim
    border_top: Optional[str] = None
    border_bottom: Optional[str] = None
    border_left: Optional[str] = None
    border_right: Optional[str] = None

    def is_empty(self) -> bool:
        return not self.model_dump(exclude_none=True)


class Cell(BaseModel):
    """A single grid cell."""
    value: CellValue = ""
    formula: Optional[str] = None  # Without the leading '='
    type: Optional[CellType] = None
    style: Optional[CellStyle] = None

    def is_empty(self) -> bool:
        return is_empty_value(self.value) and not self.formula


class MergeRegion(BaseModel):
    """An inclusive rectangle of merged cells (zero-based)."""
    start_row: int
    start_col: int
    end_row: int
    end_col: int

    @property
    def ref(self) -> str:
        return encode_range(self.start_row, self.start_col, self.end_row, self.end_col)

    def contains(self, row: int, col: int) -> bool:
        return self.start_row <= row <= self.end_row and self.start_col <= col <= self.end_col

    def is_origin(self, row: int, col: int) -> bool:
        return row == self.start_row and col == self.start_col


class SheetGrid(BaseModel):
    """Dense row-major grid covering a sheet's declared rectangle.

    ``origin_row``/``origin_col`` are the absolute zero-based coordinates
    of ``rows[0][0]``. Grids are never mutated in place; edits produce a
    new grid via :meth:`replace`.
    """
    origin_row: int = 0
    origin_col: int = 0
    rows: List[List[Cell]] = Field(default_factory=list)

    @property
    def n_rows(self) -> int:
        return len(self.rows)

    @property
    def n_cols(self) -> int:
        return len(self.rows[0]) if self.rows else 0

    def contains(self, row: int, col: int) -> bool:
        return (
            self.origin_row <= row < self.origin_row + self.n_rows
            and self.origin_col <= col < self.origin_col + self.n_cols
        )

    def cell_at(self, row: int, col: int) -> Cell:
        """Return the cell at absolute (row, col). Raises IndexError outside the grid."""
        if not self.contains(row, col):
            raise IndexError(f"({row}, {col}) outside grid")
        return self.rows[row - self.origin_row][col - self.origin_col]

    def iter_cells(self) -> Iterator[Tuple[int, int, Cell]]:
        """Yield (row, col, cell) in row-major order with absolute coordinates."""
        for r, row in enumerate(self.rows):
            for c, cell in enumerate(row):
                yield self.origin_row + r, self.origin_col + c, cell

    def replace(self, replacements: Dict[Tuple[int, int], Cell]) -> "SheetGrid":
        """Return a new grid with the given cells swapped in."""
        rows = [list(row) for row in self.rows]
        for (row, col), cell in replacements.items():
            rows[row - self.origin_row][col - self.origin_col] = cell
        return SheetGrid(origin_row=self.origin_row, origin_col=self.origin_col, rows=rows)


class LoadedSheet(BaseModel):
    """Everything the loader derives for one sheet."""
    name: str
    grid: SheetGrid
    styles: Dict[Tuple[int, int], CellStyle] = Field(default_factory=dict)
    merges: List[MergeRegion] = Field(default_factory=list)

    def is_merged(self, row: int, col: int) -> bool:
        return any(m.contains(row, col) for m in self.merges)

    def merge_at(self, row: int, col: int) -> Optional[MergeRegion]:
        for merge in self.merges:
            if merge.contains(row, col):
                return merge
        return None


class CellUpdate(BaseModel):
    """One address-targeted update.

    ``value`` and ``formula`` distinguish "absent" from "explicitly
    cleared": only fields present in the payload are applied.
    """
    model_config = ConfigDict(extra="ignore")

    address: str
    value: Union[bool, int, FiniteFloat, str, None] = None  # inf/nan cannot be written
    formula: Optional[str] = None

    @property
    def has_value(self) -> bool:
        return "value" in self.model_fields_set

    @property
    def has_formula(self) -> bool:
        return "formula" in self.model_fields_set


class AppliedChange(BaseModel):
    """Before/after record for one applied update."""
    address: str
    before_value: CellValue = None
    after_value: CellValue = None
    before_formula: Optional[str] = None
    after_formula: Optional[str] = None
    before_type: Optional[CellType] = None
    after_type: Optional[CellType] = None


class SkippedUpdate(BaseModel):
    """An update dropped by the applier (bad or out-of-range address)."""
    address: Any
    reason: str


class CellSnapshot(BaseModel):
    """Serialized non-empty cell handed to the instruction translator."""
    address: str
    value: CellValue = None
    formula: Optional[str] = None
    type: Optional[CellType] = None


class EditHistoryEntry(BaseModel):
    """One applied instruction and its per-cell deltas."""
    id: str
    timestamp: datetime
    instruction: str
    sheet_name: str
    changes: List[AppliedChange] = Field(default_factory=list)
    format_preserved: bool = True
    explanation: Optional[str] = None


class StyleTable(BaseModel):
    """Raw style records parsed from styles.xml, kept as plain dicts."""
    fonts: List[Dict[str, Any]] = Field(default_factory=list)
    fills: List[Dict[str, Any]] = Field(default_factory=list)
    borders: List[Dict[str, Any]] = Field(default_factory=list)
    cell_xfs: List[Dict[str, Any]] = Field(default_factory=list)  # Cell format cross-references
    number_formats: Dict[int, str] = Field(default_factory=dict)  # numFmtId -> formatCode

    def raw_style(self, style_index: Optional[int]) -> Optional[Dict[str, Any]]:
        """Resolve a cellXfs index into one combined raw style record.

        Returns None when the index does not name a record.
        """
        if style_index is None or style_index < 0 or style_index >= len(self.cell_xfs):
            return None
        xf = self.cell_xfs[style_index]
        record: Dict[str, Any] = {}
        for key, table in (("font", self.fonts), ("fill", self.fills), ("border", self.borders)):
            idx = xf.get(f"{key}Id")
            if isinstance(idx, int) and 0 <= idx < len(table):
                record[key] = table[idx]
        if "alignment" in xf:
            record["alignment"] = xf["alignment"]
        return record

    def number_format_id(self, style_index: Optional[int]) -> int:
        if style_index is None or style_index < 0 or style_index >= len(self.cell_xfs):
            return 0
        return self.cell_xfs[style_index].get("numFmtId", 0)
