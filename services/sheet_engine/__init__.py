"""Sheet Engine - format-preserving cell editing for workbooks.

This module handles:
1. Loading .xlsx (and converted .xls) packages into a persisted Workbook
2. Deriving an editable grid, display styles and merges per sheet
3. Applying address-keyed updates to the grid
4. Reconciling edited grids back into the Workbook and encoding it
"""

from .address import decode_cell, decode_range, encode_cell, encode_range
from .applier import ApplyResult, apply_updates, revert_changes
from .history import EditHistoryLedger
from .loader import load_sheet
from .package import Workbook, load_workbook
from .schemas import (
    # Core
    Cell,
    CellStyle,
    CellType,
    MergeRegion,
    SheetGrid,
    LoadedSheet,
    # Edits
    CellUpdate,
    AppliedChange,
    SkippedUpdate,
    CellSnapshot,
    EditHistoryEntry,
)
from .styles import decode_style
from .writer import encode_workbook, sync_sheet

__all__ = [
    # Core schemas
    "Cell",
    "CellStyle",
    "CellType",
    "MergeRegion",
    "SheetGrid",
    "LoadedSheet",
    # Edit schemas
    "CellUpdate",
    "AppliedChange",
    "SkippedUpdate",
    "CellSnapshot",
    "EditHistoryEntry",
    # Addresses
    "encode_cell",
    "decode_cell",
    "encode_range",
    "decode_range",
    # Functions
    "load_workbook",
    "load_sheet",
    "decode_style",
    "apply_updates",
    "revert_changes",
    "sync_sheet",
    "encode_workbook",
    # Types
    "Workbook",
    "ApplyResult",
    "EditHistoryLedger",
]
