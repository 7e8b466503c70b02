"""Edit session - single orchestration point for one uploaded workbook.

Flow:
    upload -> load_workbook -> load_sheet (grid, styles, merges)
    instruction -> build_snapshot -> translator -> apply_updates
                -> sync_sheet (workbook) -> ledger
    export -> sync_sheet -> encode_workbook

The grid is the mutable source of truth while editing. The persisted
workbook is written only through the serializer: after every applied
batch and before every export.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import PurePath
from typing import Any, Dict, List, Optional, Sequence, Tuple

from services.errors import EmptyResult, LoadFailure, SessionBusy, TranslationFailure
from services.instruction_translator import InstructionTranslator, build_snapshot
from services.settings import Settings, get_settings
from services.sheet_engine.address import encode_cell
from services.sheet_engine.applier import apply_updates, revert_changes
from services.sheet_engine.history import EditHistoryLedger
from services.sheet_engine.loader import load_sheet
from services.sheet_engine.package import Workbook, load_workbook
from services.sheet_engine.schemas import (
    CellUpdate,
    EditHistoryEntry,
    LoadedSheet,
    SheetGrid,
    SkippedUpdate,
)
from services.sheet_engine.writer import encode_workbook, sync_sheet

logger = logging.getLogger(__name__)


def export_filename(original: str | None, today: date | None = None) -> str:
    """``<base>_edited_<YYYYMMDD>.xlsx`` for the uploaded file name."""
    base = PurePath(original).stem if original else ""
    stamp = (today or datetime.now()).strftime("%Y%m%d")
    return f"{base or 'workbook'}_edited_{stamp}.xlsx"


@dataclass
class EditOutcome:
    """Result of one applied batch."""
    entry: EditHistoryEntry
    skipped: List[SkippedUpdate] = field(default_factory=list)

    @property
    def explanation(self) -> str | None:
        return self.entry.explanation


class EditSession:
    """Owns one workbook, its active sheet and its edit history.

    Does NOT handle HTTP concerns.
    """

    def __init__(self, session_id: str | None = None, settings: Settings | None = None):
        self.id = session_id or uuid.uuid4().hex[:12]
        self._settings = settings or get_settings()
        self.workbook: Workbook | None = None
        self.filename: str | None = None
        self.sheet: LoadedSheet | None = None
        self.ledger = EditHistoryLedger(self._settings.editor.history_limit)
        self.processing = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def loaded(self) -> bool:
        return self.workbook is not None and self.sheet is not None

    @property
    def grid(self) -> SheetGrid:
        return self._require_sheet().grid

    @property
    def active_sheet(self) -> str | None:
        return self.sheet.name if self.sheet else None

    def _require_sheet(self) -> LoadedSheet:
        if self.workbook is None or self.sheet is None:
            raise LoadFailure("No workbook loaded")
        return self.sheet

    def load(self, data: bytes, filename: str) -> None:
        """Parse uploaded bytes and replace all session state.

        On failure the previous workbook, sheet and history are kept.
        """
        workbook = load_workbook(data, filename)
        first = load_sheet(workbook, workbook.sheet_names[0])
        if first is None:
            raise LoadFailure(f"{filename}: first sheet could not be loaded")

        self.workbook = workbook
        self.filename = filename
        self.sheet = first
        self.ledger.clear()
        logger.info(f"[SESSION] {self.id}: loaded {filename}, active sheet {first.name!r}")

    def select_sheet(self, name: str) -> bool:
        """Switch the active sheet. Unknown names leave the state unchanged."""
        if self.processing:
            raise SessionBusy("An edit is in progress")
        if self.workbook is None:
            return False
        loaded = load_sheet(self.workbook, name)
        if loaded is None:
            return False
        self.sheet = loaded
        return True

    def reset(self) -> None:
        self.workbook = None
        self.filename = None
        self.sheet = None
        self.ledger.clear()
        self.processing = False

    def is_merged(self, row: int, col: int) -> bool:
        return self.sheet is not None and self.sheet.is_merged(row, col)

    # ------------------------------------------------------------------
    # Editing
    # ------------------------------------------------------------------

    def _commit_grid(self, sheet: LoadedSheet, grid: SheetGrid) -> LoadedSheet:
        """Sync a grid into the workbook and return the sheet view holding it.

        Cells whose persisted entry was deleted also lose their style.
        """
        sync_sheet(self.workbook, sheet.name, grid)
        persisted = self.workbook.get_sheet(sheet.name)
        styles = dict(sheet.styles)
        replacements = {}
        for position in list(styles):
            if persisted.persisted_entry(*position) is None and grid.contains(*position):
                del styles[position]
                replacements[position] = grid.cell_at(*position).model_copy(update={"style": None})
        if replacements:
            grid = grid.replace(replacements)
        return sheet.model_copy(update={"grid": grid, "styles": styles})

    def apply_updates(
        self,
        updates: Sequence[CellUpdate],
        instruction: str,
        explanation: str | None = None,
    ) -> EditOutcome:
        """Apply address-keyed updates to the active sheet and record them.

        Raises:
            EmptyResult: No update applied (all missing or out of range)
        """
        sheet = self._require_sheet()
        result = apply_updates(sheet.grid, updates)
        if not result.changes:
            raise EmptyResult(explanation=explanation)

        self.sheet = self._commit_grid(sheet, result.grid)
        entry = EditHistoryEntry(
            id=uuid.uuid4().hex,
            timestamp=datetime.now(),
            instruction=instruction,
            sheet_name=sheet.name,
            changes=result.changes,
            format_preserved=True,
            explanation=explanation,
        )
        self.ledger.record(entry)
        logger.info(f"[SESSION] {self.id}: applied {len(result.changes)} change(s) to {sheet.name!r}")
        return EditOutcome(entry=entry, skipped=result.skipped)

    async def apply_instruction(self, instruction: str, translator: InstructionTranslator) -> EditOutcome:
        """Translate a free-text instruction and apply the resulting updates.

        Only one batch runs at a time per session. Translator errors and
        timeouts surface as TranslationFailure without touching the grid.
        """
        if self.processing:
            raise SessionBusy("An edit is already in progress")
        sheet = self._require_sheet()

        self.processing = True
        try:
            snapshot = build_snapshot(sheet.grid, self._settings.translator.max_snapshot_cells)
            timeout = self._settings.translator.timeout_seconds
            try:
                result = await asyncio.wait_for(translator.translate(snapshot, instruction), timeout=timeout)
            except (TranslationFailure, EmptyResult):
                raise
            except asyncio.TimeoutError as e:
                raise TranslationFailure(f"Translator timed out after {timeout:g}s") from e
            except Exception as e:
                logger.error(f"[SESSION] {self.id}: translator failed: {e}")
                raise TranslationFailure(f"Translation failed: {e}") from e

            if not result.updates:
                raise EmptyResult(explanation=result.explanation or None)
            return self.apply_updates(result.updates, instruction, result.explanation or None)
        finally:
            self.processing = False

    def undo(self) -> EditHistoryEntry | None:
        """Revert the newest history entry and remove it from the ledger.

        Returns the reverted entry, or None when there is nothing to undo.
        """
        if self.processing:
            raise SessionBusy("An edit is in progress")
        if self.workbook is None:
            return None
        entry = self.ledger.pop_latest()
        if entry is None:
            return None

        if self.sheet is not None and entry.sheet_name == self.sheet.name:
            target = self.sheet
        else:
            target = load_sheet(self.workbook, entry.sheet_name)
            if target is None:
                logger.warning(f"[SESSION] {self.id}: sheet {entry.sheet_name!r} missing, history entry dropped")
                return entry

        result = revert_changes(target.grid, entry.changes)
        committed = self._commit_grid(target, result.grid)
        if self.sheet is not None and committed.name == self.sheet.name:
            self.sheet = committed
        logger.info(f"[SESSION] {self.id}: undid {len(result.changes)} change(s) on {entry.sheet_name!r}")
        return entry

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def export(self) -> Tuple[str, bytes]:
        """Sync the active grid and encode the workbook as .xlsx."""
        sheet = self._require_sheet()
        sync_sheet(self.workbook, sheet.name, sheet.grid)
        data = encode_workbook(self.workbook)
        return export_filename(self.filename), data

    def history(self) -> List[EditHistoryEntry]:
        return self.ledger.entries()

    def preview(self, max_rows: int | None = None) -> Dict[str, Any]:
        """UI-neutral view of the active sheet."""
        sheet = self._require_sheet()
        grid = sheet.grid
        limit = self._settings.editor.preview_rows if max_rows is None else max_rows

        rows: List[List[Dict[str, Any]]] = []
        for r_offset, grid_row in enumerate(grid.rows[:limit]):
            row = grid.origin_row + r_offset
            cells = []
            for c_offset, cell in enumerate(grid_row):
                col = grid.origin_col + c_offset
                merge = sheet.merge_at(row, col)
                value = cell.value.isoformat() if isinstance(cell.value, datetime) else cell.value
                cells.append({
                    "address": encode_cell(row, col),
                    "value": value,
                    "formula": cell.formula,
                    "type": cell.type.value if cell.type else None,
                    "style": cell.style.model_dump(exclude_none=True) if cell.style else None,
                    "merged": merge is not None,
                    "merge_origin": merge is not None and merge.is_origin(row, col),
                })
            rows.append(cells)

        return {
            "sheet": sheet.name,
            "n_rows": grid.n_rows,
            "n_cols": grid.n_cols,
            "origin": encode_cell(grid.origin_row, grid.origin_col),
            "rows": rows,
            "merges": [m.ref for m in sheet.merges],
            "truncated": grid.n_rows > limit,
        }

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "filename": self.filename,
            "source_format": self.workbook.source_format if self.workbook else None,
            "sheets": self.workbook.sheet_names if self.workbook else [],
            "active_sheet": self.active_sheet,
            "history_count": len(self.ledger),
            "processing": self.processing,
        }


class SessionStore:
    """In-memory sessions keyed by id."""

    def __init__(self, settings: Settings | None = None):
        self._settings = settings
        self._sessions: Dict[str, EditSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def create(self, data: bytes, filename: str) -> EditSession:
        session = EditSession(settings=self._settings)
        session.load(data, filename)
        self._sessions[session.id] = session
        return session

    def get(self, session_id: str) -> Optional[EditSession]:
        return self._sessions.get(session_id)

    def delete(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.reset()
        return True


# Singleton
_store: SessionStore | None = None


def get_session_store() -> SessionStore:
    """Get the session store singleton."""
    global _store
    if _store is None:
        _store = SessionStore()
    return _store
