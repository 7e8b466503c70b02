"""API routes for natural-language workbook editing.

- Upload .xlsx/.xls -> session with the first sheet active
- Instructions (translated) and direct cell edits
- Edit history with undo
- Export back to .xlsx with formatting intact
"""
from __future__ import annotations

import logging
from urllib.parse import quote

from fastapi import APIRouter, Depends, File, HTTPException, Response, UploadFile
from pydantic import BaseModel, Field

from services.edit_session import EditOutcome, EditSession, SessionStore, get_session_store
from services.errors import EmptyResult, LoadFailure, SerializeFailure, SessionBusy, TranslationFailure
from services.instruction_translator import InstructionTranslator, get_translator
from services.settings import get_settings
from services.sheet_engine.schemas import CellUpdate


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/workbooks", tags=["workbooks"])

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


# =============================================================================
# MODELS
# =============================================================================

class SelectSheetRequest(BaseModel):
    """Request to switch the active sheet."""
    sheet: str


class InstructionRequest(BaseModel):
    """Free-text edit instruction for the active sheet."""
    instruction: str = Field(..., min_length=1)


class CellEditRequest(BaseModel):
    """Direct address-keyed edits for the active sheet."""
    updates: list[CellUpdate]
    note: str = "Manual edit"


# =============================================================================
# HELPERS
# =============================================================================

def _get_session(workbook_id: str, store: SessionStore) -> EditSession:
    session = store.get(workbook_id)
    if session is None:
        raise HTTPException(404, "Workbook not found")
    return session


def _outcome_response(session: EditSession, outcome: EditOutcome) -> dict:
    return {
        "applied": True,
        "entry": outcome.entry.model_dump(mode="json"),
        "skipped": [s.model_dump(mode="json") for s in outcome.skipped],
        "explanation": outcome.explanation,
        "workbook": session.summary(),
        "preview": session.preview(),
    }


def _empty_response(session: EditSession, e: EmptyResult) -> dict:
    return {
        "applied": False,
        "notice": str(e),
        "explanation": e.explanation,
        "workbook": session.summary(),
    }


def _content_disposition(filename: str) -> str:
    ascii_name = filename.encode("ascii", "replace").decode("ascii").replace("?", "_")
    return f"attachment; filename=\"{ascii_name}\"; filename*=UTF-8''{quote(filename)}"


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("/")
async def upload_workbook(
    file: UploadFile = File(...),
    store: SessionStore = Depends(get_session_store),
):
    """Upload a workbook and open an edit session on its first sheet."""
    if not file.filename:
        raise HTTPException(400, "No filename provided")

    if not file.filename.lower().endswith((".xlsx", ".xls")):
        raise HTTPException(400, "Only .xlsx and .xls files are supported")

    content = await file.read()
    max_bytes = get_settings().editor.max_upload_bytes
    if len(content) > max_bytes:
        raise HTTPException(413, f"File too large ({len(content):,} > {max_bytes:,} bytes)")

    try:
        session = store.create(content, file.filename)
    except LoadFailure as e:
        logger.warning(f"[UPLOAD] {file.filename}: {e}")
        raise HTTPException(400, str(e))

    return {**session.summary(), "preview": session.preview()}


@router.get("/{workbook_id}")
async def get_workbook(
    workbook_id: str,
    max_rows: int | None = None,
    store: SessionStore = Depends(get_session_store),
):
    """Get the session summary and a preview of the active sheet."""
    session = _get_session(workbook_id, store)
    return {**session.summary(), "preview": session.preview(max_rows)}


@router.put("/{workbook_id}/active-sheet")
async def select_sheet(
    workbook_id: str,
    payload: SelectSheetRequest,
    store: SessionStore = Depends(get_session_store),
):
    """Switch the active sheet."""
    session = _get_session(workbook_id, store)
    try:
        switched = session.select_sheet(payload.sheet)
    except SessionBusy as e:
        raise HTTPException(409, str(e))
    if not switched:
        raise HTTPException(404, f"Sheet not found: {payload.sheet}")
    return {**session.summary(), "preview": session.preview()}


@router.post("/{workbook_id}/instructions")
async def apply_instruction(
    workbook_id: str,
    payload: InstructionRequest,
    store: SessionStore = Depends(get_session_store),
    translator: InstructionTranslator = Depends(get_translator),
):
    """Translate a free-text instruction into cell updates and apply them."""
    session = _get_session(workbook_id, store)
    try:
        outcome = await session.apply_instruction(payload.instruction, translator)
    except SessionBusy as e:
        raise HTTPException(409, str(e))
    except TranslationFailure as e:
        raise HTTPException(502, str(e))
    except EmptyResult as e:
        return _empty_response(session, e)
    return _outcome_response(session, outcome)


@router.post("/{workbook_id}/cells")
async def edit_cells(
    workbook_id: str,
    payload: CellEditRequest,
    store: SessionStore = Depends(get_session_store),
):
    """Apply address-keyed updates directly, without translation."""
    session = _get_session(workbook_id, store)
    if session.processing:
        raise HTTPException(409, "An edit is already in progress")
    try:
        outcome = session.apply_updates(payload.updates, payload.note)
    except EmptyResult as e:
        return _empty_response(session, e)
    return _outcome_response(session, outcome)


@router.get("/{workbook_id}/history")
async def get_history(workbook_id: str, store: SessionStore = Depends(get_session_store)):
    """Edit history, newest first."""
    session = _get_session(workbook_id, store)
    return {
        "limit": session.ledger.limit,
        "entries": [entry.model_dump(mode="json") for entry in session.history()],
    }


@router.post("/{workbook_id}/history/undo")
async def undo_last_edit(workbook_id: str, store: SessionStore = Depends(get_session_store)):
    """Revert the newest history entry."""
    session = _get_session(workbook_id, store)
    try:
        entry = session.undo()
    except SessionBusy as e:
        raise HTTPException(409, str(e))
    return {
        "undone": entry.model_dump(mode="json") if entry else None,
        "workbook": session.summary(),
        "preview": session.preview(),
    }


@router.post("/{workbook_id}/export")
async def export_workbook(workbook_id: str, store: SessionStore = Depends(get_session_store)):
    """Export the edited workbook as .xlsx."""
    session = _get_session(workbook_id, store)
    try:
        filename, data = session.export()
    except SerializeFailure as e:
        logger.error(f"[EXPORT] {workbook_id}: {e}")
        raise HTTPException(500, f"Export failed: {e}")

    return Response(
        content=data,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": _content_disposition(filename)},
    )


@router.delete("/{workbook_id}")
async def delete_workbook(workbook_id: str, store: SessionStore = Depends(get_session_store)):
    """Discard the session and all its state."""
    if not store.delete(workbook_id):
        raise HTTPException(404, "Workbook not found")
    return {"deleted": workbook_id}
