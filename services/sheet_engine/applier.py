"""Edit applier - applies address-keyed updates to a grid.

Grids are copy-on-write: the input grid is never mutated, so the caller
can keep it for before/after views. Bad or out-of-range addresses are
dropped one by one; the rest of the batch still applies.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from services.errors import AddressError

from .address import decode_cell, encode_cell
from .schemas import (
    AppliedChange,
    Cell,
    CellUpdate,
    SheetGrid,
    SkippedUpdate,
    infer_cell_type,
)


logger = logging.getLogger(__name__)


class ApplyResult(BaseModel):
    """Outcome of applying one batch."""
    grid: SheetGrid
    changes: List[AppliedChange] = Field(default_factory=list)
    skipped: List[SkippedUpdate] = Field(default_factory=list)


def normalize_formula(formula: Optional[str]) -> Optional[str]:
    """Strip whitespace and the leading '='; blank means no formula."""
    if formula is None:
        return None
    text = str(formula).strip()
    if text.startswith("="):
        text = text[1:].strip()
    return text or None


def _locate(grid: SheetGrid, address: str) -> Tuple[int, int]:
    row, col = decode_cell(address)
    if not grid.contains(row, col):
        raise AddressError(f"{address} is outside the sheet range")
    return row, col


def apply_updates(grid: SheetGrid, updates: Sequence[CellUpdate]) -> ApplyResult:
    """Apply updates in list order and record before/after values.

    - ``value`` present (even None) overwrites the value and re-infers the type
    - ``formula`` present (even None) overwrites the formula, else it is kept
    - a string value starting with '=' and no formula field sets the formula
    Later updates to the same address see the earlier ones.
    """
    replacements: Dict[Tuple[int, int], Cell] = {}
    changes: List[AppliedChange] = []
    skipped: List[SkippedUpdate] = []

    for update in updates:
        try:
            row, col = _locate(grid, update.address)
        except AddressError as e:
            logger.warning(f"[APPLY] Dropping update for {update.address!r}: {e}")
            skipped.append(SkippedUpdate(address=update.address, reason=str(e)))
            continue

        current = replacements.get((row, col)) or grid.cell_at(row, col)
        fields: Dict[str, object] = {}

        has_value = update.has_value
        has_formula = update.has_formula
        value = update.value
        formula = update.formula
        if has_value and not has_formula and isinstance(value, str) and value.startswith("=") and len(value) > 1:
            has_value, has_formula, formula = False, True, value

        if has_value:
            fields["value"] = "" if value is None else value
            fields["type"] = infer_cell_type(fields["value"])
        if has_formula:
            fields["formula"] = normalize_formula(formula)

        updated = current.model_copy(update=fields)
        replacements[(row, col)] = updated
        changes.append(AppliedChange(
            address=encode_cell(row, col),
            before_value=current.value,
            after_value=updated.value,
            before_formula=current.formula,
            after_formula=updated.formula,
            before_type=current.type,
            after_type=updated.type,
        ))

    new_grid = grid.replace(replacements)
    logger.info(f"[APPLY] Applied {len(changes)} update(s), skipped {len(skipped)}")
    return ApplyResult(grid=new_grid, changes=changes, skipped=skipped)


def revert_changes(grid: SheetGrid, changes: Sequence[AppliedChange]) -> ApplyResult:
    """Restore the before-state of recorded changes, newest first.

    Styles are untouched. Addresses no longer inside the grid are skipped.
    """
    replacements: Dict[Tuple[int, int], Cell] = {}
    restored: List[AppliedChange] = []
    skipped: List[SkippedUpdate] = []

    for change in reversed(list(changes)):
        try:
            row, col = _locate(grid, change.address)
        except AddressError as e:
            skipped.append(SkippedUpdate(address=change.address, reason=str(e)))
            continue
        current = replacements.get((row, col)) or grid.cell_at(row, col)
        reverted = current.model_copy(update={
            "value": "" if change.before_value is None else change.before_value,
            "formula": change.before_formula,
            "type": change.before_type,
        })
        replacements[(row, col)] = reverted
        restored.append(AppliedChange(
            address=change.address,
            before_value=current.value,
            after_value=reverted.value,
            before_formula=current.formula,
            after_formula=reverted.formula,
            before_type=current.type,
            after_type=reverted.type,
        ))

    return ApplyResult(grid=grid.replace(replacements), changes=restored, skipped=skipped)
