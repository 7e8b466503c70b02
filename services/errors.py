"""Error taxonomy for the workbook editor.

Every failure is recoverable: the session keeps its last-known-good
workbook, grid and ledger, and the caller may retry.
"""
from __future__ import annotations


class SheetEditorError(Exception):
    """Base class for all editor errors."""


class LoadFailure(SheetEditorError):
    """The uploaded bytes could not be parsed as a supported workbook."""


class TranslationFailure(SheetEditorError):
    """The instruction translator errored, timed out or returned unparsable content."""


class EmptyResult(SheetEditorError):
    """The translator succeeded but produced no applicable cell updates.

    This is a no-op notice rather than a hard error.
    """

    def __init__(self, message: str = "No applicable changes", explanation: str | None = None):
        super().__init__(message)
        self.explanation = explanation


class AddressError(SheetEditorError, ValueError):
    """A cell address is malformed or outside the active grid."""


class SerializeFailure(SheetEditorError):
    """Encoding the edited workbook failed."""


class SessionBusy(SheetEditorError):
    """An edit batch is already in flight for this session."""
