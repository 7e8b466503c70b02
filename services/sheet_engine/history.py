"""Edit history ledger - bounded, newest-first record of applied batches."""

from __future__ import annotations

from collections import deque
from typing import Deque, List, Optional

from .schemas import EditHistoryEntry


class EditHistoryLedger:
    """Keeps the most recent ``limit`` edit batches.

    Recording past the limit evicts the oldest entry.
    """

    def __init__(self, limit: int = 10):
        if limit < 1:
            raise ValueError("History limit must be at least 1")
        self.limit = limit
        self._entries: Deque[EditHistoryEntry] = deque(maxlen=limit)

    def __len__(self) -> int:
        return len(self._entries)

    def record(self, entry: EditHistoryEntry) -> None:
        self._entries.appendleft(entry)

    def entries(self) -> List[EditHistoryEntry]:
        """All entries, newest first."""
        return list(self._entries)

    def latest(self) -> Optional[EditHistoryEntry]:
        return self._entries[0] if self._entries else None

    def pop_latest(self) -> Optional[EditHistoryEntry]:
        if not self._entries:
            return None
        return self._entries.popleft()

    def clear(self) -> None:
        self._entries.clear()
