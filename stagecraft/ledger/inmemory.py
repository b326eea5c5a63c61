"""In-memory ledger for tests and single-process runs."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, Optional

from ..contracts import LedgerEntry, LedgerStatus
from .base import LedgerStore

logger = logging.getLogger(__name__)


class InMemoryLedger(LedgerStore):
    """Keep ledger entries in a dict, in insertion order."""

    def __init__(self, entries: Iterable[LedgerEntry] = ()) -> None:
        self._entries: Dict[str, LedgerEntry] = {e.id: e for e in entries}

    async def list_requests(self) -> list[LedgerEntry]:
        return [e.model_copy() for e in self._entries.values()]

    async def get_request(self, request_id: str) -> Optional[LedgerEntry]:
        entry = self._entries.get(request_id)
        return entry.model_copy() if entry else None

    async def update_status(
        self,
        request_id: str,
        status: LedgerStatus,
        reason: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> bool:
        entry = self._entries.get(request_id)
        if entry is None:
            logger.error(f"Request {request_id} not found in ledger")
            return False
        if expected_version is not None and entry.version != expected_version:
            logger.error(
                f"Ledger update for {request_id} not applied: "
                f"version {entry.version}, expected {expected_version}"
            )
            return False
        entry.status = LedgerStatus(status)
        if reason is not None:
            entry.reason = reason
        entry.version += 1
        return True

    async def add_request(self, entry: LedgerEntry) -> bool:
        if entry.id in self._entries:
            return False
        self._entries[entry.id] = entry.model_copy()
        return True
