"""Ledger abstraction: the owner-facing record of requests."""

from __future__ import annotations

from typing import Optional, Protocol

from ..contracts import LedgerEntry, LedgerStatus


class LedgerStore(Protocol):
    """Protocol for ledger backends.

    The engine mirrors workflow status into the ledger but does not own it;
    owners may edit entries concurrently.
    """

    async def list_requests(self) -> list[LedgerEntry]:
        """Return every request currently in the ledger."""

    async def get_request(self, request_id: str) -> Optional[LedgerEntry]:
        """Return one request, or ``None`` if it is not in the ledger."""

    async def update_status(
        self,
        request_id: str,
        status: LedgerStatus,
        reason: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> bool:
        """Set the status of a request; ``False`` if it was not applied.

        With ``expected_version`` the update only lands if the entry is still
        at the version the caller read. A ``None`` reason keeps the current one.
        """

    async def add_request(self, entry: LedgerEntry) -> bool:
        """Add a request; ``False`` if one with the same id already exists."""
