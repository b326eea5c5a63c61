"""YAML file ledger shared with human owners."""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import ValidationError

from ..contracts import LedgerConflictError, LedgerEntry, LedgerError, LedgerStatus
from .base import LedgerStore

logger = logging.getLogger(__name__)


class FileLedger(LedgerStore):
    """Ledger stored as a YAML document with a ``requests`` list.

    Owners edit the same file by hand, so writes are never blind: an update
    given the ``expected_version`` the caller read is refused if an owner has
    bumped the entry since, the file is replaced atomically and read back to
    confirm the change landed. Entries that do not validate are logged and
    skipped. A concurrent external edit between the check and the replace
    can still be lost; that window is narrow but not closed.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # File helpers
    def _read(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        try:
            with open(self.path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise LedgerError(f"Ledger {self.path} is not valid YAML: {e}") from e
        return list(data.get("requests") or [])

    def _write(self, requests: list[dict[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
        try:
            with os.fdopen(fd, "w") as f:
                yaml.safe_dump({"requests": requests}, f, sort_keys=False, allow_unicode=True)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    @staticmethod
    def _find(requests: list[dict[str, Any]], request_id: str) -> Optional[dict[str, Any]]:
        for raw in requests:
            if str(raw.get("id")) == request_id:
                return raw
        return None

    def _entry(self, raw: dict[str, Any]) -> Optional[LedgerEntry]:
        data = {k: v for k, v in raw.items() if v is not None}
        try:
            data["id"] = str(data["id"])
            return LedgerEntry(**data)
        except (KeyError, ValidationError) as e:
            logger.warning(f"Skipping invalid ledger entry {raw.get('id')!r} in {self.path}: {e}")
            return None

    def _update_sync(
        self,
        request_id: str,
        status: LedgerStatus,
        reason: Optional[str],
        expected_version: Optional[int],
    ) -> None:
        requests = self._read()
        raw = self._find(requests, request_id)
        if raw is None:
            raise KeyError(request_id)
        version = int(raw.get("version") or 0)
        if expected_version is not None and version != expected_version:
            raise LedgerConflictError(
                f"{request_id} is at version {version}, expected {expected_version}"
            )

        raw["status"] = LedgerStatus(status).value
        if reason is not None:
            raw["reason"] = reason
        raw["version"] = version + 1
        self._write(requests)

        written = self._find(self._read(), request_id)
        if (
            written is None
            or written.get("status") != raw["status"]
            or int(written.get("version") or 0) != version + 1
        ):
            raise LedgerConflictError(f"Read-back verification failed for {request_id}")

    def _add_sync(self, entry: LedgerEntry) -> bool:
        requests = self._read()
        if self._find(requests, entry.id) is not None:
            return False
        requests.append(entry.model_dump(mode="json"))
        self._write(requests)
        return True

    # ------------------------------------------------------------------
    # Ledger API
    async def list_requests(self) -> list[LedgerEntry]:
        requests = await asyncio.to_thread(self._read)
        entries = (self._entry(raw) for raw in requests)
        return [entry for entry in entries if entry is not None]

    async def get_request(self, request_id: str) -> Optional[LedgerEntry]:
        raw = self._find(await asyncio.to_thread(self._read), request_id)
        return self._entry(raw) if raw else None

    async def update_status(
        self,
        request_id: str,
        status: LedgerStatus,
        reason: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> bool:
        async with self._lock:
            try:
                await asyncio.to_thread(
                    self._update_sync, request_id, status, reason, expected_version
                )
            except KeyError:
                logger.error(f"Request {request_id} not found in ledger {self.path}")
                return False
            except LedgerConflictError as e:
                logger.error(f"Ledger update for {request_id} not applied: {e}")
                return False
        suffix = f" ({reason})" if reason else ""
        logger.info(f"Updated {request_id} status to {LedgerStatus(status).value}{suffix}")
        return True

    async def add_request(self, entry: LedgerEntry) -> bool:
        async with self._lock:
            return await asyncio.to_thread(self._add_sync, entry)
