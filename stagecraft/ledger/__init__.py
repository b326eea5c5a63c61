"""Ledger backends and factory."""

from __future__ import annotations

from typing import Optional

from ..config import StagecraftConfig, load_config
from .base import LedgerStore
from .file import FileLedger
from .inmemory import InMemoryLedger


def get_ledger(
    backend: Optional[str] = None, config: Optional[StagecraftConfig] = None
) -> LedgerStore:
    """Factory function to get the configured ledger."""

    config = config or load_config()
    backend = (backend or config.ledger.backend).lower()

    if backend == "inmemory":
        return InMemoryLedger()
    elif backend == "file":
        return FileLedger(config.ledger.path)
    else:
        raise ValueError(f"Unsupported ledger backend: {backend}")


__all__ = ["FileLedger", "InMemoryLedger", "LedgerStore", "get_ledger"]
