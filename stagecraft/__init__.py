"""Stagecraft: staged workflow orchestration with recovery and admission control."""

from .breaker import CircuitBreaker, CircuitState
from .contracts import BusMessage, LedgerEntry, LedgerStatus, WorkflowStatus
from .ledger import get_ledger
from .orchestrator import Orchestrator
from .persistence import get_repository
from .stages import Stage, StageCatalog, default_catalog
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "BusMessage",
    "CircuitBreaker",
    "CircuitState",
    "LedgerEntry",
    "LedgerStatus",
    "Orchestrator",
    "Stage",
    "StageCatalog",
    "WorkflowStatus",
    "default_catalog",
    "get_ledger",
    "get_repository",
    "get_transport",
]
