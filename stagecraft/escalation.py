"""Escalation: the single "surface to a human" path."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from . import channels
from .contracts import BusMessage, EscalationReason, LedgerStatus, WorkflowStatus, utcnow
from .ledger import LedgerStore
from .persistence import WorkflowRepository
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class Escalator:
    """Flag a workflow for human follow-up.

    An escalation updates the ledger and the durable store, publishes an
    event on ``escalations.<id>`` and writes ``<escalation_dir>/<id>.json``.
    Each step is attempted even when an earlier one fails, and no failure
    is ever raised to the caller. In-flight stage work is left running.
    """

    def __init__(
        self,
        ledger: LedgerStore,
        repository: WorkflowRepository,
        transport: BaseTransport,
        escalation_dir: str | Path,
    ) -> None:
        self._ledger = ledger
        self._repository = repository
        self._transport = transport
        self.escalation_dir = Path(escalation_dir)

    async def escalate(
        self,
        request_id: str,
        reason: EscalationReason | str,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        reason = reason.value if isinstance(reason, EscalationReason) else str(reason)
        context = context or {}
        logger.warning(f"Escalating {request_id}: {reason}")

        try:
            if not await self._ledger.update_status(request_id, LedgerStatus.ESCALATED, reason):
                logger.error(f"Ledger did not accept escalation of {request_id}")
        except Exception as e:
            logger.error(f"Failed to mark {request_id} escalated in ledger: {e}")

        try:
            await self._repository.update_status(request_id, WorkflowStatus.ESCALATED, reason)
        except Exception as e:
            logger.error(f"Failed to mark {request_id} escalated in store: {e}")

        try:
            await self._transport.publish(
                channels.escalation(request_id),
                BusMessage(
                    request_id=request_id,
                    payload={
                        "request_id": request_id,
                        "reason": reason,
                        "context": context,
                        "priority": "CRITICAL" if context.get("critical") else "HIGH",
                    },
                ),
            )
        except Exception as e:
            logger.error(f"Failed to publish escalation for {request_id}: {e}")

        try:
            path = await asyncio.to_thread(self._write_record, request_id, reason, context)
            logger.info(f"Escalation record for {request_id} written to {path}")
        except Exception as e:
            logger.error(f"Failed to write escalation record for {request_id}: {e}")

    def _write_record(self, request_id: str, reason: str, context: Dict[str, Any]) -> Path:
        self.escalation_dir.mkdir(parents=True, exist_ok=True)
        path = self.escalation_dir / f"{request_id}.json"
        record = {
            "request_id": request_id,
            "reason": reason,
            "context": context,
            "escalated_at": utcnow().isoformat(),
        }
        path.write_text(json.dumps(record, indent=2, default=str))
        return path

    async def publish_human_escalation(self, data: Dict[str, Any]) -> None:
        """Hand a decision to a human reviewer on ``strategic.escalations.human``."""
        request_id = data.get("request_id")
        try:
            await self._transport.publish(
                channels.HUMAN_ESCALATIONS,
                BusMessage(request_id=request_id, payload=dict(data)),
            )
            logger.info(f"Human escalation published for {request_id}")
        except Exception as e:
            logger.error(f"Failed to publish human escalation for {request_id}: {e}")
