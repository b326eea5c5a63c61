"""Specialist dispatcher: hands stage work to the agents that execute it."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol

from . import channels
from .contracts import BusMessage, DispatchError, DispatchStatus, WorkOrder
from .persistence import WorkflowRepository
from .stages import StageCatalog
from .transports import BaseTransport

logger = logging.getLogger(__name__)

WAREHOUSE = "warehouse"
SALES = "sales"
PROCUREMENT = "procurement"

_ROUTING = (
    (WAREHOUSE, ("ITEM", "STOCK", "WAREHOUSE", "INVENTORY", "BIN")),
    (SALES, ("SALES", "CUSTOMER", "CRM", "ORDER", "INVOICE", "PRICING")),
    (PROCUREMENT, ("VENDOR", "PROCUREMENT", "PURCHASE", "SUPPLIER")),
)


def route_assignee(request_id: str) -> str:
    """Pick the owning role for a request from keywords in its number."""
    upper = request_id.upper()
    for role, keywords in _ROUTING:
        if any(k in upper for k in keywords):
            return role
    return WAREHOUSE


class SpecialistDispatcher(Protocol):
    """Invokes the external specialists that perform stage work."""

    async def start_workflow(
        self, request_id: str, title: str, assignee: str, context: Optional[Dict[str, Any]] = None
    ) -> None:
        ...

    async def resume_from_stage(
        self,
        request_id: str,
        title: str,
        assignee: str,
        stage_index: int,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        ...

    async def restart_from_stage(self, request_id: str, stage_index: int, reason: str) -> None:
        ...

    async def get_status(self, request_id: str) -> Optional[DispatchStatus]:
        ...


class BusDispatcher(SpecialistDispatcher):
    """Publish ``WorkOrder`` messages on ``work.<stage>`` channels.

    Status is answered from the durable workflow store, which the pipeline
    driver writes before every dispatch.
    """

    def __init__(
        self,
        transport: BaseTransport,
        repository: WorkflowRepository,
        catalog: StageCatalog,
    ) -> None:
        self._transport = transport
        self._repository = repository
        self._catalog = catalog

    async def _send(self, order: WorkOrder) -> None:
        stage = self._catalog[order.stage_index]
        message = BusMessage(request_id=order.request_id, payload=order.model_dump(mode="json"))
        try:
            await self._transport.publish(channels.work(stage), message)
        except Exception as e:
            raise DispatchError(
                f"Could not dispatch {stage.name} for {order.request_id}: {e}"
            ) from e
        logger.info(f"Dispatched {stage.name} (stage {order.stage_index}) for {order.request_id}")

    async def start_workflow(
        self, request_id: str, title: str, assignee: str, context: Optional[Dict[str, Any]] = None
    ) -> None:
        await self.resume_from_stage(request_id, title, assignee, 0, context)

    async def resume_from_stage(
        self,
        request_id: str,
        title: str,
        assignee: str,
        stage_index: int,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        if not 0 <= stage_index < len(self._catalog):
            raise DispatchError(f"Stage index {stage_index} out of range for {request_id}")
        await self._send(
            WorkOrder(
                request_id=request_id,
                title=title,
                assignee=assignee,
                stage_index=stage_index,
                stage_name=self._catalog[stage_index].name,
                context=context or {},
            )
        )

    async def restart_from_stage(self, request_id: str, stage_index: int, reason: str) -> None:
        record = await self._repository.get_by_request_id(request_id)
        if record is None:
            raise DispatchError(f"Cannot restart unknown workflow {request_id}")
        await self._send(
            WorkOrder(
                request_id=request_id,
                title=record.title,
                assignee=record.assignee or route_assignee(request_id),
                stage_index=stage_index,
                stage_name=self._catalog[stage_index].name,
                reason=reason,
            )
        )

    async def get_status(self, request_id: str) -> Optional[DispatchStatus]:
        record = await self._repository.get_by_request_id(request_id)
        if record is None:
            return None
        return DispatchStatus(
            status=record.status,
            stage=record.current_stage,
            assignee=record.assignee,
            started_at=record.started_at,
            completed_at=record.completed_at,
        )
