from typing import Any, Dict, Optional

import pytest

from stagecraft import channels
from stagecraft.contracts import BusMessage
from stagecraft.dispatch import BusDispatcher
from stagecraft.driver import PipelineDriver
from stagecraft.escalation import Escalator
from stagecraft.ledger import InMemoryLedger
from stagecraft.persistence import InMemoryWorkflowRepository
from stagecraft.stages import default_catalog
from stagecraft.transports.inmemory import InMemoryTransport


@pytest.fixture
def transport():
    return InMemoryTransport()


@pytest.fixture
def repository():
    return InMemoryWorkflowRepository()


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def catalog():
    return default_catalog()


@pytest.fixture
def dispatcher(transport, repository, catalog):
    return BusDispatcher(transport, repository, catalog)


@pytest.fixture
def driver(transport, repository, dispatcher, catalog):
    return PipelineDriver(transport, repository, dispatcher, catalog)


@pytest.fixture
def escalator(ledger, repository, transport, tmp_path):
    return Escalator(ledger, repository, transport, tmp_path / "escalations")


@pytest.fixture
def deliver(transport, catalog):
    """Publish a deliverable for each of the given stage indexes."""

    async def _deliver(
        request_id: str, *indexes: int, payload: Optional[Dict[str, Any]] = None
    ) -> None:
        for index in indexes:
            await transport.publish(
                channels.deliverable(catalog[index], request_id),
                BusMessage(request_id=request_id, payload=payload or {"status": "DONE"}),
            )

    return _deliver
