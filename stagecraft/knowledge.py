"""Best-effort knowledge store for decisions, learnings and deliverables."""

from __future__ import annotations

import logging
import re
from typing import Any, Awaitable, Dict, Iterable, List, Optional, Protocol

from .contracts import StrategicDecision, utcnow

logger = logging.getLogger(__name__)

# Memory types consulted before a workflow starts.
EXPERIENCE_TYPES = ("workflow_completion", "strategic_decision", "best_practice", "gotcha")
PATTERN_TYPES = ("research", "implementation")

_WORD = re.compile(r"[a-z0-9]{3,}")


def _terms(text: str) -> set[str]:
    return set(_WORD.findall(text.lower()))


class KnowledgeStore(Protocol):
    async def store_decision(self, decision: StrategicDecision) -> None:
        ...

    async def store_learning(
        self, request_id: str, content: str, metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        ...

    async def cache_deliverable(
        self, request_id: str, stage: str, payload: Dict[str, Any]
    ) -> None:
        ...

    async def search(
        self, query: str, memory_types: Optional[Iterable[str]] = None, limit: int = 5
    ) -> List[Dict[str, Any]]:
        """Return memories relevant to ``query``, best match first."""
        ...


class InMemoryKnowledgeStore(KnowledgeStore):
    """Keeps everything in lists; enough for a single process and tests.

    Search ranks by the share of query words a memory contains.
    """

    def __init__(self) -> None:
        self.decisions: List[StrategicDecision] = []
        self.learnings: List[Dict[str, Any]] = []
        self.deliverables: Dict[tuple[str, str], Dict[str, Any]] = {}

    async def store_decision(self, decision: StrategicDecision) -> None:
        self.decisions.append(decision)

    async def store_learning(
        self, request_id: str, content: str, metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        self.learnings.append(
            {
                "request_id": request_id,
                "content": content,
                "metadata": metadata or {},
                "created_at": utcnow(),
            }
        )

    async def cache_deliverable(
        self, request_id: str, stage: str, payload: Dict[str, Any]
    ) -> None:
        self.deliverables[(request_id, stage)] = payload

    def _memories(self) -> Iterable[Dict[str, Any]]:
        for item in self.learnings:
            yield {
                "request_id": item["request_id"],
                "content": item["content"],
                "memory_type": item["metadata"].get("learning_type", "workflow_completion"),
            }
        for decision in self.decisions:
            yield {
                "request_id": decision.request_id,
                "content": f"{decision.decision}: {decision.reasoning}",
                "memory_type": "strategic_decision",
            }
        for (request_id, stage), payload in self.deliverables.items():
            summary = payload.get("summary")
            if summary:
                yield {
                    "request_id": request_id,
                    "content": str(summary),
                    "memory_type": "research" if stage == "research" else "implementation",
                }

    async def search(
        self, query: str, memory_types: Optional[Iterable[str]] = None, limit: int = 5
    ) -> List[Dict[str, Any]]:
        wanted = _terms(query)
        if not wanted:
            return []
        types = set(memory_types) if memory_types is not None else None
        scored = []
        for memory in self._memories():
            if types is not None and memory["memory_type"] not in types:
                continue
            relevance = len(wanted & _terms(memory["content"])) / len(wanted)
            if relevance > 0:
                scored.append({**memory, "relevance": round(relevance, 2)})
        scored.sort(key=lambda m: m["relevance"], reverse=True)
        return scored[:limit]


async def remember(write: Awaitable[None], what: str) -> None:
    """Await a knowledge write, logging instead of raising on failure."""
    try:
        await write
    except Exception as e:
        logger.warning(f"Failed to store {what}: {e}")


async def strategic_context(store: KnowledgeStore, request_id: str, title: str) -> Dict[str, Any]:
    """Past experience relevant to a request, gathered before it starts.

    Never raises; an unavailable store yields empty context.
    """
    try:
        similar = await store.search(title, EXPERIENCE_TYPES, limit=5)
        patterns = await store.search(title, PATTERN_TYPES, limit=3)
    except Exception as e:
        logger.warning(f"Failed to retrieve strategic context for {request_id}: {e}")
        return {"similar_workflows": [], "technical_patterns": []}

    similar = [m for m in similar if m["request_id"] != request_id]
    patterns = [m for m in patterns if m["request_id"] != request_id]
    logger.info(f"Retrieved {len(similar)} similar memories for {request_id}")
    return {"similar_workflows": similar, "technical_patterns": patterns}
