"""The ordered stage catalog every workflow walks through."""

from __future__ import annotations

from typing import Iterator, List, Optional, Sequence

from pydantic import BaseModel


class Stage(BaseModel):
    """One named unit of work and the bus channel its deliverables land on."""

    name: str
    channel: str


class StageCatalog:
    """Immutable ordered list of stages.

    Algorithms that walk a workflow's progress only ever index into the
    catalog, so adding, removing or reordering stages is a data change.
    """

    def __init__(self, stages: Sequence[Stage], implementation_stage: str) -> None:
        if not stages:
            raise ValueError("Stage catalog cannot be empty")
        self._stages: List[Stage] = list(stages)
        names = [s.name for s in self._stages]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate stage names in catalog: {names}")
        self.implementation_index = self.index_of(implementation_stage)

    def __len__(self) -> int:
        return len(self._stages)

    def __iter__(self) -> Iterator[Stage]:
        return iter(self._stages)

    def __getitem__(self, index: int) -> Stage:
        return self._stages[index]

    @property
    def names(self) -> List[str]:
        return [s.name for s in self._stages]

    @property
    def last(self) -> Stage:
        return self._stages[-1]

    def index_of(self, name: str) -> int:
        """Return the index of stage ``name`` (case-insensitive)."""
        lowered = name.lower()
        for i, stage in enumerate(self._stages):
            if stage.name == lowered:
                return i
        raise KeyError(f"Unknown stage: {name}")

    def find(self, name: str) -> Optional[Stage]:
        try:
            return self._stages[self.index_of(name)]
        except KeyError:
            return None

    def by_channel(self, channel: str) -> Optional[int]:
        for i, stage in enumerate(self._stages):
            if stage.channel == channel:
                return i
        return None


DEFAULT_STAGES: List[Stage] = [
    Stage(name="research", channel="research"),
    Stage(name="critique", channel="critique"),
    Stage(name="backend", channel="backend"),
    Stage(name="frontend", channel="frontend"),
    Stage(name="qa", channel="qa"),
    Stage(name="analytics", channel="analytics"),
    Stage(name="deployment", channel="deployment"),
]

CRITIQUE_STAGE = "critique"
IMPLEMENTATION_STAGE = "backend"


def default_catalog() -> StageCatalog:
    return StageCatalog(DEFAULT_STAGES, implementation_stage=IMPLEMENTATION_STAGE)
