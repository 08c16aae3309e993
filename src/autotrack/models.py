from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple


class ModelError(ValueError):
    """Raised for malformed objective/state payloads."""


class ObjectiveState(Enum):
    LOCKED = "locked"
    UNLOCKED = "unlocked"
    COMPLETE = "complete"

    @classmethod
    def parse(cls, value: Any) -> "ObjectiveState":
        if isinstance(value, ObjectiveState):
            return value
        text = str(value).strip().lower()
        if text.startswith("objective_"):
            text = text[len("objective_"):]
        for item in cls:
            if item.value == text:
                return item
        raise ModelError(
            f"Unsupported objective state '{value}'. Supported: locked|unlocked|complete."
        )

    @property
    def ordinal(self) -> int:
        return _STATE_ORDER[self]

    def at_least(self, threshold: "ObjectiveState") -> bool:
        return self.ordinal >= threshold.ordinal

    def next_manual(self) -> "ObjectiveState":
        """State a manual click moves to: locked -> unlocked -> complete -> locked."""
        if self is ObjectiveState.LOCKED:
            return ObjectiveState.UNLOCKED
        if self is ObjectiveState.UNLOCKED:
            return ObjectiveState.COMPLETE
        return ObjectiveState.LOCKED


_STATE_ORDER: Dict[ObjectiveState, int] = {
    ObjectiveState.LOCKED: 0,
    ObjectiveState.UNLOCKED: 1,
    ObjectiveState.COMPLETE: 2,
}

ObjectiveUpdate = Tuple[str, ObjectiveState]


@dataclass(slots=True, frozen=True)
class ObjectiveInfo:
    id: str
    name: str = ""
    type: str = ""

    @classmethod
    def from_dict(cls, payload: Dict[str, Any], default_type: str = "") -> "ObjectiveInfo":
        objective_id = str(payload.get("id", "")).strip()
        if not objective_id:
            raise ModelError("Objective is missing non-empty 'id'.")
        name = str(payload.get("name", objective_id)).strip() or objective_id
        objective_type = str(payload.get("type", default_type)).strip()
        return cls(id=objective_id, name=name, type=objective_type)


@dataclass(slots=True)
class ObjectiveRecord:
    id: str
    state: ObjectiveState
    updated_at: float


@dataclass(slots=True, frozen=True)
class MemoryWatch:
    """One polled memory region and the procedure that decodes it."""

    address: int
    length: int
    dispatch: Callable[[bytes], List[ObjectiveUpdate]] = field(repr=False, compare=False)
    name: str = ""

    @property
    def label(self) -> str:
        return self.name or f"{self.address:#08x}+{self.length}"


@dataclass(slots=True, frozen=True)
class ModuleInfo:
    id: str
    name: str
    authors: Tuple[str, ...] = tuple()
    game_url: str = ""
    source_path: str = ""


@dataclass(slots=True, frozen=True)
class Module:
    """A fully validated game module: metadata, objectives and watches."""

    info: ModuleInfo
    objectives: Dict[str, ObjectiveInfo]
    watches: Tuple[MemoryWatch, ...]

    @property
    def id(self) -> str:
        return self.info.id

    def objective_ids(self) -> Sequence[str]:
        return tuple(self.objectives.keys())

    def describe(self, objective_id: str) -> Optional[ObjectiveInfo]:
        return self.objectives.get(objective_id)
