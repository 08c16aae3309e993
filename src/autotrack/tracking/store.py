from __future__ import annotations

import logging
import queue
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Literal, Optional, Tuple

from ..models import ObjectiveRecord, ObjectiveState, ObjectiveUpdate

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[str, Optional[ObjectiveState], ObjectiveState], None]
ObjectiveChange = Tuple[str, Optional[ObjectiveState], ObjectiveState]


class UnknownObjective(LookupError):
    """Raised for an objective id the loaded module never defines."""


class ObjectiveStore:
    """Canonical objective id -> state mapping for the active module.

    All writes go through one lock. Subscribers are called under that lock,
    after the record is updated, and only when the state actually changed.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.RLock()
        self._defined: frozenset[str] = frozenset()
        self._records: Dict[str, ObjectiveRecord] = {}
        self._subscribers: List[ChangeCallback] = []
        self.changes_total = 0
        self.suppressed_total = 0

    def bind(self, objective_ids: Iterable[str]) -> None:
        """Switch to a new module's objective set and drop every record."""
        with self._lock:
            self._defined = frozenset(str(item) for item in objective_ids)
            self._records = {}

    def reset(self) -> None:
        with self._lock:
            self._records = {}

    def close(self) -> None:
        with self._lock:
            self._records = {}
            self._defined = frozenset()
            self._subscribers = []

    def _require_defined(self, objective_id: str) -> None:
        if objective_id not in self._defined:
            raise UnknownObjective(f"Objective '{objective_id}' is not defined by the loaded module.")

    def apply(self, objective_id: str, state: ObjectiveState) -> bool:
        with self._lock:
            self._require_defined(objective_id)
            return self._apply_locked(objective_id, state)

    def apply_many(self, updates: Iterable[ObjectiveUpdate]) -> List[ObjectiveChange]:
        """Apply updates in order; every id is validated before any write."""
        items = list(updates)
        changes: List[ObjectiveChange] = []
        with self._lock:
            for objective_id, _ in items:
                self._require_defined(objective_id)
            for objective_id, state in items:
                previous = self._state_of(objective_id)
                if self._apply_locked(objective_id, state):
                    changes.append((objective_id, previous, state))
        return changes

    def _state_of(self, objective_id: str) -> Optional[ObjectiveState]:
        record = self._records.get(objective_id)
        return record.state if record is not None else None

    def _apply_locked(self, objective_id: str, state: ObjectiveState) -> bool:
        now = self._clock()
        record = self._records.get(objective_id)
        previous = record.state if record is not None else None
        if record is None:
            self._records[objective_id] = ObjectiveRecord(id=objective_id, state=state, updated_at=now)
        else:
            record.state = state
            record.updated_at = now

        if previous is state:
            self.suppressed_total += 1
            return False
        self.changes_total += 1
        self._notify(objective_id, previous, state)
        return True

    def _notify(self, objective_id: str, previous: Optional[ObjectiveState], state: ObjectiveState) -> None:
        for callback in list(self._subscribers):
            try:
                callback(objective_id, previous, state)
            except Exception:  # noqa: BLE001
                logger.exception("Objective subscriber %r failed for %s", callback, objective_id)

    def get(self, objective_id: str) -> ObjectiveState:
        with self._lock:
            self._require_defined(objective_id)
            record = self._records.get(objective_id)
            return record.state if record is not None else ObjectiveState.LOCKED

    def record(self, objective_id: str) -> Optional[ObjectiveRecord]:
        with self._lock:
            self._require_defined(objective_id)
            record = self._records.get(objective_id)
            if record is None:
                return None
            return ObjectiveRecord(id=record.id, state=record.state, updated_at=record.updated_at)

    def get_all(self) -> Dict[str, ObjectiveState]:
        with self._lock:
            return {objective_id: record.state for objective_id, record in self._records.items()}

    def subscribe(self, callback: ChangeCallback) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            self.unsubscribe(callback)

        return _unsubscribe

    def unsubscribe(self, callback: ChangeCallback) -> None:
        with self._lock:
            self._subscribers = [item for item in self._subscribers if item is not callback]


CommandKind = Literal["set", "toggle"]


@dataclass(slots=True)
class StoreCommand:
    kind: CommandKind
    objective_id: str
    state: Optional[ObjectiveState]
    future: "Future[ObjectiveState]"


class CommandChannel:
    """Queue of manual store writes, executed by whichever thread owns the writer role."""

    def __init__(self, store: ObjectiveStore):
        self.store = store
        self._queue: "queue.Queue[StoreCommand]" = queue.Queue()

    def submit(self, kind: CommandKind, objective_id: str, state: Optional[ObjectiveState] = None) -> "Future[ObjectiveState]":
        if kind == "set" and state is None:
            raise ValueError("A 'set' command needs a state.")
        future: "Future[ObjectiveState]" = Future()
        self._queue.put(StoreCommand(kind=kind, objective_id=objective_id, state=state, future=future))
        return future

    def pending(self) -> int:
        return self._queue.qsize()

    def drain(self) -> int:
        handled = 0
        while True:
            try:
                command = self._queue.get_nowait()
            except queue.Empty:
                return handled
            handled += 1
            if not command.future.set_running_or_notify_cancel():
                continue
            try:
                result = self._execute(command)
            except Exception as exc:  # noqa: BLE001
                command.future.set_exception(exc)
            else:
                command.future.set_result(result)

    def _execute(self, command: StoreCommand) -> ObjectiveState:
        if command.kind == "toggle":
            target = self.store.get(command.objective_id).next_manual()
        elif command.state is not None:
            target = command.state
        else:
            raise ValueError("A 'set' command needs a state.")
        self.store.apply(command.objective_id, target)
        logger.info("Manual override %s -> %s", command.objective_id, target.value)
        return target
