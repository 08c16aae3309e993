from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..config import MIN_BACKOFF_S, BackoffConfig
from ..models import MemoryWatch, ModelError
from .decoder import RangeError
from .session import ConnectError, ConnectionSession, Disconnected, ReadTimeout
from .store import CommandChannel, ObjectiveChange, ObjectiveStore, UnknownObjective

logger = logging.getLogger(__name__)

WAIT_SLICE_S = 0.05


class TrackerStatus(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    RUNNING = "running"


class Backoff:
    """Exponential reconnect delay: initial, initial*factor, ... capped at max_s.

    The initial delay is clamped to MIN_BACKOFF_S so retries always pause.
    """

    def __init__(self, initial_s: float = 0.5, max_s: float = 10.0, factor: float = 2.0):
        self.initial_s = max(MIN_BACKOFF_S, float(initial_s))
        self.max_s = max(self.initial_s, float(max_s))
        self.factor = max(1.0, float(factor))
        self._next = self.initial_s

    @classmethod
    def from_config(cls, config: BackoffConfig) -> "Backoff":
        return cls(initial_s=config.initial_s, max_s=config.max_s, factor=config.factor)

    @property
    def upcoming(self) -> float:
        return self._next

    def next_delay(self) -> float:
        delay = self._next
        self._next = min(self.max_s, self._next * self.factor)
        return delay

    def reset(self) -> None:
        self._next = self.initial_s


@dataclass(slots=True)
class CycleResult:
    reads_ok: int = 0
    dispatch_errors: int = 0
    changes: List[ObjectiveChange] = field(default_factory=list)
    failed: bool = False
    cancelled: bool = False
    error: str = ""


class Poller:
    """Drives periodic reads for every watch and applies decoded updates to the store."""

    def __init__(
        self,
        store: ObjectiveStore,
        backoff: Optional[Backoff] = None,
        commands: Optional[CommandChannel] = None,
        on_status: Optional[Callable[[TrackerStatus], None]] = None,
    ):
        self.store = store
        self.backoff = backoff or Backoff()
        self.commands = commands
        self.on_status = on_status
        self.status = TrackerStatus.IDLE
        self.consecutive_failures = 0
        self.cycles_total = 0
        self.dispatch_errors_total = 0
        self.reconnect_attempts_total = 0
        self.last_cycle_at = 0.0
        self.last_backoff_s = 0.0
        self._last_error: Dict[str, str] = {}

    def run(
        self,
        registry: Sequence[MemoryWatch],
        session: ConnectionSession,
        interval: float,
        cancel: threading.Event,
    ) -> None:
        interval = max(0.0, float(interval))
        logger.info("Poller started: %d watch(es), interval %.3fs", len(registry), interval)
        try:
            while not cancel.is_set():
                started = time.monotonic()
                self._drain_commands()

                if not session.connected and not self._reconnect(session, cancel):
                    continue
                self._set_status(TrackerStatus.RUNNING)

                result = self.run_cycle(registry, session, cancel)
                if result.cancelled:
                    break
                if result.failed:
                    continue

                elapsed = time.monotonic() - started
                self._wait(cancel, interval - elapsed)
        finally:
            self._drain_commands()
            self._set_status(TrackerStatus.IDLE)
            logger.info("Poller stopped after %d cycle(s)", self.cycles_total)

    def run_cycle(
        self,
        registry: Sequence[MemoryWatch],
        session: ConnectionSession,
        cancel: Optional[threading.Event] = None,
    ) -> CycleResult:
        """One pass over the registry; stops at the first transport failure."""
        result = CycleResult()
        for watch in registry:
            if cancel is not None and cancel.is_set():
                result.cancelled = True
                return result
            self._drain_commands()

            try:
                data = session.read(watch.address, watch.length)
            except (ReadTimeout, Disconnected) as exc:
                self._mark_unhealthy(watch, exc)
                result.failed = True
                result.error = str(exc)
                return result

            result.reads_ok += 1
            if self.consecutive_failures:
                logger.info("Reads recovered after %d failure(s)", self.consecutive_failures)
            self.consecutive_failures = 0
            self.backoff.reset()

            try:
                updates = watch.dispatch(data)
                result.changes.extend(self.store.apply_many(updates))
            except (RangeError, UnknownObjective, ModelError) as exc:
                result.dispatch_errors += 1
                self.dispatch_errors_total += 1
                self._set_last_error(f"dispatch:{watch.label}", exc)
                logger.warning("Watch %s dispatch failed: %s", watch.label, exc)
            except Exception as exc:  # noqa: BLE001
                result.dispatch_errors += 1
                self.dispatch_errors_total += 1
                self._set_last_error(f"dispatch:{watch.label}", exc)
                logger.exception("Watch %s dispatch raised unexpectedly", watch.label)

        self.cycles_total += 1
        self.last_cycle_at = time.time()
        return result

    def status_payload(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "consecutive_failures": int(self.consecutive_failures),
            "cycles_total": int(self.cycles_total),
            "dispatch_errors_total": int(self.dispatch_errors_total),
            "reconnect_attempts_total": int(self.reconnect_attempts_total),
            "last_cycle_at": self.last_cycle_at,
            "last_backoff_s": self.last_backoff_s,
            "next_backoff_s": self.backoff.upcoming,
            "last_error": dict(self._last_error),
        }

    def _reconnect(self, session: ConnectionSession, cancel: threading.Event) -> bool:
        self._set_status(TrackerStatus.CONNECTING)
        if self.consecutive_failures:
            delay = self.backoff.next_delay()
            self.last_backoff_s = delay
            logger.info("Reconnecting in %.2fs (failure streak %d)", delay, self.consecutive_failures)
            if self._wait(cancel, delay):
                return False

        self.reconnect_attempts_total += 1
        try:
            session.connect()
        except ConnectError as exc:
            self.consecutive_failures += 1
            self._set_last_error("connect", exc)
            logger.warning("Connect failed: %s", exc)
            return False

        self._set_status(TrackerStatus.RUNNING)
        return True

    def _mark_unhealthy(self, watch: MemoryWatch, error: Exception) -> None:
        self.consecutive_failures += 1
        self._set_last_error(f"read:{watch.label}", error)
        logger.warning("Read for watch %s failed: %s", watch.label, error)
        self._set_status(TrackerStatus.CONNECTING)

    def _wait(self, cancel: threading.Event, seconds: float) -> bool:
        """Sleep up to ``seconds`` while serving manual commands. True if cancelled."""
        deadline = time.monotonic() + max(0.0, seconds)
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return cancel.is_set()
            if cancel.wait(min(WAIT_SLICE_S, remaining)):
                return True
            self._drain_commands()

    def _drain_commands(self) -> None:
        if self.commands is not None:
            self.commands.drain()

    def _set_status(self, status: TrackerStatus) -> None:
        if status is self.status:
            return
        self.status = status
        if self.on_status is not None:
            self.on_status(status)

    def _set_last_error(self, stage: str, error: Exception) -> None:
        self._last_error = {
            "stage": stage,
            "type": type(error).__name__,
            "message": str(error),
        }
