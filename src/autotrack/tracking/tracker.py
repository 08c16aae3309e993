from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..config import TrackerConfig
from ..models import MemoryWatch, Module, ObjectiveState
from .module_loader import ModuleLoadError, find_module, load_module
from .poller import Backoff, CycleResult, Poller, TrackerStatus
from .session import ConnectionSession, RetroArchTransport, Transport, Usb2SnesTransport
from .store import ChangeCallback, CommandChannel, ObjectiveStore

logger = logging.getLogger(__name__)

SessionFactory = Callable[[TrackerConfig], ConnectionSession]

COMMAND_TIMEOUT_S = 5.0


class TrackerError(RuntimeError):
    """Raised on tracker lifecycle misuse (no module, already running, ...)."""


def default_session_factory(config: TrackerConfig) -> ConnectionSession:
    transport: Transport
    if config.transport == "usb2snes":
        transport = Usb2SnesTransport(
            host=config.host,
            port=config.port,
            address_space=config.address_space,  # type: ignore[arg-type]
            device=config.device,
        )
    else:
        transport = RetroArchTransport(
            host=config.host,
            port=config.port,
            address_space=config.address_space,  # type: ignore[arg-type]
        )
    return ConnectionSession(transport, timeout=config.read_timeout_s, endpoint=config.endpoint)


class AutoTracker:
    """Owns the store, the active module and the poller thread for one tracking session."""

    def __init__(
        self,
        config: Optional[TrackerConfig] = None,
        store: Optional[ObjectiveStore] = None,
        session_factory: Optional[SessionFactory] = None,
    ):
        self.config = config or TrackerConfig()
        self.store = store or ObjectiveStore()
        self.commands = CommandChannel(self.store)
        self.session_factory = session_factory or default_session_factory
        self.module: Optional[Module] = None
        self.last_reason = "no_module"
        self._registry: Tuple[MemoryWatch, ...] = tuple()
        self._lifecycle = threading.RLock()
        self._thread: Optional[threading.Thread] = None
        self._cancel: Optional[threading.Event] = None
        self._session: Optional[ConnectionSession] = None
        self._poller: Optional[Poller] = None
        self._status = TrackerStatus.IDLE
        self._started_at = ""

    @property
    def running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    @property
    def registry(self) -> Tuple[MemoryWatch, ...]:
        return self._registry

    def load_module(self, source: Module | Path | str) -> Module:
        """Validate and activate a module; a failed load leaves the current one active."""
        if isinstance(source, Module):
            module = source
        else:
            module = load_module(self._resolve_module_source(source))

        with self._lifecycle:
            was_running = self.running
            if was_running:
                self.stop()
            self.module = module
            self._registry = tuple(module.watches)
            self.store.bind(module.objective_ids())
            self.last_reason = "module_loaded"
            logger.info("Activated module '%s'", module.id)
            if was_running:
                self.start()
        return module

    def _resolve_module_source(self, source: Path | str) -> Path:
        candidate = Path(source).expanduser()
        if candidate.exists():
            return candidate
        located = find_module(self.config.modules_dir, str(source))
        if located is None:
            raise ModuleLoadError(f"Module not found: {source} (searched {self.config.modules_dir})")
        return located

    def start(self) -> Dict[str, Any]:
        with self._lifecycle:
            if self.module is None:
                raise TrackerError("No module loaded; load a module before starting.")
            if self.running:
                return self.status()

            self._session = self.session_factory(self.config)
            self._poller = Poller(
                store=self.store,
                backoff=Backoff.from_config(self.config.backoff),
                commands=self.commands,
                on_status=self._on_status,
            )
            self._cancel = threading.Event()
            self._thread = threading.Thread(
                target=self._poller.run,
                args=(self._registry, self._session, self.config.poll_interval_s, self._cancel),
                name=f"autotrack-poller-{self.module.id}",
                daemon=True,
            )
            self._status = TrackerStatus.CONNECTING
            self._started_at = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
            self.last_reason = "started"
            self._thread.start()
            return self.status()

    def stop(self) -> Dict[str, Any]:
        """Cancel and join the poller; no store write happens after this returns."""
        with self._lifecycle:
            if self._cancel is not None:
                self._cancel.set()
            if self._thread is not None:
                self._thread.join()
            if self._session is not None:
                self._session.close()
            self._thread = None
            self._cancel = None
            self.commands.drain()
            self.store.reset()
            self._status = TrackerStatus.IDLE
            if self.module is not None:
                self.last_reason = "stopped"
            return self.status()

    def close(self) -> None:
        self.stop()
        self.store.close()

    def poll_once(self) -> CycleResult:
        """Connect, run a single cycle over the registry and disconnect."""
        with self._lifecycle:
            if self.module is None:
                raise TrackerError("No module loaded; load a module before polling.")
            if self.running:
                raise TrackerError("Tracking is running; stop it before a one-shot poll.")
            session = self.session_factory(self.config)
            poller = Poller(store=self.store, commands=self.commands)
            try:
                session.connect()
                return poller.run_cycle(self._registry, session)
            finally:
                session.close()

    def set_objective_state(self, objective_id: str, state: ObjectiveState | str) -> ObjectiveState:
        return self._submit("set", objective_id, ObjectiveState.parse(state))

    def toggle_state(self, objective_id: str) -> ObjectiveState:
        return self._submit("toggle", objective_id)

    def _submit(self, kind: str, objective_id: str, state: Optional[ObjectiveState] = None) -> ObjectiveState:
        future = self.commands.submit(kind, objective_id, state)  # type: ignore[arg-type]
        with self._lifecycle:
            if not self.running:
                self.commands.drain()
        return future.result(timeout=COMMAND_TIMEOUT_S)

    def get(self, objective_id: str) -> ObjectiveState:
        return self.store.get(objective_id)

    def get_all(self) -> Dict[str, ObjectiveState]:
        return self.store.get_all()

    def subscribe(self, callback: ChangeCallback) -> Callable[[], None]:
        return self.store.subscribe(callback)

    def dump_state(self) -> List[Dict[str, Any]]:
        if self.module is None:
            return []
        rows: List[Dict[str, Any]] = []
        for objective_id, info in self.module.objectives.items():
            record = self.store.record(objective_id)
            rows.append(
                {
                    "id": objective_id,
                    "name": info.name,
                    "type": info.type,
                    "state": (record.state if record is not None else ObjectiveState.LOCKED).value,
                    "observed": record is not None,
                    "updated_at": record.updated_at if record is not None else None,
                }
            )
        return rows

    def status(self) -> Dict[str, Any]:
        module = self.module
        return {
            "status": self._status.value,
            "running": self.running,
            "reason": self.last_reason,
            "started_at": self._started_at,
            "endpoint": self.config.endpoint,
            "poll_ms": self.config.poll_ms,
            "module": {
                "id": module.id if module else "",
                "name": module.info.name if module else "",
                "source_path": module.info.source_path if module else "",
                "watches": len(self._registry),
                "objectives": len(module.objectives) if module else 0,
            },
            "session": self._session.status_payload() if self._session else {},
            "poller": self._poller.status_payload() if self._poller else {},
            "store": {
                "records": len(self.store.get_all()),
                "changes_total": int(self.store.changes_total),
                "suppressed_total": int(self.store.suppressed_total),
            },
            "pending_commands": self.commands.pending(),
            "config": self.config.to_dict(),
        }

    def _on_status(self, status: TrackerStatus) -> None:
        self._status = status
        logger.info("Tracker status -> %s", status.value)


__all__ = [
    "AutoTracker",
    "TrackerError",
    "default_session_factory",
]
