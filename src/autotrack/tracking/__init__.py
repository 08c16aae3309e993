"""Memory-watch auto-tracking: decode, session, poller, store and module loader."""

from .decoder import RangeError, bit_set, get_u8, get_u16, get_u24, get_u32, get_uint
from .module_loader import (
    ModuleBuilder,
    ModuleLoadError,
    discover_modules,
    find_module,
    load_module,
    load_module_payload,
)
from .poller import Backoff, CycleResult, Poller, TrackerStatus
from .session import (
    ConnectError,
    ConnectionSession,
    Disconnected,
    ReadTimeout,
    RetroArchTransport,
    SessionError,
    SessionStatus,
    Usb2SnesTransport,
    bus_to_usb2snes,
    usb2snes_to_bus,
)
from .store import CommandChannel, ObjectiveStore, UnknownObjective
from .tracker import AutoTracker, TrackerError

__all__ = [
    "RangeError",
    "bit_set",
    "get_u8",
    "get_u16",
    "get_u24",
    "get_u32",
    "get_uint",
    "ModuleBuilder",
    "ModuleLoadError",
    "discover_modules",
    "find_module",
    "load_module",
    "load_module_payload",
    "Backoff",
    "CycleResult",
    "Poller",
    "TrackerStatus",
    "ConnectError",
    "ConnectionSession",
    "Disconnected",
    "ReadTimeout",
    "RetroArchTransport",
    "SessionError",
    "SessionStatus",
    "Usb2SnesTransport",
    "bus_to_usb2snes",
    "usb2snes_to_bus",
    "CommandChannel",
    "ObjectiveStore",
    "UnknownObjective",
    "AutoTracker",
    "TrackerError",
]
