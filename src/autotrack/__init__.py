"""Auto-tracking engine for emulated console games."""

from .config import ConfigError, TrackerConfig, load_config
from .formatting import format_dump_table, format_module_list
from .models import (
    MemoryWatch,
    ModelError,
    Module,
    ModuleInfo,
    ObjectiveInfo,
    ObjectiveRecord,
    ObjectiveState,
)
from .tracking import (
    AutoTracker,
    ModuleLoadError,
    ObjectiveStore,
    TrackerError,
    TrackerStatus,
    UnknownObjective,
    load_module,
)

__all__ = [
    "ConfigError",
    "TrackerConfig",
    "load_config",
    "format_dump_table",
    "format_module_list",
    "MemoryWatch",
    "ModelError",
    "Module",
    "ModuleInfo",
    "ObjectiveInfo",
    "ObjectiveRecord",
    "ObjectiveState",
    "AutoTracker",
    "ModuleLoadError",
    "ObjectiveStore",
    "TrackerError",
    "TrackerStatus",
    "UnknownObjective",
    "load_module",
]
