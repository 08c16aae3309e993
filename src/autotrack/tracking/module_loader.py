"""Game module loading: declarative watch manifests compiled into sandboxed dispatch.

A module file never runs host code. Its watches declare which snapshot
fields to decode and which tagged rules turn those fields into objective
states. Rules are compiled into dispatch procedures that only see a
``SnapshotView`` and the ``set_objective_state`` primitive.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..config import ConfigError, read_document
from ..models import (
    MemoryWatch,
    ModelError,
    Module,
    ModuleInfo,
    ObjectiveInfo,
    ObjectiveState,
    ObjectiveUpdate,
)
from . import decoder

logger = logging.getLogger(__name__)

SUPPORTED_MODULE_SCHEMAS: tuple[str, ...] = ("watch_module_v1",)
MODULE_FILE_NAMES: tuple[str, ...] = ("module.yaml", "module.yml", "module.json", "manifest.json")
MAX_WATCH_LENGTH = 0x10000

SetObjectiveState = Callable[[str, ObjectiveState], None]
DispatchProcedure = Callable[["SnapshotView", SetObjectiveState], None]


class ModuleLoadError(RuntimeError):
    """Raised when a module declaration is invalid; nothing from it is activated."""


def _parse_int(value: Any, label: str) -> int:
    if isinstance(value, bool):
        raise ModuleLoadError(f"Invalid integer type for {label}: bool")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            raise ModuleLoadError(f"Missing integer for {label}.")
        try:
            return int(text, 0)
        except ValueError as exc:
            raise ModuleLoadError(f"Invalid integer for {label}: {value}") from exc
    if value is None:
        raise ModuleLoadError(f"Missing integer for {label}.")
    raise ModuleLoadError(f"Invalid integer type for {label}: {type(value).__name__}")


def _parse_state(value: Any, label: str) -> ObjectiveState:
    try:
        return ObjectiveState.parse(value)
    except ModelError as exc:
        raise ModuleLoadError(f"{label}: {exc}") from exc


class SnapshotView:
    """Read-only accessors over one watch's snapshot, as seen by dispatch code."""

    __slots__ = ("_data",)

    def __init__(self, data: bytes):
        self._data = bytes(data)

    def __len__(self) -> int:
        return len(self._data)

    def get_u8(self, offset: int) -> int:
        return decoder.get_u8(self._data, offset)

    def get_u16(self, offset: int) -> int:
        return decoder.get_u16(self._data, offset)

    def get_u24(self, offset: int) -> int:
        return decoder.get_u24(self._data, offset)

    def get_u32(self, offset: int) -> int:
        return decoder.get_u32(self._data, offset)

    def get(self, value_type: str, offset: int) -> int:
        return decoder.get_uint(self._data, offset, decoder.field_width(value_type))

    @staticmethod
    def bit_set(value: int, bit: int) -> bool:
        return decoder.bit_set(value, bit)


def sandboxed(procedure: DispatchProcedure) -> Callable[[bytes], List[ObjectiveUpdate]]:
    """Wrap a dispatch procedure so its only effect is the returned update list."""

    def _dispatch(data: bytes) -> List[ObjectiveUpdate]:
        updates: List[ObjectiveUpdate] = []

        def set_objective_state(objective_id: str, state: ObjectiveState) -> None:
            updates.append((str(objective_id), ObjectiveState.parse(state)))

        procedure(SnapshotView(data), set_objective_state)
        return updates

    return _dispatch


class ModuleBuilder:
    """Load-time scripting surface. ``add_mem_watch`` is rejected once built."""

    def __init__(self, module_id: str, name: str = "", authors: Sequence[str] = (), game_url: str = "", source_path: str = ""):
        module_id = str(module_id).strip()
        if not module_id:
            raise ModuleLoadError("Module is missing non-empty 'id'.")
        self.info = ModuleInfo(
            id=module_id,
            name=str(name).strip() or module_id,
            authors=tuple(str(item) for item in authors),
            game_url=str(game_url),
            source_path=source_path,
        )
        self._objectives: Dict[str, ObjectiveInfo] = {}
        self._watches: List[MemoryWatch] = []
        self._sealed = False

    def define_objective(self, objective_id: str, name: str = "", objective_type: str = "") -> ObjectiveInfo:
        self._ensure_open("define_objective")
        objective_id = str(objective_id).strip()
        if not objective_id:
            raise ModuleLoadError("Objective id must be non-empty.")
        if objective_id in self._objectives:
            raise ModuleLoadError(f"Duplicate objective id '{objective_id}' in module '{self.info.id}'.")
        info = ObjectiveInfo(id=objective_id, name=str(name).strip() or objective_id, type=str(objective_type))
        self._objectives[objective_id] = info
        return info

    def has_objective(self, objective_id: str) -> bool:
        return objective_id in self._objectives

    def add_mem_watch(self, address: int, length: int, dispatch: DispatchProcedure, name: str = "") -> MemoryWatch:
        self._ensure_open("add_mem_watch")
        label = name or f"watch[{len(self._watches)}]"
        address = _parse_int(address, f"{label}.address")
        length = _parse_int(length, f"{label}.length")
        if address < 0:
            raise ModuleLoadError(f"{label}.address must be non-negative, got {address}.")
        if length <= 0 or length > MAX_WATCH_LENGTH:
            raise ModuleLoadError(f"{label}.length must be in 1..{MAX_WATCH_LENGTH}, got {length}.")
        if not callable(dispatch):
            raise ModuleLoadError(f"{label}.dispatch is not callable.")
        watch = MemoryWatch(address=address, length=length, dispatch=sandboxed(dispatch), name=name)
        self._watches.append(watch)
        return watch

    def build(self) -> Module:
        self._ensure_open("build")
        if not self._watches:
            raise ModuleLoadError(f"Module '{self.info.id}' declares no watches.")
        self._sealed = True
        return Module(info=self.info, objectives=dict(self._objectives), watches=tuple(self._watches))

    def _ensure_open(self, operation: str) -> None:
        if self._sealed:
            raise ModuleLoadError(f"{operation} is only available while module '{self.info.id}' is loading.")


@dataclass(slots=True, frozen=True)
class FieldSpec:
    name: str
    value_type: str
    offset: int

    @classmethod
    def from_dict(cls, name: str, payload: Any, label: str) -> "FieldSpec":
        if not isinstance(payload, dict):
            raise ModuleLoadError(f"{label} must be an object.")
        value_type = str(payload.get("type", "u8")).strip().lower()
        if value_type not in decoder.FIELD_WIDTHS:
            raise ModuleLoadError(
                f"Unsupported field type '{value_type}' in {label}. Supported: {'|'.join(decoder.FIELD_WIDTHS)}."
            )
        offset = _parse_int(payload.get("offset", 0), f"{label}.offset")
        if offset < 0:
            raise ModuleLoadError(f"{label}.offset must be non-negative.")
        return cls(name=name, value_type=value_type, offset=offset)

    @property
    def width(self) -> int:
        return decoder.FIELD_WIDTHS[self.value_type]

    @property
    def bit_count(self) -> int:
        return self.width * 8


def _parse_bit(payload: Dict[str, Any], label: str, field: FieldSpec) -> int:
    bit = _parse_int(payload.get("bit"), f"{label}.bit")
    if bit < 0 or bit >= field.bit_count:
        raise ModuleLoadError(f"{label}.bit={bit} is outside {field.value_type} field '{field.name}'.")
    return bit


def _require_field(payload: Dict[str, Any], key: str, fields: Dict[str, FieldSpec], label: str) -> FieldSpec:
    name = str(payload.get(key, "")).strip()
    if not name:
        raise ModuleLoadError(f"{label} is missing '{key}'.")
    field = fields.get(name)
    if field is None:
        raise ModuleLoadError(f"{label}.{key} references undeclared field '{name}'.")
    return field


@dataclass(slots=True, frozen=True)
class KeyItemRule:
    """Used bit wins over found bit: COMPLETE > UNLOCKED > LOCKED."""

    objective: str
    bit: int
    found: str
    used: str

    kind = "key_item"
    objective_type = "key-item"

    @classmethod
    def from_dict(cls, payload: Dict[str, Any], fields: Dict[str, FieldSpec], label: str) -> "KeyItemRule":
        found = _require_field(payload, "found", fields, label)
        used = _require_field(payload, "used", fields, label)
        bit = _parse_bit(payload, label, found)
        if bit >= used.bit_count:
            raise ModuleLoadError(f"{label}.bit={bit} is outside {used.value_type} field '{used.name}'.")
        return cls(objective=_objective_of(payload, label), bit=bit, found=found.name, used=used.name)

    def evaluate(self, values: Dict[str, int]) -> ObjectiveState:
        if decoder.bit_set(values[self.used], self.bit):
            return ObjectiveState.COMPLETE
        if decoder.bit_set(values[self.found], self.bit):
            return ObjectiveState.UNLOCKED
        return ObjectiveState.LOCKED


@dataclass(slots=True, frozen=True)
class FlagRule:
    """Presence check for location checks; no found/used distinction."""

    objective: str
    field: str
    bit: int
    set_state: ObjectiveState = ObjectiveState.COMPLETE
    clear_state: ObjectiveState = ObjectiveState.LOCKED

    kind = "flag"
    objective_type = "location"

    @classmethod
    def from_dict(cls, payload: Dict[str, Any], fields: Dict[str, FieldSpec], label: str) -> "FlagRule":
        field = _require_field(payload, "field", fields, label)
        return cls(
            objective=_objective_of(payload, label),
            field=field.name,
            bit=_parse_bit(payload, label, field),
            set_state=_parse_state(payload.get("set_state", "complete"), f"{label}.set_state"),
            clear_state=_parse_state(payload.get("clear_state", "locked"), f"{label}.clear_state"),
        )

    def evaluate(self, values: Dict[str, int]) -> ObjectiveState:
        if decoder.bit_set(values[self.field], self.bit):
            return self.set_state
        return self.clear_state


Rule = KeyItemRule | FlagRule

RULE_KINDS: Dict[str, Any] = {
    "key_item": KeyItemRule,
    "key-item": KeyItemRule,
    "flag": FlagRule,
    "location": FlagRule,
}


def _objective_of(payload: Dict[str, Any], label: str) -> str:
    objective = str(payload.get("objective", payload.get("id", ""))).strip()
    if not objective:
        raise ModuleLoadError(f"{label} is missing non-empty 'objective'.")
    return objective


@dataclass(slots=True, frozen=True)
class WatchSpec:
    name: str
    address: int
    length: int
    fields: Dict[str, FieldSpec]
    rules: Tuple[Rule, ...]

    @classmethod
    def from_dict(cls, payload: Any, index: int) -> "WatchSpec":
        label = f"watches[{index}]"
        if not isinstance(payload, dict):
            raise ModuleLoadError(f"{label} must be an object.")
        name = str(payload.get("name", payload.get("id", ""))).strip()
        if name:
            label = f"watch '{name}'"
        if "address" not in payload:
            raise ModuleLoadError(f"{label} is missing 'address'.")
        address = _parse_int(payload.get("address"), f"{label}.address")
        length = _parse_int(payload.get("length", payload.get("len")), f"{label}.length")
        if address < 0:
            raise ModuleLoadError(f"{label}.address must be non-negative.")
        if length <= 0 or length > MAX_WATCH_LENGTH:
            raise ModuleLoadError(f"{label}.length must be in 1..{MAX_WATCH_LENGTH}, got {length}.")

        raw_fields = payload.get("fields")
        if not isinstance(raw_fields, dict) or not raw_fields:
            raise ModuleLoadError(f"{label} has empty or invalid 'fields'.")
        fields: Dict[str, FieldSpec] = {}
        for field_name, field_payload in raw_fields.items():
            spec = FieldSpec.from_dict(str(field_name), field_payload, f"{label}.fields.{field_name}")
            if spec.offset + spec.width > length:
                raise ModuleLoadError(
                    f"{label}.fields.{field_name} ({spec.value_type} at offset {spec.offset}) "
                    f"exceeds watch length {length}."
                )
            fields[spec.name] = spec

        raw_rules = payload.get("rules")
        if not isinstance(raw_rules, list) or not raw_rules:
            raise ModuleLoadError(f"{label} has empty or invalid 'rules'.")
        rules: List[Rule] = []
        for rule_index, raw_rule in enumerate(raw_rules):
            rule_label = f"{label}.rules[{rule_index}]"
            if not isinstance(raw_rule, dict):
                raise ModuleLoadError(f"{rule_label} must be an object.")
            kind = str(raw_rule.get("kind", "")).strip().lower()
            rule_cls = RULE_KINDS.get(kind)
            if rule_cls is None:
                raise ModuleLoadError(
                    f"{rule_label} has unsupported kind '{kind}'. Supported: key_item|flag."
                )
            rules.append(rule_cls.from_dict(raw_rule, fields, rule_label))

        return cls(name=name, address=address, length=length, fields=fields, rules=tuple(rules))

    def compile(self) -> DispatchProcedure:
        fields = tuple(self.fields.values())
        rules = self.rules

        def _procedure(data: SnapshotView, set_objective_state: SetObjectiveState) -> None:
            values = {field.name: data.get(field.value_type, field.offset) for field in fields}
            for rule in rules:
                set_objective_state(rule.objective, rule.evaluate(values))

        return _procedure


def _parse_objectives(raw: Any, builder: ModuleBuilder) -> None:
    if raw is None:
        return
    if not isinstance(raw, list):
        raise ModuleLoadError("'objectives' must be a list.")
    for index, item in enumerate(raw):
        if isinstance(item, str):
            item = {"id": item}
        if not isinstance(item, dict):
            raise ModuleLoadError(f"objectives[{index}] must be an object or string.")
        try:
            info = ObjectiveInfo.from_dict(item)
        except ModelError as exc:
            raise ModuleLoadError(f"objectives[{index}]: {exc}") from exc
        builder.define_objective(info.id, info.name, info.type)


def load_module_payload(payload: Any, source_path: str = "") -> Module:
    if not isinstance(payload, dict):
        raise ModuleLoadError("Module root must be an object (JSON/YAML mapping).")

    schema_version = str(payload.get("schema_version", "watch_module_v1")).strip() or "watch_module_v1"
    if schema_version not in SUPPORTED_MODULE_SCHEMAS:
        raise ModuleLoadError(
            f"Unsupported module schema_version '{schema_version}'. "
            f"Supported: {', '.join(SUPPORTED_MODULE_SCHEMAS)}"
        )

    authors = payload.get("authors", [])
    if isinstance(authors, str):
        authors = [authors]
    if not isinstance(authors, list):
        raise ModuleLoadError("'authors' must be a list of strings.")

    builder = ModuleBuilder(
        module_id=str(payload.get("id", "")),
        name=str(payload.get("name", "")),
        authors=authors,
        game_url=str(payload.get("game_url", payload.get("game-url", ""))),
        source_path=source_path,
    )
    declared_explicitly = payload.get("objectives") is not None
    _parse_objectives(payload.get("objectives"), builder)

    raw_watches = payload.get("watches")
    if not isinstance(raw_watches, list) or not raw_watches:
        raise ModuleLoadError(f"Module '{builder.info.id}' has empty or invalid 'watches'.")

    specs = [WatchSpec.from_dict(item, index) for index, item in enumerate(raw_watches)]
    for spec in specs:
        for rule in spec.rules:
            if builder.has_objective(rule.objective):
                continue
            if declared_explicitly:
                raise ModuleLoadError(
                    f"Rule in watch '{spec.name or hex(spec.address)}' targets undeclared objective '{rule.objective}'."
                )
            builder.define_objective(rule.objective, objective_type=rule.objective_type)

    for spec in specs:
        builder.add_mem_watch(spec.address, spec.length, spec.compile(), name=spec.name)
    return builder.build()


def resolve_module_path(path: Path | str) -> Path:
    candidate = Path(path).expanduser()
    if candidate.is_dir():
        for name in MODULE_FILE_NAMES:
            manifest = candidate / name
            if manifest.is_file():
                return manifest
        raise ModuleLoadError(f"No module manifest ({', '.join(MODULE_FILE_NAMES)}) in {candidate}")
    if not candidate.is_file():
        raise ModuleLoadError(f"Module file not found: {candidate}")
    return candidate


def load_module(path: Path | str) -> Module:
    manifest = resolve_module_path(path)
    try:
        payload = read_document(manifest)
    except ConfigError as exc:
        raise ModuleLoadError(str(exc)) from exc
    module = load_module_payload(payload, source_path=str(manifest))
    logger.info(
        "Loaded module '%s' from %s: %d watch(es), %d objective(s)",
        module.id,
        manifest,
        len(module.watches),
        len(module.objectives),
    )
    return module


def discover_modules(modules_dir: Path | str) -> List[Dict[str, Any]]:
    """List module directories under ``modules_dir`` with their load status."""
    root = Path(modules_dir).expanduser()
    if not root.is_dir():
        return []
    found: List[Dict[str, Any]] = []
    for entry in sorted(root.iterdir()):
        if not entry.is_dir():
            continue
        item: Dict[str, Any] = {"path": str(entry), "id": entry.name, "name": entry.name, "valid": False, "error": ""}
        try:
            module = load_module(entry)
        except ModuleLoadError as exc:
            item["error"] = str(exc)
        else:
            item.update(
                {
                    "id": module.id,
                    "name": module.info.name,
                    "valid": True,
                    "watches": len(module.watches),
                    "objectives": len(module.objectives),
                }
            )
        found.append(item)
    return found


def find_module(modules_dir: Path | str, module_id: str) -> Optional[Path]:
    for item in discover_modules(modules_dir):
        if item["id"] == module_id or Path(item["path"]).name == module_id:
            return Path(item["path"])
    return None
