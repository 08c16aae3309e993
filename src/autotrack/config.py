from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

DEFAULT_MODULES_DIR = Path(__file__).resolve().parents[2] / "modules"
MIN_BACKOFF_S = 0.01
DEFAULT_PORTS = {"retroarch": 55355, "usb2snes": 8080}


class ConfigError(RuntimeError):
    """Raised when a configuration or module document is invalid."""


def read_document(path: Path) -> Any:
    """Read a JSON or YAML document, chosen by file suffix."""
    if not path.exists():
        raise ConfigError(f"File not found: {path}")

    suffix = path.suffix.lower()
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Unable to read {path}: {exc}") from exc

    if suffix == ".json":
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Invalid JSON in {path}: {exc}") from exc

    if suffix in {".yaml", ".yml"}:
        try:
            return yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc

    raise ConfigError(f"Unsupported format '{suffix}'. Use .json or .yaml/.yml.")


@dataclass(slots=True, frozen=True)
class BackoffConfig:
    initial_s: float = 0.5
    max_s: float = 10.0
    factor: float = 2.0


@dataclass(slots=True, frozen=True)
class TrackerConfig:
    transport: str = "retroarch"
    host: str = "127.0.0.1"
    port: int = DEFAULT_PORTS["retroarch"]
    device: str = ""
    address_space: str = "usb2snes"
    read_timeout_s: float = 1.0
    poll_ms: int = 500
    backoff: BackoffConfig = field(default_factory=BackoffConfig)
    modules_dir: Path = DEFAULT_MODULES_DIR
    module: str = ""

    @property
    def poll_interval_s(self) -> float:
        return self.poll_ms / 1000.0

    @property
    def endpoint(self) -> str:
        return f"{self.host}:{self.port}"

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["modules_dir"] = str(self.modules_dir)
        return payload


def _as_float(payload: Dict[str, Any], key: str, default: float, minimum: float) -> float:
    raw = payload.get(key, default)
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Field '{key}' must be a number, got {raw!r}.") from exc
    if value < minimum:
        raise ConfigError(f"Field '{key}' must be >= {minimum}, got {value}.")
    return value


def _as_int(payload: Dict[str, Any], key: str, default: int, minimum: int) -> int:
    raw = payload.get(key, default)
    if isinstance(raw, bool):
        raise ConfigError(f"Field '{key}' must be an integer, got {raw!r}.")
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Field '{key}' must be an integer, got {raw!r}.") from exc
    if value < minimum:
        raise ConfigError(f"Field '{key}' must be >= {minimum}, got {value}.")
    return value


def config_from_dict(payload: Dict[str, Any], base_dir: Optional[Path] = None) -> TrackerConfig:
    if not isinstance(payload, dict):
        raise ConfigError("Config root must be an object (JSON/YAML mapping).")

    defaults = TrackerConfig()
    backoff_payload = payload.get("backoff", {})
    if not isinstance(backoff_payload, dict):
        raise ConfigError("Field 'backoff' must be an object.")
    backoff = BackoffConfig(
        initial_s=_as_float(backoff_payload, "initial_s", defaults.backoff.initial_s, MIN_BACKOFF_S),
        max_s=_as_float(backoff_payload, "max_s", defaults.backoff.max_s, MIN_BACKOFF_S),
        factor=_as_float(backoff_payload, "factor", defaults.backoff.factor, 1.0),
    )
    if backoff.max_s < backoff.initial_s:
        raise ConfigError("backoff.max_s must be >= backoff.initial_s.")

    transport = str(payload.get("transport", defaults.transport)).strip().lower()
    if transport not in DEFAULT_PORTS:
        raise ConfigError(f"Unsupported transport '{transport}'. Use retroarch or usb2snes.")

    address_space = str(payload.get("address_space", defaults.address_space)).strip().lower()
    if address_space not in {"usb2snes", "bus"}:
        raise ConfigError(f"Unsupported address_space '{address_space}'. Use usb2snes or bus.")

    modules_dir = defaults.modules_dir
    raw_modules_dir = str(payload.get("modules_dir", "") or "").strip()
    if raw_modules_dir:
        modules_dir = Path(raw_modules_dir).expanduser()
        if not modules_dir.is_absolute() and base_dir is not None:
            modules_dir = (base_dir / modules_dir).resolve()

    return TrackerConfig(
        transport=transport,
        host=str(payload.get("host", defaults.host)).strip() or defaults.host,
        port=_as_int(payload, "port", DEFAULT_PORTS[transport], 1),
        device=str(payload.get("device", "") or "").strip(),
        address_space=address_space,
        read_timeout_s=_as_float(payload, "read_timeout_s", defaults.read_timeout_s, 0.01),
        poll_ms=_as_int(payload, "poll_ms", defaults.poll_ms, 50),
        backoff=backoff,
        modules_dir=modules_dir,
        module=str(payload.get("module", "") or "").strip(),
    )


def load_config(path: Path | str | None = None) -> TrackerConfig:
    """Load tracker config from ``path`` or ``$AUTOTRACK_CONFIG``; defaults when neither is set."""
    if path is None:
        env_path = os.environ.get("AUTOTRACK_CONFIG", "").strip()
        path = env_path or None

    if path is None:
        config = TrackerConfig()
    else:
        config_path = Path(path).expanduser()
        config = config_from_dict(read_document(config_path) or {}, base_dir=config_path.parent)

    env_modules_dir = os.environ.get("AUTOTRACK_MODULES_DIR", "").strip()
    if env_modules_dir:
        config = replace(config, modules_dir=Path(env_modules_dir).expanduser())
    return config
