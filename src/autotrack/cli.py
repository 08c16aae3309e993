from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from .config import DEFAULT_PORTS, ConfigError, TrackerConfig, load_config
from .formatting import format_dump_table, format_module_list
from .models import ObjectiveState
from .tracking import AutoTracker, ModuleLoadError, TrackerError, discover_modules
from .tracking.session import ConnectError


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="autotrack",
        description="Poll emulator memory and track game objectives from declarative watch modules.",
    )
    parser.add_argument("--config", default=None, help="Path to a JSON/YAML tracker configuration.")
    parser.add_argument("--modules-dir", default=None, help="Override the directory modules are discovered in.")
    parser.add_argument("--host", default=None, help="Emulator host (overrides config).")
    parser.add_argument(
        "--transport",
        default=None,
        choices=tuple(DEFAULT_PORTS),
        help="Emulator interface: RetroArch UDP or usb2snes websocket (overrides config).",
    )
    parser.add_argument("--port", type=int, default=None, help="Emulator port (overrides config).")
    parser.add_argument(
        "--log-level",
        default="warning",
        choices=("debug", "info", "warning", "error"),
        help="Logging verbosity.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    modules = subparsers.add_parser("modules", help="List modules found in the modules directory.")
    modules.add_argument("--format", choices=("table", "json"), default="table")

    validate = subparsers.add_parser("validate", help="Load a module and report its watches and objectives.")
    validate.add_argument("module", help="Module id or path to a module directory/manifest.")

    dump = subparsers.add_parser("dump", help="Run one poll cycle and print every objective state.")
    dump.add_argument("module", nargs="?", default=None, help="Module id or path (defaults to config 'module').")
    dump.add_argument("--format", choices=("table", "json"), default="table")

    track = subparsers.add_parser("track", help="Track continuously and print objective changes.")
    track.add_argument("module", nargs="?", default=None, help="Module id or path (defaults to config 'module').")
    track.add_argument(
        "--duration",
        type=float,
        default=0.0,
        help="Stop after this many seconds (0 runs until interrupted).",
    )
    track.add_argument("--dump-on-exit", action="store_true", help="Print the final state table when stopping.")
    return parser


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _build_config(args: argparse.Namespace) -> TrackerConfig:
    config = load_config(args.config)
    overrides: Dict[str, Any] = {}
    if args.modules_dir:
        overrides["modules_dir"] = Path(args.modules_dir).expanduser().resolve()
    if args.transport and args.transport != config.transport:
        overrides["transport"] = args.transport
        if config.port == DEFAULT_PORTS[config.transport]:
            overrides["port"] = DEFAULT_PORTS[args.transport]
    if args.host:
        overrides["host"] = args.host
    if args.port is not None:
        overrides["port"] = int(args.port)
    return replace(config, **overrides) if overrides else config


def _module_source(args: argparse.Namespace, config: TrackerConfig) -> str:
    source = getattr(args, "module", None) or config.module
    if not source:
        raise ModuleLoadError("No module given; pass a module id/path or set 'module' in the config.")
    return str(source)


def _print_json(payload: Any) -> None:
    json.dump(payload, sys.stdout, indent=2, ensure_ascii=False)
    sys.stdout.write("\n")


def _run_modules(args: argparse.Namespace, config: TrackerConfig) -> int:
    found = discover_modules(config.modules_dir)
    if args.format == "json":
        _print_json(found)
    else:
        print(f"Modules in {config.modules_dir}:")
        print(format_module_list(found))
    return 0


def _run_validate(args: argparse.Namespace, config: TrackerConfig) -> int:
    tracker = AutoTracker(config)
    module = tracker.load_module(args.module)
    print(f"Module '{module.id}' OK: {module.info.name}")
    if module.info.authors:
        print(f"Authors: {', '.join(module.info.authors)}")
    for watch in module.watches:
        print(f"  watch {watch.label}: address {watch.address:#08x}, length {watch.length}")
    print(f"  {len(module.objectives)} objective(s): {', '.join(module.objective_ids())}")
    return 0


def _run_dump(args: argparse.Namespace, config: TrackerConfig) -> int:
    tracker = AutoTracker(config)
    tracker.load_module(_module_source(args, config))
    try:
        result = tracker.poll_once()
    except ConnectError as exc:
        print(f"Cannot connect to {config.endpoint}: {exc}", file=sys.stderr)
        return 1
    if result.failed:
        print(f"Read failed: {result.error}", file=sys.stderr)
        return 1

    rows = tracker.dump_state()
    if args.format == "json":
        _print_json(rows)
    else:
        print(format_dump_table(rows))
    return 0


def _run_track(args: argparse.Namespace, config: TrackerConfig) -> int:
    tracker = AutoTracker(config)
    module = tracker.load_module(_module_source(args, config))

    def _print_change(objective_id: str, previous: Optional[ObjectiveState], state: ObjectiveState) -> None:
        before = previous.value if previous is not None else "-"
        print(f"{time.strftime('%H:%M:%S')} {objective_id}: {before} -> {state.value}", flush=True)

    tracker.subscribe(_print_change)
    print(f"Tracking '{module.id}' via {config.endpoint} (Ctrl+C to stop)", flush=True)
    tracker.start()
    deadline = time.monotonic() + args.duration if args.duration > 0 else None
    try:
        while deadline is None or time.monotonic() < deadline:
            time.sleep(0.2)
    except KeyboardInterrupt:
        pass
    finally:
        rows = tracker.dump_state()
        tracker.close()
    if args.dump_on_exit:
        print(format_dump_table(rows))
    return 0


COMMANDS = {
    "modules": _run_modules,
    "validate": _run_validate,
    "dump": _run_dump,
    "track": _run_track,
}


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.log_level)

    try:
        config = _build_config(args)
    except ConfigError as exc:
        parser.error(str(exc))
        return 2

    try:
        return COMMANDS[args.command](args, config)
    except (ModuleLoadError, TrackerError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
