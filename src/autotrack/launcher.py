from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path

import uvicorn


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="autotrack-server",
        description="Run the autotrack HTTP API.",
    )
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--config", default="", help="Tracker config (sets AUTOTRACK_CONFIG).")
    parser.add_argument("--modules-dir", default="", help="Modules directory (sets AUTOTRACK_MODULES_DIR).")
    parser.add_argument("--log-level", default="info")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.config:
        os.environ["AUTOTRACK_CONFIG"] = str(Path(args.config).expanduser().resolve())
    if args.modules_dir:
        os.environ["AUTOTRACK_MODULES_DIR"] = str(Path(args.modules_dir).expanduser().resolve())

    # Import after env setup so api.py picks up the config overrides.
    from autotrack.api import app as api_app

    print(f"Autotrack API on http://{args.host}:{args.port}")
    uvicorn.run(api_app, host=args.host, port=args.port, log_level=args.log_level)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
