"""Run the ScreenCam server with ``python -m screen_cam``."""
from __future__ import annotations

import argparse
import logging
import sys
from typing import Sequence

import uvicorn

from .app import create_app
from .config import default_config_path


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m screen_cam",
        description="ScreenCam recording session server",
    )
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=3456)
    parser.add_argument(
        "--config",
        default=None,
        help="Configuration file (defaults to $SCREENCAM_CONFIG or data/config.json).",
    )
    parser.add_argument("--journal", default="data/session_journal.jsonl")
    parser.add_argument(
        "--log-level",
        default="info",
        choices=["debug", "info", "warning", "error"],
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = create_app(args.config or default_config_path(), journal_path=args.journal)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level)
    return 0


if __name__ == "__main__":  # pragma: no cover - module behaviour
    sys.exit(main())
