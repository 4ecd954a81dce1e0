"""
slidepipe CLI - thin entrypoint for operator commands.

Commands:
- run:   watch a folder and convert headless until interrupted
- serve: same, plus the HTTP control API (uvicorn)

Settings come from SLIDEPIPE_* environment variables; command line flags
override them.

Exit Codes:
===========
- 0: Shutdown via signal (normal)
- 1: Invalid settings or watch folder
- 2: Watcher failed while running
"""

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Dict, List, NoReturn, Optional

from pydantic import ValidationError

from .config import PipelineSettings
from .logging_setup import configure_logging
from .service import PipelineService
from .watchfolders.errors import WatcherError

logger = logging.getLogger(__name__)


def _settings_from_args(args: argparse.Namespace) -> PipelineSettings:
    overrides: Dict[str, Any] = {
        "watch_root": str(Path(args.folder).resolve()) if args.folder else None,
        "output_dir": str(Path(args.output_dir).resolve()) if args.output_dir else None,
        "max_concurrency": args.max_concurrency,
        "stability_threshold": args.stability_threshold,
        "poll_interval_ms": args.poll_interval_ms,
        "vips_binary": args.vips,
        "temp_dir": args.temp_dir,
    }
    if args.icc_transform:
        overrides["icc_transform"] = True
    if args.skip_existing:
        overrides["process_existing"] = False
    return PipelineSettings.from_env(**overrides)


def _build_service(args: argparse.Namespace) -> PipelineService:
    try:
        settings = _settings_from_args(args)
    except ValidationError as e:
        print(f"ERROR: Invalid settings:\n{e}", file=sys.stderr)
        sys.exit(1)

    event_stream = sys.stdout if args.events else None
    return PipelineService(settings, event_stream=event_stream)


def cmd_run(args: argparse.Namespace) -> NoReturn:
    """
    Watch and convert until SIGINT/SIGTERM.

    Exit codes:
        0: Shutdown via signal
        1: Watch folder invalid
        2: Watcher failed while running
    """
    service = _build_service(args)
    stop_requested = threading.Event()

    def _request_stop(signum, _frame) -> None:
        logger.info(f"[CLI] Received signal {signum}, shutting down")
        stop_requested.set()

    signal.signal(signal.SIGTERM, _request_stop)
    signal.signal(signal.SIGINT, _request_stop)

    try:
        service.start()
    except WatcherError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)

    exit_code = 0
    while not stop_requested.wait(1.0):
        if service.watch_folders.watcher.failed is not None:
            exit_code = 2
            break

    # Watcher died: waiting jobs are cancelled, running ones finish. Signal: cancel all.
    service.stop(cancel_running=exit_code == 0)
    sys.exit(exit_code)


def cmd_serve(args: argparse.Namespace) -> NoReturn:
    """
    Run the pipeline behind the HTTP control API.

    The pipeline is started before the server binds, so an invalid watch
    folder exits with code 1 instead of surfacing as a lifespan error.
    """
    import uvicorn

    from .api import create_app

    service = _build_service(args)
    try:
        service.start()
    except WatcherError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)

    app = create_app(service, manage_lifecycle=False, cors_origins=args.cors_origin)
    try:
        uvicorn.run(app, host=args.host, port=args.port, log_config=None)
    finally:
        service.stop()
    sys.exit(0)


def _add_pipeline_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "folder",
        nargs="?",
        default=None,
        help="Watch folder root (default: $SLIDEPIPE_WATCH_ROOT)",
    )
    parser.add_argument("--output-dir", default=None, help="Where .dzi output is written")
    parser.add_argument("--max-concurrency", type=int, default=None, help="Concurrent conversions")
    parser.add_argument(
        "--stability-threshold",
        type=int,
        default=None,
        help="Unchanged polls before a file is considered complete",
    )
    parser.add_argument("--poll-interval-ms", type=int, default=None, help="Stability poll interval")
    parser.add_argument("--vips", default=None, help="vips executable")
    parser.add_argument("--temp-dir", default=None, help="Directory for intermediate files")
    parser.add_argument(
        "--icc-transform",
        action="store_true",
        help="Convert to sRGB using the embedded ICC profile",
    )
    parser.add_argument(
        "--skip-existing",
        action="store_true",
        help="Do not convert files already present at startup",
    )
    parser.add_argument(
        "--events",
        action="store_true",
        help="Write pipeline events to stdout as JSON lines",
    )
    parser.add_argument("--log-level", default="INFO", help="Log level (default: INFO)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="slidepipe",
        description="slidepipe - watched-folder whole-slide image conversion to Deep Zoom",
    )
    subparsers = parser.add_subparsers(dest="command", required=True, help="Command to execute")

    parser_run = subparsers.add_parser("run", help="Watch a folder and convert headless")
    _add_pipeline_arguments(parser_run)
    parser_run.set_defaults(func=cmd_run)

    parser_serve = subparsers.add_parser("serve", help="Watch and convert with the control API")
    _add_pipeline_arguments(parser_serve)
    parser_serve.add_argument("--host", default="127.0.0.1", help="Bind address")
    parser_serve.add_argument("--port", type=int, default=8085, help="Bind port")
    parser_serve.add_argument(
        "--cors-origin",
        action="append",
        default=None,
        help="Allowed browser origin (repeatable)",
    )
    parser_serve.set_defaults(func=cmd_serve)

    return parser


def main(argv: Optional[List[str]] = None) -> NoReturn:
    """
    Main CLI entrypoint.

    Parses arguments and dispatches to subcommands.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        configure_logging(args.log_level)
    except ValueError as e:
        parser.error(str(e))
    args.func(args)


if __name__ == "__main__":
    main()
