from __future__ import annotations

import argparse
import asyncio
import sys
from typing import List, Optional

from .config import DEFAULT_OPTIONS, LOG_LEVELS, TIMEOUTS, Options, server_start_timeout_ms
from .log import configure
from .measure import MeasurementSession, measure
from .report import render_summary
from .signals import SignalHandler

EPILOG = """
Measures:
- Build time
- Time to first paint
- Time to app load (waiting for specified element)
- Time to finished reload after file changes

Examples:
  $ build-start-perf-test --url http://localhost:3000 --command "npm run dev"
  $ build-start-perf-test --file app.js --wait-for ".app-container"
"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="build-start-perf-test",
        description="Measures build and load performance for web applications",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-u", "--url", default=DEFAULT_OPTIONS["url"], help="URL to load")
    parser.add_argument("-f", "--file", help="File to touch to trigger a reload")
    parser.add_argument("-c", "--command", default=DEFAULT_OPTIONS["command"], help="Command to start dev server")
    parser.add_argument(
        "-w",
        "--wait-for",
        default=DEFAULT_OPTIONS["wait_for"],
        help="Element selector to wait for",
    )
    parser.add_argument(
        "-l",
        "--log-level",
        default=DEFAULT_OPTIONS["log_level"],
        choices=LOG_LEVELS,
        help="Set the log level",
    )
    parser.add_argument(
        "--page-load-timeout",
        type=int,
        default=TIMEOUTS["page_load"],
        help="Navigation timeout in milliseconds",
    )
    parser.add_argument(
        "--server-args",
        default="",
        help='Extra arguments appended to the dev server command, e.g. --server-args="--port 4300"',
    )
    return parser


def options_from_args(args: argparse.Namespace) -> Options:
    return Options(
        url=args.url,
        file=args.file,
        command=args.command,
        wait_for_selector=args.wait_for,
        page_load_timeout=args.page_load_timeout,
        log_level=args.log_level,
        server_start_timeout=server_start_timeout_ms(),
        server_args=args.server_args,
    )


async def run(options: Options, session: MeasurementSession, handler: SignalHandler) -> int:
    try:
        results = await measure(options, session=session)
    except Exception as exc:
        if not handler.triggered:
            print("Measurement failed", file=sys.stderr)
            print(f"{type(exc).__name__}: {exc}", file=sys.stderr)
            return 1
    else:
        if not handler.triggered:
            print(render_summary(results))
            return 0
    # The failure came from a signal tearing the run down; its cleanup decides the exit.
    await handler.wait()
    return 0


async def main_async(options: Options) -> int:
    session = MeasurementSession(options)
    task = asyncio.current_task()
    handler = SignalHandler(session, on_exit=lambda code: task.cancel())
    handler.install()
    try:
        return await run(options, session, handler)
    except asyncio.CancelledError:
        if not handler.triggered:
            raise
        return 0
    finally:
        handler.uninstall()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    options = options_from_args(args)
    configure(options.log_level)
    return asyncio.run(main_async(options))


if __name__ == "__main__":
    sys.exit(main())
