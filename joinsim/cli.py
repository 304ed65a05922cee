"""Command-line entry point.

Usage:
    # Join 10 users with an existing join URL (quote it)
    joinsim join "https://bbb.example.com/bigbluebutton/api/join?..." 10 -v

    # Join 3 viewers with self-signed URLs
    joinsim custom-join --secret SECRET --pw attendeePass 3 \\
        --host https://bbb.example.com --meeting-id room123 -v

    # Custom userdata, stop after two minutes
    joinsim custom-join --secret SECRET --pw modPass 2 \\
        --userdata "role=tester,group=qa" --duration 120

Connections stay open until --duration elapses or the process receives
SIGINT/SIGTERM, then every connection is closed gracefully.

Exit codes:
- 0: Run completed
- 2: Invalid arguments
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from typing import Optional

from joinsim.commands import Simulator
from joinsim.config import Settings
from joinsim.errors import ValidationError
from joinsim.reporting import Reporter

logger = logging.getLogger("joinsim.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="joinsim",
        description="Simulate participants joining a BigBlueButton meeting.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    join = sub.add_parser("join", help="Join users with an existing join URL")
    join.add_argument("join_url", help="BBB join URL (quote URLs with special characters)")
    join.add_argument("count", help="Number of users to join")

    custom = sub.add_parser("custom-join", help="Join users with self-signed join URLs")
    custom.add_argument("count", help="Number of users to join")
    custom.add_argument("--secret", help="BBB shared secret (sensitive!)")
    custom.add_argument("--pw", help="Meeting password (attendee or moderator)")
    custom.add_argument("--host", help="BBB server URL (default: JOINSIM_HOST)")
    custom.add_argument("--meeting-id", "--meetingID", dest="meeting_id",
                        help="Meeting ID (default: JOINSIM_MEETING_ID)")
    custom.add_argument("--userdata", help='Extra join parameters: "key1=value1,key2=value2"')

    for command in (join, custom):
        command.add_argument("-v", "--verbose", action="store_true", help="Show progress messages")
        command.add_argument("--duration", type=float, default=None,
                             help="Seconds to keep connections open (default: until interrupted)")
    return parser


async def _hold(duration: Optional[float]) -> None:
    """Wait for duration seconds or a termination signal."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)
    try:
        await asyncio.wait_for(stop.wait(), timeout=duration)
    except asyncio.TimeoutError:
        pass


async def run(args: argparse.Namespace, settings: Settings) -> int:
    simulator = Simulator(settings=settings, reporter=Reporter(verbose=args.verbose))
    try:
        if args.command == "join":
            await simulator.join(args.join_url, args.count, verbose=args.verbose)
            await _hold(args.duration)
            simulator.stop_join()
        else:
            await simulator.custom_join(
                args.secret, args.pw, args.count,
                host=args.host, meeting_id=args.meeting_id,
                user_data=args.userdata, verbose=args.verbose,
            )
            await _hold(args.duration)
            simulator.stop_custom_join()
    except ValidationError as e:
        simulator.reporter.summary(f"{e.message} {e.suggestion or ''}".strip())
        return 2
    finally:
        await simulator.shutdown()
    return 0


def main(argv: Optional[list[str]] = None) -> None:
    """Run the simulator CLI."""
    settings = Settings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    args = build_parser().parse_args(argv)
    try:
        exit_code = asyncio.run(run(args, settings))
    except KeyboardInterrupt:
        exit_code = 0
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
