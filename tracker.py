from __future__ import annotations

import argparse
import asyncio
import signal
import uuid

from worklens.config import get_settings
from worklens.logging_utils import init_logger
from worklens.models import UserGoals
from worklens.pipeline import Pipeline, options_from_settings
from worklens.rendering import write_session_report


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="WorkLens tracker (capture, upload and analyse a work session)")
    parser.add_argument("--session-id", default=None, help="Session id (defaults to a random UUID)")
    parser.add_argument("--goal", default=None, help="Session goal shown to the analyzer")
    parser.add_argument("--personal-goal", action="append", default=[], help="Personal micro goal (repeatable)")
    parser.add_argument("--team-goal", action="append", default=[], help="Team micro goal (repeatable)")
    parser.add_argument("--interval-ms", type=int, default=None, help="Override CAPTURE_INTERVAL_MS (minimum 5000)")
    parser.add_argument("--batch-size", type=int, default=None, help="Override ANALYSIS_BATCH_SIZE")
    parser.add_argument(
        "--exclude-app",
        action="append",
        default=[],
        help="Process name to never capture, e.g. KeePass.exe (repeatable)",
    )
    parser.add_argument("--privacy-mode", action="store_true", help="Run the privacy filter on every capture")
    parser.add_argument("--no-event-triggers", action="store_true", help="Capture on the interval timer only")
    parser.add_argument(
        "--duration-seconds",
        type=float,
        default=None,
        help="Stop automatically after this many seconds (default: run until Ctrl+C)",
    )
    return parser


async def run(args: argparse.Namespace) -> int:
    settings = get_settings()
    logger = init_logger("tracker", settings.logging.directory, settings.logging.level)

    session_id = args.session_id or str(uuid.uuid4())
    options = options_from_settings(
        settings,
        session_goal=args.goal,
        user_goals=UserGoals(personal_micro=args.personal_goal, team_micro=args.team_goal),
        interval_ms=args.interval_ms,
        batch_size=args.batch_size,
        exclude_apps=[*settings.capture.exclude_apps, *args.exclude_app] or None,
        privacy_mode=True if args.privacy_mode else None,
        enable_event_triggers=False if args.no_event_triggers else None,
    )

    loop = asyncio.get_running_loop()
    stop_requested = asyncio.Event()

    def _graceful_stop(signum, frame):
        logger.info("Received signal %s - stopping session", signum)
        loop.call_soon_threadsafe(stop_requested.set)

    signal.signal(signal.SIGINT, _graceful_stop)
    signal.signal(signal.SIGTERM, _graceful_stop)

    pipeline = Pipeline(settings)
    try:
        await pipeline.start_session(session_id, options)
        logger.info("Tracking session %s (goal: %s)", session_id, options.session_goal)
        try:
            await asyncio.wait_for(stop_requested.wait(), timeout=args.duration_seconds)
        except asyncio.TimeoutError:
            logger.info("Duration of %ss elapsed", args.duration_seconds)

        result = await pipeline.stop_session()
    finally:
        await pipeline.close()

    if result is None:
        logger.warning("No session result produced")
        return 1

    json_path, md_path = write_session_report(result, settings.output.report_dir)
    logger.info("Session report written to %s and %s", json_path, md_path)
    if result.unresolved_uploads:
        logger.warning("%s artifacts could not be stored", len(result.unresolved_uploads))
    return 0


def main() -> None:
    args = build_parser().parse_args()
    raise SystemExit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
