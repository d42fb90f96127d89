"""
Command-line entry point: job administration, history and the scheduler daemon.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from herald import admin
from herald.config import DEFAULT_CONFIG, HeraldSettings, load_settings, scripts_flag, setup_logging
from herald.delivery import HttpDeliveryChannel
from herald.errors import ConfigError, HeraldError, JobValidationError
from herald.models import Script
from herald.schedule import parse_schedule
from herald.store import DEFAULT_HISTORY_LIMIT, JsonlRunHistory, YamlJobStore
from herald.ticker import TickScheduler
from herald.timespec import resolve_time_spec

logger = logging.getLogger("herald")


@dataclass
class Runtime:
    settings: HeraldSettings
    jobs: YamlJobStore
    history: JsonlRunHistory
    channel: HttpDeliveryChannel


def open_runtime(config_path: Path) -> Runtime:
    settings = load_settings(config_path)
    return Runtime(
        settings=settings,
        jobs=YamlJobStore(settings.storage.jobs_file),
        history=JsonlRunHistory(settings.storage.history_file),
        channel=HttpDeliveryChannel(
            settings.delivery.endpoint,
            api_key=settings.delivery.api_key,
            timeout_ms=settings.delivery.timeout_ms,
        ),
    )


def build_scheduler(runtime: Runtime, tick_seconds: Optional[int] = None) -> TickScheduler:
    settings = runtime.settings
    return TickScheduler(
        runtime.jobs,
        runtime.history,
        runtime.channel,
        tz=settings.scheduler.timezone,
        scripts_enabled=scripts_flag(settings.config_path),
        job_timeout_seconds=settings.scheduler.job_timeout_seconds,
        tick_seconds=tick_seconds or settings.scheduler.tick_seconds,
        sender=settings.delivery.sender,
        silent=settings.delivery.silent,
    )


def load_scripts_file(path: Path) -> List[Script]:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Error: Failed to read scripts file {path}: {exc}") from exc
    if not isinstance(raw, list):
        raise ConfigError(f"Error: Scripts file {path} must contain a list.")
    try:
        return [Script.from_dict(item, f"scripts[{idx}]") for idx, item in enumerate(raw)]
    except JobValidationError as exc:
        raise ConfigError(str(exc)) from exc


def print_stream_event(event: Dict[str, Any]) -> None:
    kind = event.get("type")
    content = event.get("content", "")
    if kind == "text":
        sys.stdout.write(str(content))
        sys.stdout.flush()
    elif kind == "complete":
        print(f"\n[herald] {content}")


def _reply(reply: admin.AdminReply) -> int:
    print(reply.text)
    return 1 if reply.is_error else 0


def inject_now(runtime: Runtime, session: str, message: str) -> None:
    asyncio.run(
        runtime.channel.deliver(
            session,
            message,
            sender=runtime.settings.delivery.sender,
            silent=False,
            on_stream=print_stream_event,
        )
    )


def command_validate(config_path: Path) -> int:
    runtime = open_runtime(config_path)
    settings = runtime.settings
    jobs = runtime.jobs.list()
    print(f"Config valid: {settings.config_path}")
    print(f"Timezone: {settings.scheduler.timezone_name}")
    print(f"Scripts enabled: {settings.scheduler.scripts_enabled}")
    print(f"Jobs file: {settings.storage.jobs_file} ({len(jobs)} job(s))")
    invalid = 0
    for job in jobs:
        if job.is_one_time:
            continue
        try:
            parse_schedule(job.schedule)
        except HeraldError as exc:
            invalid += 1
            print(f"- {job.name}: {exc}")
    return 1 if invalid else 0


def command_add(runtime: Runtime, args: argparse.Namespace) -> int:
    scripts = load_scripts_file(Path(args.scripts_file)) if args.scripts_file else None
    message = " ".join(args.message)
    reply = admin.schedule_add(
        runtime.jobs,
        args.name,
        args.schedule,
        args.session,
        message,
        scripts=scripts,
        once=args.once,
        tz=runtime.settings.scheduler.timezone,
    )
    code = _reply(reply)
    if code == 0 and args.now:
        inject_now(runtime, args.session, message)
    return code


def command_history(runtime: Runtime, args: argparse.Namespace) -> int:
    tz = runtime.settings.scheduler.timezone
    since = resolve_time_spec(args.since, tz=tz) if args.since else None
    return _reply(
        admin.query_history(
            runtime.history,
            name=args.name,
            session=args.session,
            since=since,
            success_only=args.success_only,
            failed_only=args.failed_only,
            limit=args.limit,
            offset=args.offset,
            tz=tz,
        )
    )


def command_tick(runtime: Runtime) -> int:
    summary = asyncio.run(build_scheduler(runtime).tick())
    print(f"Fired: {', '.join(summary.fired) or '(none)'}")
    if summary.failed:
        print(f"Failed: {', '.join(summary.failed)}")
    if summary.removed:
        print(f"Removed: {', '.join(summary.removed)}")
    return 1 if summary.failed else 0


def command_daemon(runtime: Runtime, tick_seconds: Optional[int]) -> int:
    scheduler = build_scheduler(runtime, tick_seconds)
    logger.info(
        "Starting daemon with jobs_file=%s, tick_seconds=%s",
        runtime.settings.storage.jobs_file,
        scheduler.tick_seconds,
    )
    try:
        asyncio.run(scheduler.run_forever())
    except KeyboardInterrupt:
        logger.info("Daemon interrupted by user.")
        return 130
    return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="herald",
        description="herald scheduled message injection",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG,
        help=f"Path to herald YAML config (default: {DEFAULT_CONFIG})",
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", default=argparse.SUPPRESS, help="Path to config")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("validate", parents=[common], help="Validate config and stored jobs")

    add_parser = subparsers.add_parser("add", parents=[common], help="Add or replace a recurring job")
    add_parser.add_argument("name")
    add_parser.add_argument("schedule", help='5-field cron schedule, e.g. "0 9 * * 1-5"')
    add_parser.add_argument("session")
    add_parser.add_argument("message", nargs="+")
    add_parser.add_argument("--once", action="store_true", help="Fire at the next match, then remove")
    add_parser.add_argument("--now", action="store_true", help="Also inject the message immediately")
    add_parser.add_argument("--scripts-file", help="YAML/JSON list of scripts run before each delivery")

    once_parser = subparsers.add_parser("once", parents=[common], help="Schedule a one-time message")
    once_parser.add_argument("time", help="now, +5m, 14:30, epoch or ISO timestamp")
    once_parser.add_argument("session")
    once_parser.add_argument("message", nargs="+")

    now_parser = subparsers.add_parser("now", parents=[common], help="Inject a message immediately")
    now_parser.add_argument("session")
    now_parser.add_argument("message", nargs="+")

    remove_parser = subparsers.add_parser("remove", parents=[common], help="Cancel a job by name")
    remove_parser.add_argument("name")

    subparsers.add_parser("list", parents=[common], help="List scheduled jobs")

    history_parser = subparsers.add_parser("history", parents=[common], help="Show run history")
    history_parser.add_argument("--name", help="Filter by job name")
    history_parser.add_argument("--session", help="Filter by target session")
    history_parser.add_argument("--since", help="Only runs started at or after this time spec")
    status_group = history_parser.add_mutually_exclusive_group()
    status_group.add_argument("--success-only", action="store_true")
    status_group.add_argument("--failed-only", action="store_true")
    history_parser.add_argument("--limit", type=int, default=DEFAULT_HISTORY_LIMIT)
    history_parser.add_argument("--offset", type=int, default=0)

    clear_parser = subparsers.add_parser("clear-history", parents=[common], help="Delete run history")
    clear_target = clear_parser.add_mutually_exclusive_group()
    clear_target.add_argument("--name", help="Only entries of this job")
    clear_target.add_argument("--session", help="Only entries of this session")

    subparsers.add_parser("tick", parents=[common], help="Run a single scheduler tick now")

    daemon_parser = subparsers.add_parser("daemon", parents=[common], help="Run the scheduler loop")
    daemon_parser.add_argument(
        "--tick-seconds",
        type=int,
        help="Override scheduler.tick_seconds from the config",
    )

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    config_path = Path(args.config or DEFAULT_CONFIG).resolve()

    setup_logging()
    try:
        if args.command == "validate":
            return command_validate(config_path)

        runtime = open_runtime(config_path)
        setup_logging(runtime.settings.logging.level, runtime.settings.logging.file)
        tz = runtime.settings.scheduler.timezone

        if args.command == "add":
            return command_add(runtime, args)
        if args.command == "once":
            return _reply(admin.schedule_once(runtime.jobs, args.time, args.session, " ".join(args.message), tz=tz))
        if args.command == "now":
            inject_now(runtime, args.session, " ".join(args.message))
            return 0
        if args.command == "remove":
            return _reply(admin.cancel_job(runtime.jobs, args.name))
        if args.command == "list":
            return _reply(admin.list_jobs(runtime.jobs, tz=tz))
        if args.command == "history":
            if args.limit < 0 or args.offset < 0:
                raise HeraldError("--limit and --offset must be >= 0")
            return command_history(runtime, args)
        if args.command == "clear-history":
            return _reply(admin.clear_history(runtime.history, name=args.name, session=args.session))
        if args.command == "tick":
            return command_tick(runtime)
        if args.command == "daemon":
            if args.tick_seconds is not None and args.tick_seconds <= 0:
                raise HeraldError("--tick-seconds must be >= 1")
            return command_daemon(runtime, args.tick_seconds)
        raise HeraldError(f"Unsupported command: {args.command}")
    except HeraldError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
