"""
Administrative operations over the job and history stores.

Every operation returns an AdminReply; problems are reported in its text with
``is_error`` set instead of being raised.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, tzinfo
from typing import List, Optional

from herald.errors import HeraldError, ScheduleSyntaxError
from herald.models import Job, Script
from herald.schedule import next_fire_time, parse_schedule
from herald.store import DEFAULT_HISTORY_LIMIT, HistoryFilter, JobStore, RunHistory
from herald.timespec import create_once_job, epoch_ms


@dataclass(frozen=True)
class AdminReply:
    text: str
    is_error: bool = False


def _format_ms(value: int, tz: Optional[tzinfo]) -> str:
    return datetime.fromtimestamp(value / 1000, tz=tz).isoformat(timespec="seconds")


def _error(exc: Exception) -> AdminReply:
    text = str(exc)
    return AdminReply(text if text.startswith("Error:") else f"Error: {text}", is_error=True)


def schedule_add(
    jobs: JobStore,
    name: str,
    schedule: str,
    session: str,
    message: str,
    scripts: Optional[List[Script]] = None,
    once: bool = False,
    now_ms: Optional[int] = None,
    tz: Optional[tzinfo] = None,
) -> AdminReply:
    try:
        parse_schedule(schedule)
        run_at: Optional[int] = None
        if once:
            reference = datetime.fromtimestamp((epoch_ms() if now_ms is None else now_ms) / 1000, tz=tz)
            fire_at = next_fire_time(schedule, reference)
            if fire_at is None:
                return AdminReply(f'Error: Schedule "{schedule}" never fires.', is_error=True)
            run_at = int(fire_at.timestamp() * 1000)
        job = Job(
            name=name,
            schedule=schedule,
            session=session,
            message=message,
            scripts=scripts or None,
            once=once,
            run_at=run_at,
        )
        jobs.upsert(job)
    except HeraldError as exc:
        return _error(exc)
    script_info = f" ({len(scripts)} script(s))" if scripts else ""
    when = f"once at {_format_ms(run_at, tz)}" if run_at is not None else schedule
    return AdminReply(f"Cron job '{name}' scheduled: {when} -> {session}{script_info}")


def schedule_once(
    jobs: JobStore,
    time_spec: str,
    session: str,
    message: str,
    now_ms: Optional[int] = None,
    tz: Optional[tzinfo] = None,
) -> AdminReply:
    try:
        job = create_once_job(time_spec, session, message, now_ms=now_ms, tz=tz)
        jobs.upsert(job)
    except HeraldError as exc:
        return _error(exc)
    return AdminReply(f"One-time job '{job.name}' scheduled for {_format_ms(job.run_at, tz)}")


def list_jobs(jobs: JobStore, tz: Optional[tzinfo] = None, now_ms: Optional[int] = None) -> AdminReply:
    try:
        listed = jobs.list()
    except HeraldError as exc:
        return _error(exc)
    if not listed:
        return AdminReply("No cron jobs scheduled.")

    reference = datetime.fromtimestamp((epoch_ms() if now_ms is None else now_ms) / 1000, tz=tz)
    lines = ["Scheduled cron jobs:"]
    for job in listed:
        if job.is_one_time:
            lines.append(f"- {job.name}: once at {_format_ms(job.run_at, tz)} -> {job.session}")
        else:
            try:
                nxt = next_fire_time(job.schedule, reference)
                next_text = f"next {nxt.isoformat(timespec='minutes')}" if nxt else "never fires"
            except ScheduleSyntaxError:
                next_text = "invalid schedule"
            lines.append(f"- {job.name}: {job.schedule} ({next_text}) -> {job.session}")
        lines.append(f'    message: "{job.message}"')
        if job.scripts:
            lines.append(f"    scripts: {', '.join(script.name for script in job.scripts)}")
    return AdminReply("\n".join(lines))


def cancel_job(jobs: JobStore, name: str) -> AdminReply:
    try:
        removed = jobs.delete_by_name(name)
    except HeraldError as exc:
        return _error(exc)
    if not removed:
        return AdminReply(f"Cron job '{name}' not found", is_error=True)
    return AdminReply(f"Cron job '{name}' cancelled")


def _history_filter(
    name: Optional[str],
    session: Optional[str],
    since: Optional[int] = None,
    success_only: bool = False,
    failed_only: bool = False,
) -> HistoryFilter:
    status = "success" if success_only else ("failure" if failed_only else None)
    return HistoryFilter(cron_name=name or None, session=session or None, status=status, since=since)


def query_history(
    history: RunHistory,
    name: Optional[str] = None,
    session: Optional[str] = None,
    since: Optional[int] = None,
    success_only: bool = False,
    failed_only: bool = False,
    limit: int = DEFAULT_HISTORY_LIMIT,
    offset: int = 0,
    tz: Optional[tzinfo] = None,
) -> AdminReply:
    try:
        page = history.query(
            _history_filter(name, session, since, success_only, failed_only),
            offset=offset,
            limit=limit,
        )
    except (HeraldError, ValueError) as exc:
        return _error(exc)
    if page.total == 0:
        return AdminReply("No cron history found matching filters.")

    lines = [f"Cron History (showing {len(page.entries)} of {page.total} entries):", ""]
    for entry in page.entries:
        lines.append(f"[{_format_ms(entry.started_at, tz)}] {entry.cron_name} -> {entry.session}")
        lines.append(f"  Status: {entry.status.upper()} | Duration: {entry.duration_ms}ms")
        if entry.error:
            lines.append(f"  Error: {entry.error}")
        if entry.script_results:
            failed = sum(1 for result in entry.script_results if result.error)
            lines.append(f"  Scripts: {len(entry.script_results)} run, {failed} failed")
        lines.append(f"  Message: {entry.message}")
        lines.append("")
    if page.has_more:
        lines.append(
            f"--- More entries available. Use offset={offset + len(page.entries)} to see next page ---"
        )
    return AdminReply("\n".join(lines).rstrip("\n"))


def clear_history(history: RunHistory, name: Optional[str] = None, session: Optional[str] = None) -> AdminReply:
    try:
        removed = history.delete_many(_history_filter(name, session) if (name or session) else None)
    except HeraldError as exc:
        return _error(exc)
    return AdminReply(f"Cleared {removed} history entr{'y' if removed == 1 else 'ies'}.")
