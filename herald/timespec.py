"""
Human time specifications resolved to epoch milliseconds.

Accepted forms, tried in order: ``now``, ``+N{s,m,h,d}``, 10-13 digit epoch
(seconds below 10^12, milliseconds otherwise), ``H:MM``/``HH:MM`` (next
occurrence of that wall-clock time), ISO-8601 and RFC 2822 date strings.
"""

from __future__ import annotations

import re
import time
from datetime import datetime, time as dt_time, timedelta, tzinfo
from email.utils import parsedate_to_datetime
from typing import List, Optional

from herald.config import system_timezone
from herald.errors import InvalidTimeSpecError
from herald.models import ONCE_SCHEDULE, Job, Script

RELATIVE_RE = re.compile(r"\+([0-9]+)([smhd])")
EPOCH_RE = re.compile(r"[0-9]{10,13}")
CLOCK_RE = re.compile(r"([0-9]{1,2}):([0-9]{2})")
UNIT_MS = {"s": 1000, "m": 60_000, "h": 3_600_000, "d": 86_400_000}
EPOCH_MS_THRESHOLD = 10**12


def epoch_ms() -> int:
    return int(time.time() * 1000)


def resolve_time_spec(spec: str, reference_now_ms: Optional[int] = None, tz: Optional[tzinfo] = None) -> int:
    if not isinstance(spec, str):
        raise InvalidTimeSpecError(str(spec))
    reference = epoch_ms() if reference_now_ms is None else reference_now_ms
    zone = tz or system_timezone()[0]

    if spec == "now":
        return reference

    match = RELATIVE_RE.fullmatch(spec)
    if match:
        return reference + int(match.group(1)) * UNIT_MS[match.group(2)]

    if EPOCH_RE.fullmatch(spec):
        value = int(spec)
        return value * 1000 if value < EPOCH_MS_THRESHOLD else value

    match = CLOCK_RE.fullmatch(spec)
    if match:
        hour = int(match.group(1))
        minute = int(match.group(2))
        if hour <= 23 and minute <= 59:
            return _next_wall_clock(hour, minute, reference, zone)

    parsed = _parse_datetime(spec, zone)
    if parsed is not None:
        return int(parsed.timestamp() * 1000)

    raise InvalidTimeSpecError(spec)


def _next_wall_clock(hour: int, minute: int, reference_ms: int, zone: tzinfo) -> int:
    current = datetime.fromtimestamp(reference_ms / 1000, tz=zone)
    candidate = datetime.combine(current.date(), dt_time(hour, minute), tzinfo=zone)
    if candidate < current:
        candidate = datetime.combine(current.date() + timedelta(days=1), dt_time(hour, minute), tzinfo=zone)
    return int(candidate.timestamp() * 1000)


def _parse_datetime(spec: str, zone: tzinfo) -> Optional[datetime]:
    text = spec.strip()
    if not text:
        return None
    parsed: Optional[datetime] = None
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        try:
            parsed = parsedate_to_datetime(text)
        except (TypeError, ValueError, IndexError):
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=zone)
    return parsed


def create_once_job(
    time_spec: str,
    session: str,
    message: str,
    *,
    now_ms: Optional[int] = None,
    tz: Optional[tzinfo] = None,
    scripts: Optional[List[Script]] = None,
) -> Job:
    reference = epoch_ms() if now_ms is None else now_ms
    run_at = resolve_time_spec(time_spec, reference, tz)
    return Job(
        name=f"once-{reference}",
        schedule=ONCE_SCHEDULE,
        session=session,
        message=message,
        scripts=scripts or None,
        once=True,
        run_at=run_at,
    ).validate()
