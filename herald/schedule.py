"""
5-field cron expression parsing and matching.

Day-of-month and weekday are ANDed: ``0 9 13 * 5`` only matches Friday the
13th, unlike the OR convention of some cron dialects.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import FrozenSet, List, Optional, Tuple

from croniter import CroniterBadCronError, CroniterBadDateError, croniter

from herald.errors import ScheduleSyntaxError

# (name, minimum, maximum) in expression order.
FIELD_BOUNDS: List[Tuple[str, int, int]] = [
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day", 1, 31),
    ("month", 1, 12),
    ("weekday", 0, 6),
]

NUMBER_RE = re.compile(r"[0-9]+")


@dataclass(frozen=True)
class CronFields:
    minute: FrozenSet[int]
    hour: FrozenSet[int]
    day: FrozenSet[int]
    month: FrozenSet[int]
    weekday: FrozenSet[int]


def parse_schedule(expr: str) -> CronFields:
    if not isinstance(expr, str):
        raise ScheduleSyntaxError("Error: cron schedule must be a string.")
    parts = expr.split()
    if len(parts) != len(FIELD_BOUNDS):
        raise ScheduleSyntaxError(
            f'Error: Invalid cron schedule "{expr}": expected 5 fields, got {len(parts)}.'
        )
    values = {
        name: parse_field(part, name, minimum, maximum)
        for part, (name, minimum, maximum) in zip(parts, FIELD_BOUNDS)
    }
    return CronFields(**values)


def parse_field(token: str, field_name: str, min_value: int, max_value: int) -> FrozenSet[int]:
    if token == "*":
        return frozenset(range(min_value, max_value + 1))

    if token.startswith("*/"):
        step_str = token[2:]
        if not NUMBER_RE.fullmatch(step_str) or int(step_str) <= 0:
            raise ScheduleSyntaxError(f'Error: Invalid step "{token}" in {field_name} field.')
        step = int(step_str)
        return frozenset(range(min_value, max_value + 1, step))

    if "," in token:
        return frozenset(
            _parse_value(part, token, field_name, min_value, max_value) for part in token.split(",")
        )

    if "-" in token:
        left, right = token.split("-", 1)
        if not NUMBER_RE.fullmatch(left) or not NUMBER_RE.fullmatch(right):
            raise ScheduleSyntaxError(f'Error: Invalid range "{token}" in {field_name} field.')
        start = int(left)
        end = int(right)
        if start > end:
            raise ScheduleSyntaxError(f'Error: Inverted range "{token}" in {field_name} field.')
        if start < min_value or end > max_value:
            raise ScheduleSyntaxError(
                f'Error: Range "{token}" out of bounds {min_value}-{max_value} in {field_name} field.'
            )
        return frozenset(range(start, end + 1))

    return frozenset({_parse_value(token, token, field_name, min_value, max_value)})


def _parse_value(part: str, token: str, field_name: str, min_value: int, max_value: int) -> int:
    if not NUMBER_RE.fullmatch(part):
        raise ScheduleSyntaxError(f'Error: Invalid token "{token}" in {field_name} field.')
    value = int(part)
    if value < min_value or value > max_value:
        raise ScheduleSyntaxError(
            f'Error: Value "{value}" out of bounds {min_value}-{max_value} in {field_name} field.'
        )
    return value


def cron_weekday(when: datetime) -> int:
    """Weekday of ``when`` in cron numbering (0 = Sunday)."""
    return (when.weekday() + 1) % 7


def matches(expr: str, when: datetime) -> bool:
    try:
        fields = parse_schedule(expr)
    except ScheduleSyntaxError:
        return False
    return (
        when.minute in fields.minute
        and when.hour in fields.hour
        and when.day in fields.day
        and when.month in fields.month
        and cron_weekday(when) in fields.weekday
    )


def next_fire_time(expr: str, after: datetime) -> Optional[datetime]:
    """Next matching minute strictly after ``after``, or None if the fields never line up."""
    parse_schedule(expr)
    try:
        nxt = croniter(expr, after, day_or=False).get_next(datetime)
    except (CroniterBadCronError, CroniterBadDateError):
        return None
    if nxt.tzinfo is None and after.tzinfo is not None:
        nxt = nxt.replace(tzinfo=after.tzinfo)
    return nxt
