from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone

import pytest

from herald.errors import ScheduleSyntaxError
from herald.schedule import FIELD_BOUNDS, matches, next_fire_time, parse_field, parse_schedule

UTC = timezone.utc


def test_step_field_expands_from_minimum() -> None:
    assert parse_field("*/15", "minute", 0, 59) == {0, 15, 30, 45}
    assert parse_field("*/10", "day", 1, 31) == {1, 11, 21, 31}


def test_parse_lists_ranges_and_wildcards() -> None:
    fields = parse_schedule("0,30 9-17 * 1,6,12 1-5")
    assert fields.minute == {0, 30}
    assert fields.hour == set(range(9, 18))
    assert fields.day == set(range(1, 32))
    assert fields.month == {1, 6, 12}
    assert fields.weekday == {1, 2, 3, 4, 5}


def test_extra_whitespace_between_fields_is_accepted() -> None:
    assert parse_schedule("  0   9 *  * * ").hour == {9}


@pytest.mark.parametrize(
    "expr",
    [
        "",
        "* * * *",
        "* * * * * *",
        "60 * * * *",
        "* 24 * * *",
        "* * 0 * *",
        "* * * 13 *",
        "* * * * 7",
        "*/0 * * * *",
        "*/x * * * *",
        "5-1 * * * *",
        "a * * * *",
        "1,x * * * *",
        "1-x * * * *",
        "¹ * * * *",
        "*/¹ * * * *",
        "1-² * * * *",
        "1,² * * * *",
    ],
)
def test_invalid_expressions_rejected(expr: str) -> None:
    with pytest.raises(ScheduleSyntaxError):
        parse_schedule(expr)
    assert matches(expr, datetime(2026, 2, 23, 9, 0)) is False


def test_weekday_schedule_matches_only_weekdays() -> None:
    monday = datetime(2026, 2, 23, 9, 0)
    saturday = datetime(2026, 2, 28, 9, 0)
    assert matches("0 9 * * 1-5", monday)
    assert not matches("0 9 * * 1-5", saturday)
    assert not matches("0 9 * * 1-5", monday.replace(minute=1))


def test_sunday_is_weekday_zero() -> None:
    assert matches("0 0 * * 0", datetime(2026, 3, 1, 0, 0))


def test_day_of_month_and_weekday_are_both_required() -> None:
    expr = "0 9 13 * 5"
    assert matches(expr, datetime(2026, 2, 13, 9, 0))  # Friday the 13th
    assert not matches(expr, datetime(2026, 2, 20, 9, 0))  # Friday, not the 13th
    assert not matches(expr, datetime(2026, 4, 13, 9, 0))  # the 13th, a Monday


def test_aware_datetimes_match_in_their_own_zone() -> None:
    when = datetime(2026, 2, 23, 9, 30, tzinfo=timezone(timedelta(hours=2)))
    assert matches("30 9 * * *", when)
    assert not matches("30 9 * * *", when.astimezone(UTC))


def _render_token(values: list[int], minimum: int, maximum: int, rng: random.Random) -> tuple[str, set[int]]:
    shape = rng.choice(["star", "step", "list", "range", "single"])
    if shape == "star":
        return "*", set(range(minimum, maximum + 1))
    if shape == "step":
        step = rng.randint(1, maximum - minimum + 1)
        return f"*/{step}", set(range(minimum, maximum + 1, step))
    if shape == "list":
        return ",".join(str(value) for value in values), set(values)
    if shape == "range":
        start, end = sorted(rng.sample(range(minimum, maximum + 1), 2))
        return f"{start}-{end}", set(range(start, end + 1))
    return str(values[0]), {values[0]}


def test_matches_agrees_with_brute_force_field_check() -> None:
    rng = random.Random(20260223)
    start = datetime(2026, 1, 1)
    for _ in range(500):
        tokens = []
        expected_sets = []
        for _name, minimum, maximum in FIELD_BOUNDS:
            values = rng.sample(range(minimum, maximum + 1), rng.randint(1, 4))
            token, expected = _render_token(values, minimum, maximum, rng)
            tokens.append(token)
            expected_sets.append(expected)
        expr = " ".join(tokens)
        when = start + timedelta(minutes=rng.randrange(0, 366 * 24 * 60))
        calendar = [when.minute, when.hour, when.day, when.month, int(when.strftime("%w"))]
        expected = all(value in allowed for value, allowed in zip(calendar, expected_sets))
        assert matches(expr, when) is expected, (expr, when)


def test_next_fire_time_is_strictly_after_reference() -> None:
    after = datetime(2026, 2, 23, 9, 30, tzinfo=UTC)
    nxt = next_fire_time("30 9 * * *", after)
    assert nxt == datetime(2026, 2, 24, 9, 30, tzinfo=UTC)


def test_next_fire_time_uses_and_semantics() -> None:
    nxt = next_fire_time("0 9 13 * 5", datetime(2026, 1, 1, tzinfo=UTC))
    assert nxt == datetime(2026, 2, 13, 9, 0, tzinfo=UTC)


def test_next_fire_time_rejects_invalid_expression() -> None:
    with pytest.raises(ScheduleSyntaxError):
        next_fire_time("61 * * * *", datetime(2026, 1, 1, tzinfo=UTC))
