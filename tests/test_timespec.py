from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from herald.errors import InvalidTimeSpecError
from herald.timespec import create_once_job, resolve_time_spec

UTC = ZoneInfo("UTC")
REF = 1_700_000_000_000  # 2023-11-14T22:13:20Z


def _ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def test_now_returns_reference() -> None:
    assert resolve_time_spec("now", REF, UTC) == REF


@pytest.mark.parametrize(
    "spec, offset",
    [("+30s", 30_000), ("+5m", 300_000), ("+2h", 7_200_000), ("+1d", 86_400_000)],
)
def test_relative_offsets(spec: str, offset: int) -> None:
    assert resolve_time_spec(spec, REF, UTC) == REF + offset


def test_epoch_seconds_and_milliseconds() -> None:
    assert resolve_time_spec("1700000000", REF, UTC) == 1_700_000_000_000
    assert resolve_time_spec("1700000000123", REF, UTC) == 1_700_000_000_123


def test_wall_clock_rolls_forward_when_passed() -> None:
    # 22:13 on the reference day; 14:30 already passed.
    assert resolve_time_spec("14:30", REF, UTC) == _ms(datetime(2023, 11, 15, 14, 30, tzinfo=UTC))


def test_wall_clock_later_today() -> None:
    assert resolve_time_spec("23:59", REF, UTC) == _ms(datetime(2023, 11, 14, 23, 59, tzinfo=UTC))
    assert resolve_time_spec("9:05", REF, UTC) == _ms(datetime(2023, 11, 15, 9, 5, tzinfo=UTC))


def test_wall_clock_uses_given_zone() -> None:
    berlin = ZoneInfo("Europe/Berlin")
    # 23:13 in Berlin at the reference instant.
    assert resolve_time_spec("23:30", REF, berlin) == _ms(datetime(2023, 11, 14, 23, 30, tzinfo=berlin))


def test_iso_and_rfc2822_dates() -> None:
    expected = _ms(datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc))
    assert resolve_time_spec("2026-03-01T10:00:00Z", REF, UTC) == expected
    assert resolve_time_spec("2026-03-01T11:00:00+01:00", REF, UTC) == expected
    assert resolve_time_spec("Sun, 01 Mar 2026 10:00:00 +0000", REF, UTC) == expected


def test_naive_iso_is_interpreted_in_zone() -> None:
    berlin = ZoneInfo("Europe/Berlin")
    assert resolve_time_spec("2026-03-01T10:00:00", REF, berlin) == _ms(
        datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
    )


@pytest.mark.parametrize(
    "spec",
    ["tomorrow", "+5x", "+m", "25:00", "12:75", "", "+5m\n", "1700000000\n", "14:30\n", "+\uff15m", "\u0661\u0664:30"],
)
def test_unparseable_specs_raise(spec: str) -> None:
    with pytest.raises(InvalidTimeSpecError, match="Invalid time spec") as excinfo:
        resolve_time_spec(spec, REF, UTC)
    assert excinfo.value.spec == spec


def test_create_once_job() -> None:
    job = create_once_job("+5m", "main", "Stand-up in 5", now_ms=REF, tz=UTC)
    assert job.name == f"once-{REF}"
    assert job.schedule == "once"
    assert job.once is True
    assert job.run_at == REF + 300_000
    assert job.session == "main"
    assert job.is_one_time


def test_create_once_job_propagates_invalid_spec() -> None:
    with pytest.raises(InvalidTimeSpecError):
        create_once_job("someday", "main", "hello", now_ms=REF, tz=UTC)
