"""
herald

Cron-style scheduler that injects messages into sessions, optionally
enriched with the output of shell scripts run just before delivery.
"""

from __future__ import annotations

from herald.errors import (
    ConfigError,
    DeliveryFailure,
    DeliveryTimeout,
    HeraldError,
    InvalidTimeSpecError,
    JobValidationError,
    ScheduleSyntaxError,
    StoreError,
)
from herald.models import Job, RunRecord, Script, ScriptResult
from herald.schedule import matches, parse_schedule
from herald.scripts import run_script, run_scripts
from herald.template import resolve_template
from herald.ticker import TickScheduler, TickSummary
from herald.timespec import create_once_job, resolve_time_spec

__version__ = "0.1.0"

__all__ = [
    "ConfigError",
    "DeliveryFailure",
    "DeliveryTimeout",
    "HeraldError",
    "InvalidTimeSpecError",
    "Job",
    "JobValidationError",
    "RunRecord",
    "ScheduleSyntaxError",
    "Script",
    "ScriptResult",
    "StoreError",
    "TickScheduler",
    "TickSummary",
    "create_once_job",
    "matches",
    "parse_schedule",
    "resolve_template",
    "resolve_time_spec",
    "run_script",
    "run_scripts",
]
