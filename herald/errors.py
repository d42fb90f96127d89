from __future__ import annotations


class HeraldError(Exception):
    """Base error for herald."""


class ConfigError(HeraldError):
    """Config validation error."""


class ScheduleSyntaxError(HeraldError):
    """Malformed 5-field cron expression."""


class InvalidTimeSpecError(HeraldError):
    """Time specification that none of the accepted forms could parse."""

    def __init__(self, spec: str):
        super().__init__(f"Invalid time spec: {spec}")
        self.spec = spec


class JobValidationError(HeraldError):
    """Job definition violating the job invariants."""


class StoreError(HeraldError):
    """Job or history storage could not be read or written."""


class DeliveryFailure(HeraldError):
    """Message could not be injected into the target session."""


class DeliveryTimeout(DeliveryFailure):
    """Delivery did not settle within the job-level timeout."""
