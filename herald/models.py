"""
Job, script and run-history records.

Records serialize to camelCase payloads (``runAt``, ``exitCode``, ...), which is
the shape stored on disk and sent over the wire.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from herald.errors import JobValidationError

ONCE_SCHEDULE = "once"
RUN_STATUSES = {"success", "failure"}


@dataclass(frozen=True)
class Script:
    name: str
    command: str
    timeout: Optional[int] = None  # milliseconds
    cwd: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"name": self.name, "command": self.command}
        if self.timeout is not None:
            payload["timeout"] = self.timeout
        if self.cwd:
            payload["cwd"] = self.cwd
        return payload

    @staticmethod
    def from_dict(raw: Any, field_path: str = "script") -> "Script":
        if not isinstance(raw, dict):
            raise JobValidationError(f"Error: {field_path} must be a mapping.")
        unknown = set(raw.keys()) - {"name", "command", "timeout", "cwd"}
        if unknown:
            raise JobValidationError(f"Error: Unknown keys in {field_path}: {sorted(unknown)}.")
        name = _require_str(raw.get("name"), f"{field_path}.name")
        command = _require_str(raw.get("command"), f"{field_path}.command")
        timeout = raw.get("timeout")
        if timeout is not None:
            if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
                raise JobValidationError(f"Error: {field_path}.timeout must be a positive number of ms.")
            timeout = int(timeout)
        cwd = raw.get("cwd")
        if cwd is not None and not isinstance(cwd, str):
            raise JobValidationError(f"Error: {field_path}.cwd must be a string.")
        return Script(name=name, command=command, timeout=timeout, cwd=cwd or None)


@dataclass(frozen=True)
class Job:
    name: str
    schedule: str
    session: str
    message: str
    scripts: Optional[List[Script]] = None
    once: bool = False
    run_at: Optional[int] = None  # epoch milliseconds

    @property
    def is_one_time(self) -> bool:
        return self.once and self.run_at is not None

    def validate(self) -> "Job":
        _require_str(self.name, "job.name")
        _require_str(self.schedule, "job.schedule")
        _require_str(self.session, "job.session")
        if not isinstance(self.message, str) or not self.message:
            raise JobValidationError("Error: job.message must be a non-empty string.")
        if self.once and self.run_at is None:
            raise JobValidationError(f'Error: one-time job "{self.name}" must carry runAt.')
        if self.scripts:
            for idx, script in enumerate(self.scripts):
                if not isinstance(script, Script):
                    raise JobValidationError(f"Error: job.scripts[{idx}] must be a Script.")
        return self

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "name": self.name,
            "schedule": self.schedule,
            "session": self.session,
            "message": self.message,
        }
        if self.scripts:
            payload["scripts"] = [script.to_dict() for script in self.scripts]
        if self.once:
            payload["once"] = True
        if self.run_at is not None:
            payload["runAt"] = self.run_at
        return payload

    @staticmethod
    def from_dict(raw: Any, field_path: str = "job") -> "Job":
        if not isinstance(raw, dict):
            raise JobValidationError(f"Error: {field_path} must be a mapping.")
        scripts_raw = raw.get("scripts")
        scripts: Optional[List[Script]] = None
        if scripts_raw is not None:
            if not isinstance(scripts_raw, list):
                raise JobValidationError(f"Error: {field_path}.scripts must be a list.")
            scripts = [
                Script.from_dict(item, f"{field_path}.scripts[{idx}]")
                for idx, item in enumerate(scripts_raw)
            ]
        run_at = raw.get("runAt")
        if run_at is not None and (isinstance(run_at, bool) or not isinstance(run_at, (int, float))):
            raise JobValidationError(f"Error: {field_path}.runAt must be epoch milliseconds.")
        job = Job(
            name=raw.get("name"),
            schedule=raw.get("schedule"),
            session=raw.get("session"),
            message=raw.get("message"),
            scripts=scripts or None,
            once=bool(raw.get("once", False)),
            run_at=int(run_at) if run_at is not None else None,
        )
        return job.validate()


@dataclass(frozen=True)
class ScriptResult:
    name: str
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "name": self.name,
            "exitCode": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "durationMs": self.duration_ms,
        }
        if self.error is not None:
            payload["error"] = self.error
        return payload

    @staticmethod
    def from_dict(raw: Dict[str, Any]) -> "ScriptResult":
        return ScriptResult(
            name=raw["name"],
            exit_code=int(raw["exitCode"]),
            stdout=raw.get("stdout", ""),
            stderr=raw.get("stderr", ""),
            duration_ms=int(raw.get("durationMs", 0)),
            error=raw.get("error"),
        )


@dataclass(frozen=True)
class RunRecord:
    cron_name: str
    session: str
    started_at: int
    status: str
    duration_ms: int
    message: str
    error: Optional[str] = None
    script_results: Optional[List[ScriptResult]] = None
    id: Optional[str] = field(default=None)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "cronName": self.cron_name,
            "session": self.session,
            "startedAt": self.started_at,
            "status": self.status,
            "durationMs": self.duration_ms,
            "message": self.message,
        }
        if self.error is not None:
            payload["error"] = self.error
        if self.script_results is not None:
            payload["scriptResults"] = [result.to_dict() for result in self.script_results]
        return payload

    @staticmethod
    def from_dict(raw: Dict[str, Any]) -> "RunRecord":
        status = raw["status"]
        if status not in RUN_STATUSES:
            raise ValueError(f'Invalid run status "{status}".')
        results_raw = raw.get("scriptResults")
        return RunRecord(
            id=raw.get("id"),
            cron_name=raw["cronName"],
            session=raw["session"],
            started_at=int(raw["startedAt"]),
            status=status,
            duration_ms=int(raw.get("durationMs", 0)),
            message=raw.get("message", ""),
            error=raw.get("error"),
            script_results=(
                [ScriptResult.from_dict(item) for item in results_raw]
                if results_raw is not None
                else None
            ),
        )


def _require_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise JobValidationError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()
