"""
Storage contracts for job definitions and run history, with in-memory and
file-backed implementations.

Jobs are keyed by name. Run history is append-only; ids are assigned on append.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, List, Optional

import yaml

from herald.errors import JobValidationError, StoreError
from herald.models import RUN_STATUSES, Job, RunRecord

DEFAULT_HISTORY_LIMIT = 50
JOBS_FILE_VERSION = 1

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HistoryFilter:
    cron_name: Optional[str] = None
    session: Optional[str] = None
    status: Optional[str] = None
    since: Optional[int] = None

    def __post_init__(self) -> None:
        if self.status is not None and self.status not in RUN_STATUSES:
            raise ValueError(f'Invalid run status "{self.status}".')

    def matches(self, record: RunRecord) -> bool:
        if self.cron_name is not None and record.cron_name != self.cron_name:
            return False
        if self.session is not None and record.session != self.session:
            return False
        if self.status is not None and record.status != self.status:
            return False
        if self.since is not None and record.started_at < self.since:
            return False
        return True


@dataclass(frozen=True)
class HistoryPage:
    entries: List[RunRecord]
    total: int
    has_more: bool


class JobStore(ABC):
    @abstractmethod
    def list(self) -> List[Job]:
        ...

    @abstractmethod
    def get_by_name(self, name: str) -> Optional[Job]:
        ...

    @abstractmethod
    def upsert(self, job: Job) -> None:
        """Insert ``job`` or fully replace the stored job with the same name."""

    @abstractmethod
    def delete_by_name(self, name: str) -> bool:
        ...


class RunHistory(ABC):
    @abstractmethod
    def append(self, record: RunRecord) -> RunRecord:
        ...

    @abstractmethod
    def query(
        self,
        history_filter: Optional[HistoryFilter] = None,
        offset: int = 0,
        limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> HistoryPage:
        ...

    @abstractmethod
    def delete_many(self, history_filter: Optional[HistoryFilter] = None) -> int:
        ...


def new_run_id() -> str:
    return str(uuid.uuid4())


def page_records(
    records: List[RunRecord],
    history_filter: Optional[HistoryFilter],
    offset: int,
    limit: int,
) -> HistoryPage:
    if offset < 0 or limit < 0:
        raise ValueError("offset and limit must be >= 0")
    selected = [record for record in records if history_filter is None or history_filter.matches(record)]
    selected.sort(key=lambda record: record.started_at, reverse=True)
    entries = selected[offset : offset + limit]
    return HistoryPage(entries=entries, total=len(selected), has_more=offset + len(entries) < len(selected))


class MemoryJobStore(JobStore):
    def __init__(self, jobs: Optional[List[Job]] = None):
        self._jobs: Dict[str, Job] = {}
        for job in jobs or []:
            self.upsert(job)

    def list(self) -> List[Job]:
        return list(self._jobs.values())

    def get_by_name(self, name: str) -> Optional[Job]:
        return self._jobs.get(name)

    def upsert(self, job: Job) -> None:
        self._jobs[job.name] = job.validate()

    def delete_by_name(self, name: str) -> bool:
        return self._jobs.pop(name, None) is not None


class MemoryRunHistory(RunHistory):
    def __init__(self) -> None:
        self._records: List[RunRecord] = []

    @property
    def records(self) -> List[RunRecord]:
        return list(self._records)

    def append(self, record: RunRecord) -> RunRecord:
        stored = replace(record, id=new_run_id())
        self._records.append(stored)
        return stored

    def query(
        self,
        history_filter: Optional[HistoryFilter] = None,
        offset: int = 0,
        limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> HistoryPage:
        return page_records(self._records, history_filter, offset, limit)

    def delete_many(self, history_filter: Optional[HistoryFilter] = None) -> int:
        kept = [r for r in self._records if history_filter is not None and not history_filter.matches(r)]
        removed = len(self._records) - len(kept)
        self._records = kept
        return removed


class YamlJobStore(JobStore):
    """Jobs kept in a single YAML document, rewritten atomically on every change."""

    def __init__(self, path: Path):
        self.path = path
        self._lock = threading.Lock()

    def _read(self) -> List[Job]:
        if not self.path.exists():
            return []
        try:
            payload = yaml.safe_load(self.path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise StoreError(f"Error: Failed to parse jobs file {self.path}: {exc}") from exc
        if not isinstance(payload, dict) or not isinstance(payload.get("jobs", []), list):
            raise StoreError(f"Error: Jobs file {self.path} must be a mapping with a jobs list.")
        jobs: List[Job] = []
        for idx, raw in enumerate(payload.get("jobs") or []):
            try:
                jobs.append(Job.from_dict(raw, f"jobs[{idx}]"))
            except JobValidationError as exc:
                raise StoreError(f"Error: Invalid job in {self.path}: {exc}") from exc
        return jobs

    def _write(self, jobs: List[Job]) -> None:
        payload = {"version": JOBS_FILE_VERSION, "jobs": [job.to_dict() for job in jobs]}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_name(self.path.name + ".tmp")
            tmp_path.write_text(yaml.safe_dump(payload, sort_keys=False, allow_unicode=True), encoding="utf-8")
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise StoreError(f"Error: Failed to write jobs file {self.path}: {exc}") from exc

    def list(self) -> List[Job]:
        with self._lock:
            return self._read()

    def get_by_name(self, name: str) -> Optional[Job]:
        with self._lock:
            return next((job for job in self._read() if job.name == name), None)

    def upsert(self, job: Job) -> None:
        job.validate()
        with self._lock:
            jobs = self._read()
            for idx, existing in enumerate(jobs):
                if existing.name == job.name:
                    jobs[idx] = job
                    break
            else:
                jobs.append(job)
            self._write(jobs)

    def delete_by_name(self, name: str) -> bool:
        with self._lock:
            jobs = self._read()
            kept = [job for job in jobs if job.name != name]
            if len(kept) == len(jobs):
                return False
            self._write(kept)
            return True


class JsonlRunHistory(RunHistory):
    """Run history as one JSON object per line."""

    def __init__(self, path: Path):
        self.path = path
        self._lock = threading.Lock()

    def _read_all(self) -> List[RunRecord]:
        if not self.path.exists():
            return []
        records: List[RunRecord] = []
        try:
            lines = self.path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:
            raise StoreError(f"Error: Failed to read history file {self.path}: {exc}") from exc
        for lineno, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                records.append(RunRecord.from_dict(json.loads(line)))
            except (ValueError, KeyError, TypeError) as exc:
                logger.warning("Skipping malformed history line %s in %s: %s", lineno, self.path, exc)
        return records

    def append(self, record: RunRecord) -> RunRecord:
        stored = replace(record, id=new_run_id())
        line = json.dumps(stored.to_dict(), separators=(",", ":"), ensure_ascii=False)
        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
            except OSError as exc:
                raise StoreError(f"Error: Failed to append to history file {self.path}: {exc}") from exc
        return stored

    def query(
        self,
        history_filter: Optional[HistoryFilter] = None,
        offset: int = 0,
        limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> HistoryPage:
        with self._lock:
            records = self._read_all()
        return page_records(records, history_filter, offset, limit)

    def delete_many(self, history_filter: Optional[HistoryFilter] = None) -> int:
        with self._lock:
            records = self._read_all()
            kept = [r for r in records if history_filter is not None and not history_filter.matches(r)]
            removed = len(records) - len(kept)
            if removed:
                body = "".join(
                    json.dumps(r.to_dict(), separators=(",", ":"), ensure_ascii=False) + "\n" for r in kept
                )
                try:
                    self.path.write_text(body, encoding="utf-8")
                except OSError as exc:
                    raise StoreError(f"Error: Failed to rewrite history file {self.path}: {exc}") from exc
            return removed
