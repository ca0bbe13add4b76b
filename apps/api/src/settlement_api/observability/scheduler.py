"""In-memory metrics for the maintenance job scheduler."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Dict


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class JobState:
    job_id: str
    task: str
    runs: int = 0
    successes: int = 0
    failures: int = 0
    retries: int = 0
    consecutive_failures: int = 0
    total_runtime_seconds: float = 0.0
    last_started_at: datetime | None = None
    last_success_at: datetime | None = None
    last_error_at: datetime | None = None
    last_error: str | None = None
    last_result: Dict[str, object] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, object]:
        return {
            "job_id": self.job_id,
            "task": self.task,
            "totals": {
                "runs": self.runs,
                "success": self.successes,
                "failures": self.failures,
                "retries": self.retries,
                "consecutive_failures": self.consecutive_failures,
            },
            "total_runtime_seconds": self.total_runtime_seconds,
            "last_started_at": _iso(self.last_started_at),
            "last_success_at": _iso(self.last_success_at),
            "last_error_at": _iso(self.last_error_at),
            "last_error": self.last_error,
            "last_result": self.last_result,
        }


class MaintenanceSchedulerStore:
    def __init__(self) -> None:
        self._lock = Lock()
        self._jobs: Dict[str, JobState] = {}

    def _state(self, job_id: str, task: str) -> JobState:
        state = self._jobs.get(job_id)
        if state is None:
            state = self._jobs[job_id] = JobState(job_id=job_id, task=task)
        return state

    def record_dispatch(self, job_id: str, task: str) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.runs += 1
            state.last_started_at = _utcnow()

    def record_retry(self, job_id: str, task: str, *, error: str) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.retries += 1
            state.last_error = error
            state.last_error_at = _utcnow()

    def record_success(self, job_id: str, task: str, *, runtime_seconds: float, result: object) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.successes += 1
            state.consecutive_failures = 0
            state.total_runtime_seconds += runtime_seconds
            state.last_success_at = _utcnow()
            state.last_result = dict(result) if isinstance(result, dict) else {}

    def record_failure(self, job_id: str, task: str, *, runtime_seconds: float, error: str) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.failures += 1
            state.consecutive_failures += 1
            state.total_runtime_seconds += runtime_seconds
            state.last_error = error
            state.last_error_at = _utcnow()

    def snapshot(self) -> Dict[str, object]:
        with self._lock:
            jobs = {job_id: state.as_dict() for job_id, state in self._jobs.items()}
            totals = {
                "runs": sum(state.runs for state in self._jobs.values()),
                "success": sum(state.successes for state in self._jobs.values()),
                "failures": sum(state.failures for state in self._jobs.values()),
                "retries": sum(state.retries for state in self._jobs.values()),
            }
        return {"totals": totals, "jobs": jobs}

    def reset(self) -> None:
        with self._lock:
            self._jobs.clear()


_SCHEDULER_STORE = MaintenanceSchedulerStore()


def get_scheduler_store() -> MaintenanceSchedulerStore:
    return _SCHEDULER_STORE


__all__ = ["MaintenanceSchedulerStore", "get_scheduler_store"]
