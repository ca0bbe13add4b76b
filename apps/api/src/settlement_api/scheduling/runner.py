"""Cron-driven runtime for maintenance jobs."""

from __future__ import annotations

import asyncio
import inspect
import random
import time
from importlib import import_module
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger
from zoneinfo import ZoneInfo

from settlement_api.observability.scheduler import get_scheduler_store
from .config import JobDefinition, ScheduleConfig, load_job_definitions

JobCallable = Callable[..., Awaitable[Any]]


class MaintenanceJobScheduler:
    """Register the jobs listed in the schedule file on an ``AsyncIOScheduler``.

    Every job is an async function; ``context`` values (session factory,
    settlement engine) are passed to the parameters the job declares.
    """

    def __init__(self, *, config_path: Path, context: Mapping[str, Any]) -> None:
        self._config_path = config_path
        self._context = dict(context)
        self._config: ScheduleConfig | None = None
        self._scheduler: AsyncIOScheduler | None = None
        self._is_running = False
        self._observability = get_scheduler_store()

    @property
    def is_running(self) -> bool:
        return self._is_running

    def start(self) -> None:
        config = load_job_definitions(self._config_path)
        timezone = ZoneInfo(config.timezone)
        scheduler = AsyncIOScheduler(timezone=timezone)

        for job in config.jobs:
            if not job.enabled:
                logger.info("Skipping disabled maintenance job", job_id=job.id, task=job.task)
                continue
            func = resolve_task(job.task)
            trigger = CronTrigger.from_crontab(job.cron, timezone=timezone)
            scheduler.add_job(self.wrap(func, job), trigger=trigger, id=job.id, replace_existing=True)
            logger.info("Registered maintenance job", job_id=job.id, task=job.task, cron=job.cron)

        scheduler.start()
        self._config = config
        self._scheduler = scheduler
        self._is_running = True
        logger.info("Maintenance job scheduler started", jobs=len(config.jobs))

    async def stop(self) -> None:
        if not self._scheduler:
            return
        result = self._scheduler.shutdown(wait=False)
        if inspect.isawaitable(result):
            await result
        self._scheduler = None
        self._is_running = False
        logger.info("Maintenance job scheduler stopped")

    def wrap(self, func: JobCallable, job: JobDefinition) -> Callable[[], Awaitable[Any]]:
        """Bind context and retry policy; the returned coroutine never raises."""

        kwargs = {**self._bind_context(func), **job.kwargs}

        async def _runner() -> Any:
            policy = job.retry
            self._observability.record_dispatch(job.id, job.task)
            started_at = time.perf_counter()

            for attempt in range(1, policy.max_attempts + 1):
                try:
                    result = await func(**kwargs)
                except Exception as exc:
                    if attempt >= policy.max_attempts:
                        self._observability.record_failure(
                            job.id,
                            job.task,
                            runtime_seconds=time.perf_counter() - started_at,
                            error=str(exc),
                        )
                        logger.exception(
                            "Maintenance job failed after retries",
                            job_id=job.id,
                            task=job.task,
                            attempts=attempt,
                            error=str(exc),
                        )
                        return None

                    delay = policy.delay_for(attempt)
                    if policy.jitter_seconds:
                        delay += random.uniform(0, policy.jitter_seconds)
                    self._observability.record_retry(job.id, job.task, error=str(exc))
                    logger.warning(
                        "Maintenance job retrying",
                        job_id=job.id,
                        task=job.task,
                        attempt=attempt + 1,
                        delay_seconds=delay,
                        error=str(exc),
                    )
                    if delay:
                        await asyncio.sleep(delay)
                    continue

                runtime_seconds = time.perf_counter() - started_at
                self._observability.record_success(
                    job.id,
                    job.task,
                    runtime_seconds=runtime_seconds,
                    result=result,
                )
                logger.info(
                    "Maintenance job completed",
                    job_id=job.id,
                    task=job.task,
                    attempts=attempt,
                    runtime_seconds=runtime_seconds,
                )
                return result
            return None

        return _runner

    def health(self) -> dict[str, object]:
        snapshot = self._observability.snapshot()
        jobs = self._config.jobs if self._config else []
        return {
            "running": self._is_running,
            "configured_jobs": len(jobs),
            "jobs": [
                {
                    "id": job.id,
                    "task": job.task,
                    "cron": job.cron,
                    "enabled": job.enabled,
                    "max_attempts": job.retry.max_attempts,
                    "metrics": snapshot["jobs"].get(job.id),
                }
                for job in jobs
            ],
            "totals": snapshot["totals"],
        }

    def _bind_context(self, func: JobCallable) -> dict[str, Any]:
        parameters = inspect.signature(func).parameters
        return {name: value for name, value in self._context.items() if name in parameters}


def resolve_task(path: str) -> JobCallable:
    module_name, _, attr = path.rpartition(".")
    if not module_name:
        raise ValueError(f"Invalid task path: {path}")
    func = getattr(import_module(module_name), attr, None)
    if func is None:
        raise AttributeError(f"Task {path} not found")
    if not inspect.iscoroutinefunction(func):
        raise TypeError(f"Task {path} must be an async function")
    return func


__all__ = ["MaintenanceJobScheduler", "resolve_task"]
