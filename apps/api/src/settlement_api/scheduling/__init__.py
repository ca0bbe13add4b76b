"""Scheduling utilities for recurring maintenance."""

from .config import JobDefinition, RetryPolicy, load_job_definitions
from .runner import MaintenanceJobScheduler, resolve_task

__all__ = ["JobDefinition", "MaintenanceJobScheduler", "RetryPolicy", "load_job_definitions", "resolve_task"]
