"""Scheduling for recurring housekeeping jobs."""

from .config import JobDefinition, ScheduleConfig, load_job_definitions
from .runner import HousekeepingScheduler

__all__ = ["HousekeepingScheduler", "JobDefinition", "ScheduleConfig", "load_job_definitions"]
