from bpm_orchestrator.scheduler.models import (
    JobExecution,
    JobRunStatus,
    JobTrigger,
    JobType,
    ScheduledJob,
)
from bpm_orchestrator.scheduler.schedule import parse_interval
from bpm_orchestrator.scheduler.service import Scheduler

__all__ = [
    "JobExecution",
    "JobRunStatus",
    "JobTrigger",
    "JobType",
    "Scheduler",
    "ScheduledJob",
    "parse_interval",
]
