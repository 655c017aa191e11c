"""Next-run computation for scheduled jobs.

Cron expressions are evaluated in the job's timezone with croniter; all
instants handed back are UTC.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from bpm_orchestrator.errors import ValidationError
from bpm_orchestrator.scheduler.models import JobType, ScheduledJob

_INTERVAL_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smhd]?)\s*$", re.IGNORECASE)
_UNIT_SECONDS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_interval(expression: str) -> timedelta:
    """``"90"`` (seconds), ``"15m"``, ``"2h"``, ``"1d"``."""

    match = _INTERVAL_RE.match(expression or "")
    if match is None:
        raise ValidationError(f"invalid interval {expression!r}")
    amount = float(match.group(1)) * _UNIT_SECONDS[match.group(2).lower()]
    if amount <= 0:
        raise ValidationError(f"interval {expression!r} must be positive")
    return timedelta(seconds=amount)


def job_zone(job: ScheduledJob) -> ZoneInfo:
    try:
        return ZoneInfo(job.timezone)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValidationError(f"unknown timezone {job.timezone!r}") from e


def parse_instant(expression: str, zone: ZoneInfo) -> datetime:
    try:
        value = datetime.fromisoformat(expression.strip().replace("Z", "+00:00"))
    except ValueError as e:
        raise ValidationError(f"invalid date-time {expression!r}") from e
    if value.tzinfo is None:
        value = value.replace(tzinfo=zone)
    return value.astimezone(UTC)


def validate_job(job: ScheduledJob) -> None:
    """Raise :class:`ValidationError` if the job's schedule cannot be evaluated."""

    if not job.name.strip():
        raise ValidationError("job name is required")
    zone = job_zone(job)
    if job.job_type is JobType.CRON:
        if not croniter.is_valid(job.schedule_expression):
            raise ValidationError(f"invalid cron expression {job.schedule_expression!r}")
    elif job.job_type is JobType.ONE_TIME:
        parse_instant(job.schedule_expression, zone)
    else:
        parse_interval(job.schedule_expression)


def next_cron_run(expression: str, zone: ZoneInfo, after: datetime) -> datetime:
    local = after.astimezone(zone)
    nxt = croniter(expression, local).get_next(datetime)
    return nxt.astimezone(UTC)


def first_run(job: ScheduledJob, now: datetime) -> datetime | None:
    zone = job_zone(job)
    if job.job_type is JobType.CRON:
        return next_cron_run(job.schedule_expression, zone, now)
    if job.job_type is JobType.ONE_TIME:
        return parse_instant(job.schedule_expression, zone)
    candidate = now + parse_interval(job.schedule_expression)
    if job.end_at is not None and candidate > job.end_at:
        return None
    return candidate


def next_run_after_firing(job: ScheduledJob, fired_at: datetime) -> datetime | None:
    """Where ``next_run_at`` goes once ``job`` fired at ``fired_at``.

    ``job.run_count`` must already include the firing. ``None`` means the job
    has no further runs.
    """

    if job.job_type is JobType.ONE_TIME:
        return None
    if job.job_type is JobType.CRON:
        candidate = next_cron_run(job.schedule_expression, job_zone(job), fired_at)
    else:
        candidate = fired_at + parse_interval(job.schedule_expression)
    if job.max_runs is not None and job.run_count >= job.max_runs:
        return None
    if job.end_at is not None and candidate > job.end_at:
        return None
    return candidate
