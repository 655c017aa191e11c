"""SLA timing for active workflow steps.

The checks are pure: they compare the time a step has been active against its
SLA and report which thresholds were crossed for the first time. The engine
records the flags and fires escalations.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from bpm_orchestrator.definitions.models import SLAConfig
from bpm_orchestrator.workflow.models import ActiveStep


@dataclass(frozen=True, slots=True)
class SLASignals:
    warn: bool = False
    breach: bool = False
    escalate: bool = False
    elapsed_hours: float = 0.0
    percent_used: float = 0.0

    @property
    def any(self) -> bool:
        return self.warn or self.breach or self.escalate


def evaluate_sla(
    step: ActiveStep, sla: SLAConfig, now: datetime, default_warning_percent: float
) -> SLASignals:
    elapsed = now - step.entered_at
    elapsed_hours = elapsed / timedelta(hours=1)
    limit = sla.max_duration_hours
    percent = 100.0 if limit <= 0 else 100.0 * elapsed_hours / limit

    warning_pct = sla.warning_at_percent or default_warning_percent
    escalate_after = (
        sla.escalate_after_hours if sla.escalate_after_hours is not None else limit
    )

    return SLASignals(
        warn=not step.sla_warned and percent >= warning_pct,
        breach=not step.sla_breached and elapsed_hours >= limit,
        escalate=not step.escalated and elapsed_hours >= escalate_after,
        elapsed_hours=elapsed_hours,
        percent_used=percent,
    )
