"""Periodic scheduling of time-triggered workflows."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Optional
from zoneinfo import ZoneInfo

from croniter import croniter
from pydantic import BaseModel, Field

from .contracts import (
    ExecutionContext,
    ExecutionStatus,
    TriggerSpec,
    TriggerType,
    WorkflowDefinition,
)
from .execute import WorkflowRunner
from .persistence import Repository
from .persistence.models import WorkflowExecution
from .utils.time import Clock, ensure_utc, to_iso, utcnow

logger = logging.getLogger(__name__)


class ScheduleSummary(BaseModel):
    """Counts reported by one scheduling pass."""

    checked: int = 0
    created: int = 0
    skipped: int = 0
    completed: int = 0
    waiting: int = 0
    failed: int = 0
    errors: int = 0
    execution_ids: List[str] = Field(default_factory=list)


def latest_occurrence(
    trigger: TriggerSpec, anchor: datetime, now: datetime
) -> Optional[datetime]:
    """Return the most recent scheduled occurrence at or before ``now``.

    ``anchor`` (the definition's creation time) pins interval schedules so
    every process derives the same occurrence for a given period. Returns
    ``None`` when nothing is due yet.
    """
    now = ensure_utc(now)
    if trigger.run_at is not None:
        run_at = ensure_utc(trigger.run_at)
        return run_at if run_at <= now else None

    if trigger.interval_seconds is not None:
        anchor = ensure_utc(anchor)
        if anchor > now:
            return None
        periods = int((now - anchor).total_seconds() // trigger.interval_seconds)
        return anchor + timedelta(seconds=periods * trigger.interval_seconds)

    if trigger.cron is not None:
        local_now = now.astimezone(ZoneInfo(trigger.timezone))
        # croniter.get_prev is strict, so start just past the current second
        start = local_now.replace(microsecond=0) + timedelta(seconds=1)
        previous = croniter(trigger.cron, start).get_prev(datetime)
        return ensure_utc(previous)

    return None


class WorkflowScheduler:
    """Create and run executions for due schedule-triggered workflows.

    Safe to call from overlapping cron ticks: one execution per
    ``(workflow, occurrence)`` is enforced by the store, and periods missed
    while no tick ran are coalesced into the latest occurrence.
    """

    def __init__(
        self,
        repository: Repository,
        runner: WorkflowRunner,
        clock: Clock = utcnow,
    ) -> None:
        self._repository = repository
        self._runner = runner
        self._clock = clock

    async def schedule_workflows(self) -> ScheduleSummary:
        summary = ScheduleSummary()
        definitions = await self._repository.list_definitions(
            trigger_type=TriggerType.SCHEDULE, enabled_only=True
        )
        for definition in definitions:
            summary.checked += 1
            try:
                execution = await self._schedule_one(definition)
            except Exception:
                # one broken definition must not starve the others
                logger.exception(f"Scheduling workflow {definition.id} failed")
                summary.errors += 1
                continue
            if execution is None:
                summary.skipped += 1
                continue
            summary.created += 1
            summary.execution_ids.append(execution.id)
            if execution.status == ExecutionStatus.COMPLETED:
                summary.completed += 1
            elif execution.status == ExecutionStatus.WAITING:
                summary.waiting += 1
            elif execution.status == ExecutionStatus.FAILED:
                summary.failed += 1
        logger.info(
            f"Scheduler checked {summary.checked} workflows, created {summary.created}"
        )
        return summary

    async def _schedule_one(
        self, definition: WorkflowDefinition
    ) -> WorkflowExecution | None:
        now = self._clock()
        occurrence = latest_occurrence(definition.trigger, definition.created_at, now)
        if occurrence is None:
            return None

        last = await self._repository.latest_scheduled_execution(definition.id)
        if last is not None and occurrence <= ensure_utc(last.scheduled_for):
            return None

        execution = WorkflowExecution(
            workflow_id=definition.id,
            tenant_id=definition.tenant_id,
            trigger_source="schedule",
            scheduled_for=occurrence,
            context=ExecutionContext(
                payload={"workflow_id": definition.id, "scheduled_for": to_iso(occurrence)}
            ),
            started_at=now,
            updated_at=now,
        )
        if not await self._repository.create_execution(execution):
            logger.debug(
                f"Occurrence {to_iso(occurrence)} of workflow {definition.id} already claimed"
            )
            return None

        logger.info(
            f"Created execution {execution.id} for workflow {definition.id} "
            f"occurrence {to_iso(occurrence)}"
        )
        return await self._runner.run(execution, definition)
