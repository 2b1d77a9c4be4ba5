# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Backup Scheduler - Cron-driven backup task creation per cluster.

The reconciliation layer hands over a datacenter snapshot; every
scheduled backup with a cron expression becomes an APScheduler job. On
each fire the job names a backup task after the fire time and asks the
platform to create it.

Task creation is best effort: a failure is logged and the job stays
scheduled, so the next fire tries again. Callers must cancel_backups()
before schedule_backups() when definitions change, otherwise unchanged
definitions end up with two jobs.
"""

import re
import threading
from datetime import datetime, tzinfo, UTC
from typing import Any, Dict, List, Protocol

import structlog
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from ulid import ULID

from dcbackup.errors import explain_empty_cron
from dcbackup.exceptions import InvalidCronExpressionError, SchedulingError, TaskCreationError
from dcbackup.models import ClusterKey, DataCenter, ScheduledBackup, Task

logger = structlog.get_logger()

# Quartz numbers days of the week 1-7 starting on Sunday
QUARTZ_DAYS = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")
_NUMERIC_DOW_RE = re.compile(r"^(\d)(?:-(\d))?$")


class TaskClient(Protocol):
    """Creates task resources on the platform. Duplicate names must be rejected."""

    async def create_task(self, task: Task) -> Dict[str, Any]: ...


# ============================================================================
# Cron parsing
# ============================================================================


def _quartz_day(token: str, expression: str) -> str:
    day = int(token)
    if not 1 <= day <= 7:
        raise InvalidCronExpressionError(
            f"Day of week out of range (1-7): {token}",
            details={"expression": expression},
        )
    return QUARTZ_DAYS[day - 1]


def _translate_day_of_week(field: str, expression: str) -> str:
    parts = []
    for token in field.split(","):
        if token.startswith("*"):
            parts.append(token)
            continue
        if "/" in token:
            raise InvalidCronExpressionError(
                f"Stepped day-of-week ranges are not supported: {token}",
                details={"expression": expression},
            )
        match = _NUMERIC_DOW_RE.match(token)
        if not match:
            # Named days (mon, mon-fri) are understood as they are
            parts.append(token)
            continue
        first, last = match.groups()
        if last is None:
            parts.append(_quartz_day(first, expression))
        elif int(first) > int(last):
            raise InvalidCronExpressionError(
                f"Day of week range is reversed: {token}",
                details={"expression": expression},
            )
        else:
            # Expanded since Quartz ranges may start on Sunday
            parts.extend(
                _quartz_day(str(day), expression) for day in range(int(first), int(last) + 1)
            )
    return ",".join(parts)


def parse_cron_expression(expression: str, timezone: tzinfo = UTC) -> CronTrigger:
    """
    Convert a Quartz-style cron expression into an APScheduler trigger.

    Accepted form: "sec min hour day-of-month month day-of-week [year]".
    "?" means any value, numeric days of the week run 1 (Sunday) to 7
    and "L" in the day-of-month field means the last day.

    Examples:
        "0/10 * * * * ?"    every 10 seconds
        "0 0 2 * * ?"       every day at 02:00
        "0 30 1 ? * 1"      every Sunday at 01:30

    Raises:
        InvalidCronExpressionError: On a wrong field count or unsupported syntax
    """
    fields = expression.split()
    if len(fields) not in (6, 7):
        raise InvalidCronExpressionError(
            f"Expected 6 or 7 cron fields, got {len(fields)}: {expression!r}",
            details={"expression": expression},
        )

    fields = [f.replace("?", "*").lower() for f in fields]
    second, minute, hour, day, month, day_of_week = fields[:6]
    year = fields[6] if len(fields) == 7 else None

    # nearest weekday (W), nth weekday (#) and last weekday (5L) have no equivalent
    if (
        "w" in day
        or ("l" in day and day != "l")
        or "#" in day_of_week
        or day_of_week.endswith("l")
    ):
        raise InvalidCronExpressionError(
            f"Unsupported cron syntax: {expression!r}",
            details={"expression": expression},
        )
    if day == "l":
        day = "last"

    try:
        return CronTrigger(
            second=second,
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=_translate_day_of_week(day_of_week, expression),
            year=year,
            timezone=timezone,
        )
    except ValueError as e:
        raise InvalidCronExpressionError(
            f"Invalid cron expression {expression!r}: {e}",
            details={"expression": expression},
        ) from e


# ============================================================================
# Scheduler
# ============================================================================


class BackupScheduler:
    """
    Keeps one set of cron jobs per cluster key.

    Args:
        task_client: Platform client creating the backup tasks
        scheduler: APScheduler instance to register jobs on (one is
            created when omitted)
        timezone: Timezone cron expressions are evaluated in
    """

    def __init__(
        self,
        task_client: TaskClient,
        scheduler: AsyncIOScheduler | None = None,
        timezone: tzinfo = UTC,
    ) -> None:
        self.task_client = task_client
        self.timezone = timezone
        self.scheduler = scheduler or AsyncIOScheduler(timezone=timezone)
        self._lock = threading.Lock()
        self._jobs: Dict[ClusterKey, List[str]] = {}
        self._datacenters: Dict[ClusterKey, DataCenter] = {}

    def start(self) -> None:
        """Start firing jobs. Must be called with the event loop running."""
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("backup_scheduler_started")

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("backup_scheduler_stopped")

    def schedule_backups(self, dc: DataCenter) -> List[str]:
        """
        Register a job for every scheduled backup of a datacenter.

        Definitions without a usable cron expression are skipped with a
        warning; the others are scheduled regardless.

        Returns:
            IDs of the jobs added
        """
        with self._lock:
            self._datacenters[dc.key] = dc

        job_ids = []
        for definition in dc.scheduled_backups:
            job_id = self.submit_backup_task(dc, definition)
            if job_id is not None:
                job_ids.append(job_id)

        logger.info(
            "backups_scheduled",
            cluster=dc.key.id,
            definitions=len(dc.scheduled_backups),
            jobs=len(job_ids),
        )
        return job_ids

    def submit_backup_task(self, dc: DataCenter, definition: ScheduledBackup) -> str | None:
        """Register one recurring job, or return None when the cron is unusable."""
        if not definition.cron or not definition.cron.strip():
            logger.warning(
                "scheduled_backup_skipped",
                cluster=dc.key.id,
                tag_suffix=definition.tag_suffix,
                reason=explain_empty_cron(dc.datacenter_name, definition.tag_suffix),
            )
            return None

        try:
            trigger = parse_cron_expression(definition.cron, self.timezone)
        except InvalidCronExpressionError as e:
            logger.warning(
                "scheduled_backup_skipped",
                cluster=dc.key.id,
                tag_suffix=definition.tag_suffix,
                cron=definition.cron,
                reason=e.message,
            )
            return None

        job = self.scheduler.add_job(
            self.create_backup_task,
            trigger=trigger,
            args=[dc, definition],
            id=f"backup:{dc.key.id}:{ULID()}",
            name=f"backup {dc.key.id} {definition.cron}",
            coalesce=True,
        )
        with self._lock:
            self._jobs.setdefault(dc.key, []).append(job.id)

        logger.info(
            "backup_job_added",
            cluster=dc.key.id,
            job_id=job.id,
            cron=definition.cron,
            tag_suffix=definition.tag_suffix,
        )
        return job.id

    async def create_backup_task(
        self,
        dc: DataCenter,
        definition: ScheduledBackup,
        fired_at: datetime | None = None,
    ) -> Task | None:
        """
        Create the backup task for one fire. Never raises.

        Returns:
            The created Task, or None if creation failed
        """
        name = definition.compute_task_name(fired_at)
        task = Task.from_datacenter(name, dc)
        task.backup = definition.backup

        try:
            await self.task_client.create_task(task)
        except TaskCreationError as e:
            if e.conflict:
                logger.warning("backup_task_exists", cluster=dc.key.id, task=name)
            else:
                logger.error(
                    "backup_task_creation_failed",
                    cluster=dc.key.id,
                    task=name,
                    error=str(e),
                )
            return None
        except Exception as e:
            logger.error(
                "backup_task_creation_failed",
                cluster=dc.key.id,
                task=name,
                error=str(e),
                exc_info=True,
            )
            return None

        logger.info("backup_task_created", cluster=dc.key.id, task=name)
        return task

    def cancel_backups(self, key: ClusterKey) -> int:
        """
        Remove every job of a cluster. In-flight task creations finish.

        Returns:
            Number of jobs removed
        """
        with self._lock:
            job_ids = self._jobs.pop(key, [])
            self._datacenters.pop(key, None)

        removed = 0
        for job_id in job_ids:
            try:
                self.scheduler.remove_job(job_id)
                removed += 1
            except JobLookupError:
                logger.debug("backup_job_already_gone", cluster=key.id, job_id=job_id)

        logger.info("backups_cancelled", cluster=key.id, jobs=removed)
        return removed

    async def trigger_backup(self, key: ClusterKey, index: int) -> Task | None:
        """
        Run one scheduled definition of a cluster now.

        Raises:
            SchedulingError: If the cluster or the definition is unknown
        """
        with self._lock:
            dc = self._datacenters.get(key)
        if dc is None:
            raise SchedulingError(
                f"No backups scheduled for {key.id}",
                details={"cluster": key.id},
            )
        if not 0 <= index < len(dc.scheduled_backups):
            raise SchedulingError(
                f"No scheduled backup #{index} for {key.id}",
                details={"cluster": key.id, "index": index, "count": len(dc.scheduled_backups)},
            )
        return await self.create_backup_task(dc, dc.scheduled_backups[index])

    def scheduled_keys(self) -> List[ClusterKey]:
        with self._lock:
            return list(self._jobs)

    def job_ids(self, key: ClusterKey) -> List[str]:
        with self._lock:
            return list(self._jobs.get(key, []))

    def next_fire_times(self, key: ClusterKey) -> List[datetime | None]:
        """Next fire time of each job of a cluster (None until the scheduler starts)."""
        times = []
        for job_id in self.job_ids(key):
            job = self.scheduler.get_job(job_id)
            times.append(getattr(job, "next_run_time", None) if job else None)
        return times
