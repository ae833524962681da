"""Periodic reconciliation: synchronization requests, missed schedules, job cleanup."""

from __future__ import annotations

import logging
from datetime import datetime
from datetime import timedelta
from typing import Any
from typing import Awaitable
from typing import Callable

from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select

from dependabot_server.config import Settings
from dependabot_server.db import db_session
from dependabot_server.enums import ScheduleInterval
from dependabot_server.enums import UpdateJobStatus
from dependabot_server.enums import UpdateJobTrigger
from dependabot_server.events import EventBus
from dependabot_server.events import EventType
from dependabot_server.events import new_event_id
from dependabot_server.models import Project
from dependabot_server.models import Repository
from dependabot_server.models import UpdateJob
from dependabot_server.schemas import RepositoryUpdate
from dependabot_server.schedules import next_occurrence
from dependabot_server.services.scheduler import UpdateScheduler
from dependabot_server.utils.time import as_utc
from dependabot_server.utils.time import utc_now

logger = logging.getLogger(__name__)

MISSED_SCHEDULE_CHECK_INTERVAL = timedelta(hours=1)


def is_schedule_missed(update: RepositoryUpdate, reference: datetime, daily_grace: timedelta) -> bool | None:
    """Whether an update's last run is older than its most recent scheduled tick.

    Returns None when the schedule has no future occurrence to compare with.
    """
    if update.latest_update is None:
        return True

    trigger = update.schedule.trigger()
    next_from_last = next_occurrence(trigger, update.latest_update)
    next_from_reference = next_occurrence(trigger, reference)
    if next_from_last is None or next_from_reference is None:
        return None

    missed = next_from_last <= reference
    # A daily run that is due soon anyway is left to its timer
    if missed and update.schedule.interval == ScheduleInterval.DAILY:
        missed = next_from_reference - reference > daily_grace
    return missed


class BackgroundReconciler:
    def __init__(self, settings: Settings, bus: EventBus, session_factory: Any = None):
        self.settings = settings
        self.bus = bus
        self.session_factory = session_factory

    def register(self, scheduler: UpdateScheduler) -> None:
        scheduler.add_periodic(
            self._guard("synchronization", self.synchronize),
            IntervalTrigger(hours=self.settings.sync_interval_hours),
            "reconciler_synchronization",
        )
        scheduler.add_periodic(
            self._guard("missed schedule check", self.check_missed_schedules),
            IntervalTrigger(seconds=MISSED_SCHEDULE_CHECK_INTERVAL.total_seconds()),
            "reconciler_missed_schedules",
        )
        scheduler.add_periodic(
            self._guard("update job cleanup", self.cleanup),
            IntervalTrigger(minutes=self.settings.cleanup_interval_minutes),
            "reconciler_cleanup",
        )
        logger.info("Registered reconciliation tasks")

    @staticmethod
    def _guard(name: str, func: Callable[[], Awaitable[Any]]) -> Callable[[], Awaitable[None]]:
        async def run() -> None:
            try:
                await func()
            except Exception:
                logger.exception("Periodic %s failed; retrying on the next tick", name)

        return run

    async def synchronize(self) -> int:
        with db_session(self.session_factory) as db:
            project_ids = list(db.scalars(select(Project.id)).all())

        # Periodic syncs never trigger jobs; timers and the missed check cover that
        for project_id in project_ids:
            await self.bus.publish(EventType.PROCESS_SYNCHRONIZATION, {"project_id": project_id, "trigger": False})
        return len(project_ids)

    async def check_missed_schedules(self, reference: datetime | None = None) -> int:
        reference = as_utc(reference) or utc_now()
        daily_grace = timedelta(hours=self.settings.missed_schedule_grace_hours)

        with db_session(self.session_factory) as db:
            repositories = [(r.project_id, r.id, r.updates) for r in db.scalars(select(Repository)).all()]

        published = 0
        for project_id, repository_id, updates in repositories:
            for index, update in enumerate(updates):
                if not is_schedule_missed(update, reference, daily_grace):
                    continue

                logger.warning("Schedule was missed for %s(%s). Triggering now", repository_id, index)
                await self.bus.publish(
                    EventType.TRIGGER_UPDATE_JOBS,
                    {
                        "project_id": project_id,
                        "repository_id": repository_id,
                        "repository_update_id": index,
                        "trigger": UpdateJobTrigger.MISSED_SCHEDULE.value,
                        "event_bus_id": new_event_id(),
                    },
                )
                published += 1
        return published

    async def cleanup(self, reference: datetime | None = None) -> tuple[int, int]:
        """Request state checks for stuck jobs and delete expired ones.

        Returns (checked, deleted).
        """
        reference = as_utc(reference) or utc_now()
        stuck_before = reference - timedelta(minutes=self.settings.stuck_job_grace_minutes)
        expired_before = reference - timedelta(days=self.settings.job_retention_days)
        limit = self.settings.cleanup_batch_size

        with db_session(self.session_factory) as db:
            stuck = list(
                db.scalars(
                    select(UpdateJob.id)
                    .where(UpdateJob.created <= stuck_before)
                    .where(UpdateJob.status.in_([UpdateJobStatus.SCHEDULED, UpdateJobStatus.RUNNING]))
                    .order_by(UpdateJob.created.asc())
                    .limit(limit)
                ).all()
            )

            expired = db.scalars(
                select(UpdateJob).where(UpdateJob.created <= expired_before).order_by(UpdateJob.created.asc()).limit(limit)
            ).all()
            for job in expired:
                db.delete(job)
            deleted = len(expired)

        if stuck:
            logger.info("Requesting state checks for %s unresolved job(s)", len(stuck))
        for job_id in stuck:
            await self.bus.publish(EventType.UPDATE_JOB_CHECK_STATE, {"job_id": job_id})
        if deleted:
            logger.info("Removed %s job(s) created before %s", deleted, expired_before)
        return len(stuck), deleted
