"""Cron timers for repository updates, plus the shared APScheduler instance.

Timers are tracked per repository in an explicit registry. Replacing a
repository's timers happens under that repository's own lock, so concurrent
updates for different repositories never wait on each other.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any
from typing import Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from dependabot_server.enums import UpdateJobTrigger
from dependabot_server.events import EventBus
from dependabot_server.events import EventType
from dependabot_server.events import new_event_id
from dependabot_server.models import Repository
from dependabot_server.utils.time import as_utc
from dependabot_server.utils.time import utc_now

logger = logging.getLogger(__name__)

ONE_OFF_MISFIRE_GRACE_SECONDS = 300


def timer_id(repository_id: str, index: int) -> str:
    return f"repository_{repository_id}_{index}"


class UpdateScheduler:
    def __init__(self, bus: EventBus, scheduler: AsyncIOScheduler | None = None, stop_timeout: float = 1.0):
        self.bus = bus
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self.stop_timeout = stop_timeout
        self._registry: dict[str, list[str]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._inflight: set[asyncio.Task] = set()

    def _lock(self, repository_id: str) -> asyncio.Lock:
        return self._locks.setdefault(repository_id, asyncio.Lock())

    def timers(self, repository_id: str) -> list[str]:
        return list(self._registry.get(repository_id, []))

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Update scheduler started")

    async def stop(self) -> None:
        """Shut down without waiting for running jobs, bounded by ``stop_timeout``."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        pending = [task for task in self._inflight if not task.done()]
        if pending:
            _, still_pending = await asyncio.wait(pending, timeout=self.stop_timeout)
            for task in still_pending:
                task.cancel()
        self._registry.clear()
        logger.info("Update scheduler stopped")

    async def create_or_update(self, repository: Repository) -> list[str]:
        repository_id = repository.id
        project_id = repository.project_id
        updates = repository.updates

        async with self._lock(repository_id):
            self._remove_timers(repository_id)

            ids: list[str] = []
            for index, update in enumerate(updates):
                job_id = timer_id(repository_id, index)
                self.scheduler.add_job(
                    self._fire,
                    update.schedule.trigger(),
                    args=[project_id, repository_id, index],
                    id=job_id,
                    replace_existing=True,
                )
                ids.append(job_id)

            self._registry[repository_id] = ids

        logger.info("Scheduled %s update timer(s) for repository %s", len(ids), repository_id)
        return ids

    async def remove(self, repository_id: str) -> None:
        async with self._lock(repository_id):
            self._remove_timers(repository_id)
        self._locks.pop(repository_id, None)
        logger.info("Removed update timers for repository %s", repository_id)

    def _remove_timers(self, repository_id: str) -> None:
        for job_id in self._registry.pop(repository_id, []):
            if self.scheduler.get_job(job_id) is not None:
                self.scheduler.remove_job(job_id)

    async def _fire(self, project_id: str, repository_id: str, index: int) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

        await self.bus.publish(
            EventType.TRIGGER_UPDATE_JOBS,
            {
                "project_id": project_id,
                "repository_id": repository_id,
                "repository_update_id": index,
                "trigger": UpdateJobTrigger.SCHEDULED.value,
                "event_bus_id": new_event_id(),
            },
        )

    def schedule_once(self, func: Callable[..., Any], run_at: datetime, args: list[Any], job_id: str) -> None:
        """Run ``func`` once at ``run_at`` (immediately when already past)."""
        # A past run date would count as a misfire and never run
        run_at = max(as_utc(run_at), utc_now())
        self.scheduler.add_job(
            func,
            DateTrigger(run_date=run_at),
            args=args,
            id=job_id,
            replace_existing=True,
            misfire_grace_time=ONE_OFF_MISFIRE_GRACE_SECONDS,
        )

    def add_periodic(self, func: Callable[..., Any], trigger: Any, job_id: str) -> None:
        self.scheduler.add_job(func, trigger, id=job_id, replace_existing=True, coalesce=True, max_instances=1)
