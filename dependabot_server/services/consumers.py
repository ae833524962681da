"""Event handlers wiring synchronization, scheduling and job execution together."""

from __future__ import annotations

import asyncio
import logging
import math
import os
from datetime import timedelta
from typing import Any

from sqlalchemy import select

from dependabot_server.cache import JobOutputStore
from dependabot_server.config import Settings
from dependabot_server.db import db_session
from dependabot_server.enums import UpdateJobStatus
from dependabot_server.enums import UpdateJobTrigger
from dependabot_server.events import EventBus
from dependabot_server.events import EventType
from dependabot_server.events import new_event_id
from dependabot_server.models import Project
from dependabot_server.models import Repository
from dependabot_server.models import UpdateJob
from dependabot_server.models import resources_for_ecosystem
from dependabot_server.services.config_files import convert_ecosystem_to_package_manager
from dependabot_server.services.outputs import apply_job_outputs
from dependabot_server.services.runner import UpdateRunner
from dependabot_server.services.scheduler import UpdateScheduler
from dependabot_server.services.synchronizer import Synchronizer
from dependabot_server.utils.ids import generate_auth_key
from dependabot_server.utils.ids import generate_job_id
from dependabot_server.utils.time import as_utc
from dependabot_server.utils.time import utc_now

logger = logging.getLogger(__name__)

LOG_COLLECTION_DELAY = timedelta(minutes=2.5)


class EventConsumers:
    def __init__(
        self,
        settings: Settings,
        bus: EventBus,
        synchronizer: Synchronizer,
        scheduler: UpdateScheduler,
        runner: UpdateRunner,
        outputs: JobOutputStore,
        session_factory: Any = None,
    ):
        self.settings = settings
        self.bus = bus
        self.synchronizer = synchronizer
        self.scheduler = scheduler
        self.runner = runner
        self.outputs = outputs
        self.session_factory = session_factory

    def register(self) -> None:
        self.bus.subscribe(EventType.PROCESS_SYNCHRONIZATION, self.handle_process_synchronization)
        self.bus.subscribe(EventType.REPOSITORY_CREATED, self.handle_repository_changed)
        self.bus.subscribe(EventType.REPOSITORY_UPDATED, self.handle_repository_changed)
        self.bus.subscribe(EventType.REPOSITORY_DELETED, self.handle_repository_deleted)
        self.bus.subscribe(EventType.TRIGGER_UPDATE_JOBS, self.handle_trigger_update_jobs)
        self.bus.subscribe(EventType.UPDATE_JOB_CHECK_STATE, self.handle_check_state)
        self.bus.subscribe(EventType.UPDATE_JOB_COLLECT_LOGS, self.handle_collect_logs)

    def unregister(self) -> None:
        self.bus.unsubscribe(EventType.PROCESS_SYNCHRONIZATION, self.handle_process_synchronization)
        self.bus.unsubscribe(EventType.REPOSITORY_CREATED, self.handle_repository_changed)
        self.bus.unsubscribe(EventType.REPOSITORY_UPDATED, self.handle_repository_changed)
        self.bus.unsubscribe(EventType.REPOSITORY_DELETED, self.handle_repository_deleted)
        self.bus.unsubscribe(EventType.TRIGGER_UPDATE_JOBS, self.handle_trigger_update_jobs)
        self.bus.unsubscribe(EventType.UPDATE_JOB_CHECK_STATE, self.handle_check_state)
        self.bus.unsubscribe(EventType.UPDATE_JOB_COLLECT_LOGS, self.handle_collect_logs)

    # --- Synchronization -------------------------------------------------

    async def handle_process_synchronization(self, data: dict[str, Any]) -> None:
        trigger = bool(data.get("trigger"))
        with db_session(self.session_factory) as db:
            project = db.get(Project, data.get("project_id"))
            repository_id = data.get("repository_id")
            repository = db.get(Repository, repository_id) if repository_id else None

        if project is None:
            logger.warning("Skipping synchronization because project '%s' does not exist", data.get("project_id"))
            return

        if repository_id:
            if repository is None:
                logger.warning("Skipping synchronization because repository '%s' does not exist", repository_id)
                return
            await self.synchronizer.synchronize_repository(project, repository, trigger)
        elif data.get("repository_provider_id"):
            await self.synchronizer.synchronize_provider_repository(project, data["repository_provider_id"], trigger)
        else:
            await self.synchronizer.synchronize_project(project, trigger)

    async def handle_repository_changed(self, data: dict[str, Any]) -> None:
        with db_session(self.session_factory) as db:
            repository = db.get(Repository, data["repository_id"])
        if repository is None:
            logger.warning("Cannot schedule missing repository '%s'", data["repository_id"])
            return
        await self.scheduler.create_or_update(repository)

    async def handle_repository_deleted(self, data: dict[str, Any]) -> None:
        await self.scheduler.remove(data["repository_id"])

    # --- Jobs ------------------------------------------------------------

    async def handle_trigger_update_jobs(self, data: dict[str, Any]) -> None:
        repository_id = data["repository_id"]
        index = data.get("repository_update_id")
        trigger = UpdateJobTrigger(data.get("trigger") or UpdateJobTrigger.MANUAL.value)
        event_bus_id = data.get("event_bus_id") or new_event_id()

        with db_session(self.session_factory) as db:
            repository = db.get(Repository, repository_id)
            if repository is None:
                logger.warning("Skipping trigger; repository '%s' does not exist", repository_id)
                return
            project = db.get(Project, data.get("project_id") or repository.project_id)
            if project is None:
                logger.warning("Skipping trigger; project '%s' does not exist", data.get("project_id"))
                return

            updates = repository.updates
            if index is not None:
                if index < 0 or index >= len(updates):
                    logger.warning("Skipping trigger; update %s of repository '%s' does not exist", index, repository_id)
                    return
                indexes = [index]
            else:
                indexes = list(range(len(updates)))

        for i in indexes:
            await self._run_update(project.id, repository_id, i, trigger, event_bus_id)

    async def _run_update(
        self, project_id: str, repository_id: str, index: int, trigger: UpdateJobTrigger, event_bus_id: str
    ) -> None:
        with db_session(self.session_factory) as db:
            project = db.get(Project, project_id)
            repository = db.get(Repository, repository_id)
            update = repository.updates[index]

            candidates = db.scalars(
                select(UpdateJob).where(
                    UpdateJob.event_bus_id == event_bus_id,
                    UpdateJob.package_ecosystem == update.package_ecosystem,
                )
            ).all()
            job = next((j for j in candidates if j.matches(update)), None)
            if job is not None:
                logger.info("Reusing job %s for repository %s(%s)", job.id, repository_id, index)
            else:
                cpu, memory = resources_for_ecosystem(update.package_ecosystem)
                job = UpdateJob(
                    id=generate_job_id(),
                    created=utc_now(),
                    status=UpdateJobStatus.SCHEDULED,
                    trigger=trigger,
                    project_id=project.id,
                    repository_id=repository.id,
                    repository_slug=repository.slug,
                    event_bus_id=event_bus_id,
                    commit=repository.latest_commit,
                    package_ecosystem=update.package_ecosystem,
                    package_manager=convert_ecosystem_to_package_manager(update.package_ecosystem),
                    directory=update.directory,
                    directories=update.directories,
                    cpu=cpu,
                    memory=memory,
                    auth_key=generate_auth_key(),
                    errors=[],
                    unknown_errors=[],
                )
                db.add(job)

                update.latest_job_id = job.id
                update.latest_job_status = job.status
                update.latest_update = job.created
                repository.replace_update(index, update)
                db.commit()

            await self.runner.create(project, repository, update, job)

            update.latest_job_status = job.status
            repository.replace_update(index, update)

    async def handle_check_state(self, data: dict[str, Any]) -> None:
        job_id = data["job_id"]
        with db_session(self.session_factory) as db:
            job = db.get(UpdateJob, job_id)
            if job is None:
                logger.warning("Cannot update state for job '%s' as it does not exist", job_id)
                return
            if job.status.is_terminal:
                logger.info("Job '%s' is already in a terminal state", job_id)
                return

            state = await self.runner.get_state(job)
            if state is None:
                logger.debug("No terminal state yet for job '%s'", job_id)
                pending_for = utc_now() - as_utc(job.created)
                if pending_for > timedelta(minutes=self.settings.pending_job_timeout_minutes):
                    logger.warning("Job '%s' has been pending for %s; deleting it", job_id, pending_for)
                    await self.runner.delete(job)
                    await self.outputs.pop(job.id)
                    db.delete(job)
                return

            job.status = state.status
            job.start = state.start
            job.end = state.end
            job.duration = None
            if state.start is not None and state.end is not None:
                job.duration = math.ceil((state.end - state.start).total_seconds() * 1000)

            outputs = await self.outputs.pop(job.id)
            repository = db.get(Repository, job.repository_id)
            matched = False
            if repository is not None:
                for i, update in enumerate(repository.updates):
                    if not job.matches(update):
                        continue
                    if update.latest_job_id == job.id:
                        update.latest_job_status = job.status
                    apply_job_outputs(job, update, outputs)
                    repository.replace_update(i, update)
                    matched = True
                    break
            if not matched:
                apply_job_outputs(job, None, outputs)
            end = state.end

        logger.info("Job '%s' finished as %s", job_id, state.status.value)
        run_at = end + LOG_COLLECTION_DELAY if end is not None else utc_now()
        self.scheduler.schedule_once(self._publish_collect_logs, run_at, [job_id], f"collect_logs_{job_id}")

    async def _publish_collect_logs(self, job_id: str) -> None:
        await self.bus.publish(EventType.UPDATE_JOB_COLLECT_LOGS, {"job_id": job_id})

    async def handle_collect_logs(self, data: dict[str, Any]) -> None:
        job_id = data["job_id"]
        with db_session(self.session_factory) as db:
            job = db.get(UpdateJob, job_id)
            if job is None:
                logger.warning("Cannot collect logs for job '%s' as it does not exist", job_id)
                return
            if not job.status.is_terminal:
                logger.warning("Cannot collect logs for job '%s' in status %s", job_id, job.status.value)
                return

            logs = await self.runner.get_logs(job)
            if logs and logs.strip():
                path = os.path.join(self.settings.logs_directory, f"{job.id}.log")
                await asyncio.to_thread(_write_text, path, logs)
                job.logs_path = path

            await self.runner.delete(job)


def _write_text(path: str, content: str) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w") as f:
        f.write(content)
