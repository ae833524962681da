"""Repository synchronization: provider state into stored repositories and updates.

A repository row exists exactly when the provider repository has a
configuration file. The file is re-parsed only when its commit or the
repository name changed, so a repeated sync without upstream changes writes
nothing and publishes nothing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any
from typing import Callable

from sqlalchemy import delete
from sqlalchemy import select

from dependabot_server.config import Settings
from dependabot_server.db import db_session
from dependabot_server.enums import UpdateJobTrigger
from dependabot_server.errors import ConfigFileValidationError
from dependabot_server.events import EventBus
from dependabot_server.events import EventType
from dependabot_server.events import new_event_id
from dependabot_server.models import Project
from dependabot_server.models import Repository
from dependabot_server.schemas import RepositoryUpdate
from dependabot_server.schemas import parse_configuration
from dependabot_server.services.azure_devops import AzureDevOpsClient
from dependabot_server.services.azure_devops import ConfigurationFile
from dependabot_server.utils.ids import generate_repository_id
from dependabot_server.utils.time import as_utc
from dependabot_server.utils.time import utc_now

logger = logging.getLogger(__name__)

ClientFactory = Callable[[Project], AzureDevOpsClient]


def default_client_factory(project: Project) -> AzureDevOpsClient:
    return AzureDevOpsClient(project.url, project.token)


@dataclass
class ProviderRepository:
    provider_id: str
    name: str
    slug: str
    configuration: ConfigurationFile | None


def _skipped(remote: dict[str, Any]) -> bool:
    return bool(remote.get("isDisabled")) or bool(remote.get("isFork"))


class Synchronizer:
    def __init__(
        self,
        settings: Settings,
        bus: EventBus,
        session_factory: Any = None,
        client_factory: ClientFactory = default_client_factory,
    ):
        self.settings = settings
        self.bus = bus
        self.session_factory = session_factory
        self.client_factory = client_factory

    @property
    def debounce(self) -> timedelta:
        return timedelta(minutes=self.settings.sync_debounce_minutes)

    async def synchronize_project(self, project: Project, trigger: bool, *, force: bool = False) -> bool:
        """Synchronize every repository of a project; returns False when debounced."""
        now = utc_now()
        synchronized = as_utc(project.synchronized)
        if not force and synchronized is not None and now - synchronized < self.debounce:
            logger.info("Skipping synchronization of project %s; last run at %s", project.id, synchronized)
            return False

        client = self.client_factory(project)
        remote_project = await client.get_project()
        project_name = remote_project.get("name")
        connection = await client.get_connection_data()
        user_id = (connection.get("authenticatedUser") or {}).get("id")

        items: list[ProviderRepository] = []
        remote_repositories = await client.list_repositories()
        logger.debug("Found %s repositories in project %s", len(remote_repositories), project.id)
        for remote in remote_repositories:
            if _skipped(remote):
                logger.info("Skipping sync for %s because it is disabled or is a fork", remote.get("name"))
                continue
            configuration = await client.get_configuration_file(remote["id"])
            items.append(
                ProviderRepository(
                    provider_id=remote["id"],
                    name=remote["name"],
                    slug=client.url.make_repository_slug(remote["name"], project_name),
                    configuration=configuration,
                )
            )

        keep = [item.provider_id for item in items if item.configuration is not None]
        with db_session(self.session_factory) as db:
            row = db.get(Project, project.id)
            if row is not None:
                private = (remote_project.get("visibility") or "private").lower() == "private"
                description = remote_project.get("description")
                if row.name != project_name:
                    row.name = project_name
                if row.description != description:
                    row.description = description
                if row.private != private:
                    row.private = private
                if user_id and row.user_id != user_id:
                    row.user_id = user_id
                row.synchronized = now

            stale = db.scalars(
                select(Repository.id).where(Repository.project_id == project.id, Repository.provider_id.not_in(keep))
            ).all()
            if stale:
                db.execute(delete(Repository).where(Repository.id.in_(stale)))
                logger.info("Deleted %s repositories that are no longer present in project %s", len(stale), project.id)
        project.synchronized = now

        for repository_id in stale:
            await self.bus.publish(
                EventType.REPOSITORY_DELETED, {"project_id": project.id, "repository_id": repository_id}
            )

        for item in items:
            await self._synchronize(project, item, trigger)
        return True

    async def register_webhooks(self, project: Project) -> list[str]:
        """Point the project's service hooks at this server's webhook endpoint."""
        if not self.settings.webhook_endpoint or not project.password:
            logger.debug("Webhooks not configured for project %s", project.id)
            return []

        url = self.settings.webhook_endpoint.rstrip("/") + "/webhooks/azure"
        client = self.client_factory(project)
        ids = await client.create_or_update_subscriptions(project.id, project.password, url)
        logger.info("Registered %s webhook subscription(s) for project %s", len(ids), project.id)
        return ids

    async def synchronize_repository(self, project: Project, repository: Repository, trigger: bool) -> None:
        await self.synchronize_provider_repository(project, repository.provider_id, trigger)

    async def synchronize_provider_repository(self, project: Project, provider_id: str, trigger: bool) -> None:
        client = self.client_factory(project)
        remote = await client.get_repository(provider_id)
        if _skipped(remote):
            logger.info("Skipping sync for %s because it is disabled or is a fork", remote.get("name"))
            return

        project_name = (remote.get("project") or {}).get("name")
        configuration = await client.get_configuration_file(provider_id)
        item = ProviderRepository(
            provider_id=remote["id"],
            name=remote["name"],
            slug=client.url.make_repository_slug(remote["name"], project_name),
            configuration=configuration,
        )
        await self._synchronize(project, item, trigger)

    async def _synchronize(self, project: Project, item: ProviderRepository, trigger: bool) -> None:
        events: list[tuple[EventType, dict[str, Any]]] = []

        with db_session(self.session_factory) as db:
            repository = db.scalars(
                select(Repository).where(Repository.project_id == project.id, Repository.provider_id == item.provider_id)
            ).first()

            if item.configuration is None:
                if repository is not None:
                    logger.info("Deleting '%s' as it no longer has a configuration file", repository.slug)
                    db.delete(repository)
                    events.append(
                        (EventType.REPOSITORY_DELETED, {"project_id": project.id, "repository_id": repository.id})
                    )
            else:
                configuration = item.configuration
                created = repository is None
                changed = created or repository.latest_commit != configuration.commit_id or repository.name != item.name
                if created:
                    repository = Repository(
                        id=generate_repository_id(),
                        project_id=project.id,
                        provider_id=item.provider_id,
                        created=utc_now(),
                    )
                    db.add(repository)

                if changed:
                    logger.debug("Configuration file for '%s' is new or has been updated", item.slug)
                    repository.updated = utc_now()
                    repository.name = item.name
                    repository.slug = item.slug
                    repository.latest_commit = configuration.commit_id
                    repository.config_file_contents = configuration.content
                    self._apply_configuration(repository, configuration.content)

                    payload = {"project_id": project.id, "repository_id": repository.id}
                    events.append((EventType.REPOSITORY_CREATED if created else EventType.REPOSITORY_UPDATED, payload))
                    if trigger:
                        events.append(
                            (
                                EventType.TRIGGER_UPDATE_JOBS,
                                {
                                    **payload,
                                    "repository_update_id": None,
                                    "trigger": UpdateJobTrigger.SYNCHRONIZATION.value,
                                    "event_bus_id": new_event_id(),
                                },
                            )
                        )

        for event_type, payload in events:
            await self.bus.publish(event_type, payload)

    @staticmethod
    def _apply_configuration(repository: Repository, content: str) -> None:
        try:
            configuration = parse_configuration(content)
        except ConfigFileValidationError as exc:
            logger.warning("Configuration file for '%s' is invalid: %s", repository.slug, exc)
            repository.sync_exception = str(exc)
            repository.updates = []
            repository.registries = {}
            return

        repository.sync_exception = None
        repository.registries = configuration.registries
        repository.updates = [RepositoryUpdate.from_update(update) for update in configuration.updates]
