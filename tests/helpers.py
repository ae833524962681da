"""Factories and doubles shared by the test modules."""

from __future__ import annotations

from datetime import datetime
from datetime import timezone
from typing import Any

from dependabot_server.enums import UpdateJobPlatform
from dependabot_server.enums import UpdateJobStatus
from dependabot_server.enums import UpdateJobTrigger
from dependabot_server.events import EventBus
from dependabot_server.models import Project
from dependabot_server.models import Repository
from dependabot_server.models import UpdateJob
from dependabot_server.schemas import RepositoryUpdate
from dependabot_server.schemas import parse_configuration
from dependabot_server.services.backends.base import JobBackend
from dependabot_server.services.backends.base import JobState

CONFIG_FILE = """
version: 2
updates:
  - package-ecosystem: "npm"
    directory: "/"
    schedule:
      interval: "weekly"
      day: "sunday"
      time: "03:00"
  - package-ecosystem: "nuget"
    directory: "/src"
    open-pull-requests-limit: 0
    schedule:
      interval: "daily"
"""


class RecordingEventBus(EventBus):
    """Event bus that also keeps every published event for assertions."""

    def __init__(self):
        super().__init__()
        self.published: list[tuple[Any, dict[str, Any]]] = []

    async def publish(self, event_type, data):
        self.published.append((event_type, data))
        await super().publish(event_type, data)

    def of_type(self, event_type) -> list[dict[str, Any]]:
        return [data for published_type, data in self.published if published_type == event_type]


def make_project(**overrides) -> Project:
    values = {
        "id": "p1",
        "url": "https://dev.azure.com/contoso/dependabot",
        "token": "pat-token",
        "password": "hook-secret",
        "secrets": {},
        "experiments": {},
        "auto_complete": {},
        "auto_approve": {},
    }
    values.update(overrides)
    return Project(**values)


def make_repository(project_id: str = "p1", content: str = CONFIG_FILE, **overrides) -> Repository:
    configuration = parse_configuration(content)
    repository = Repository(
        id=overrides.pop("id", "r1"),
        project_id=project_id,
        provider_id=overrides.pop("provider_id", "prov-1"),
        name=overrides.pop("name", "website"),
        slug=overrides.pop("slug", "contoso/dependabot/_git/website"),
        latest_commit=overrides.pop("latest_commit", "abc123"),
        config_file_contents=content,
        **overrides,
    )
    repository.updates = [RepositoryUpdate.from_update(u) for u in configuration.updates]
    repository.registries = configuration.registries
    return repository


START = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
END = datetime(2024, 5, 1, 10, 5, tzinfo=timezone.utc)


class FakeBackend(JobBackend):
    platform = UpdateJobPlatform.DOCKER_COMPOSE

    def __init__(self):
        self.created = []
        self.deleted = []
        self.existing: set[str] = set()
        self.state: JobState | None = None
        self.logs: str | None = "log line"

    async def exists(self, name):
        return name in self.existing

    def proxy_address(self, job):
        return job.proxy_resource_name

    async def resolve_image(self, image):
        return f"{image.split(':')[0]}@sha256:abc"

    async def create(self, spec):
        self.created.append(spec)
        self.existing.add(spec.name)

    async def delete(self, job):
        self.deleted.append(job.id)

    async def get_state(self, job):
        return self.state

    async def get_logs(self, job):
        return self.logs


def make_job(**overrides) -> UpdateJob:
    values = dict(
        id="job-1",
        created=START,
        status=UpdateJobStatus.SCHEDULED,
        trigger=UpdateJobTrigger.MANUAL,
        project_id="p1",
        repository_id="r1",
        repository_slug="contoso/dependabot/_git/website",
        package_ecosystem="npm",
        directory="/",
        cpu=1.0,
        memory=2.0,
        auth_key="k" * 32,
    )
    values.update(overrides)
    return UpdateJob(**values)
