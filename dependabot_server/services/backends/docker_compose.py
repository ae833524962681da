"""Local Docker host backend.

Jobs attach to networks created by the compose project that also runs this
server: ``{project}_server`` reaches the outside world, ``{project}_jobs`` is
internal. Only the proxy straddles both, so all updater egress goes through it.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from datetime import datetime

import docker

from dependabot_server.config import Settings
from dependabot_server.enums import UpdateJobPlatform
from dependabot_server.enums import UpdateJobStatus
from dependabot_server.errors import ConfigurationError
from dependabot_server.models import UpdateJob
from dependabot_server.services.backends.base import ContainerSpec
from dependabot_server.services.backends.base import JobBackend
from dependabot_server.services.backends.base import JobSpec
from dependabot_server.services.backends.base import JobState

logger = logging.getLogger(__name__)

NON_TERMINAL_STATES = ("created", "running", "restarting", "paused")
_FRACTION = re.compile(r"\.(\d+)")


def parse_docker_time(value: str | None) -> datetime | None:
    """Parse Docker's RFC 3339 timestamps (nanosecond precision, zero value for unset)."""
    if not value or value.startswith("0001-01-01"):
        return None
    value = value.replace("Z", "+00:00")
    value = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value, count=1)
    return datetime.fromisoformat(value)


def map_container_state(state: dict) -> UpdateJobStatus | None:
    status = (state.get("Status") or "").lower()
    if status in NON_TERMINAL_STATES:
        return None
    if status == "exited" and state.get("ExitCode") == 0:
        return UpdateJobStatus.SUCCEEDED
    return UpdateJobStatus.FAILED


class DockerComposeBackend(JobBackend):
    platform = UpdateJobPlatform.DOCKER_COMPOSE

    def __init__(self, settings: Settings, client: docker.DockerClient | None = None):
        self.settings = settings
        self.client = client or docker.DockerClient(base_url=settings.docker_host)
        prefix = settings.compose_project
        self.server_network = f"{prefix}_server"
        self.proxy_network = f"{prefix}_proxy"
        self.jobs_network = f"{prefix}_jobs"

    @property
    def volumes(self) -> dict[str, dict[str, str]]:
        source = self.settings.host_work_directory or os.path.abspath(self.settings.work_directory)
        return {source: {"bind": self.settings.container_mount_root, "mode": "rw"}}

    def _find(self, name: str):
        try:
            return self.client.containers.get(name)
        except docker.errors.NotFound:
            return None

    def _network(self, name: str):
        try:
            return self.client.networks.get(name)
        except docker.errors.NotFound:
            raise ConfigurationError(f"Docker network '{name}' does not exist; start the compose project first") from None

    async def exists(self, name: str) -> bool:
        containers = await asyncio.to_thread(self.client.containers.list, all=True, filters={"name": name})
        return any(c.name == name for c in containers)

    def proxy_address(self, job: UpdateJob) -> str:
        return job.proxy_resource_name

    async def resolve_image(self, image: str) -> str:
        return await asyncio.to_thread(self._resolve_image, image)

    def _resolve_image(self, image: str) -> str:
        try:
            found = self.client.images.get(image)
        except docker.errors.ImageNotFound:
            logger.info("Pulling image %s", image)
            repository, _, tag = image.rpartition(":")
            if not repository or "/" in tag:
                repository, tag = image, "latest"
            found = self.client.images.pull(repository, tag=tag)

        digests = found.attrs.get("RepoDigests") or []
        if not digests:
            # Locally built image without a registry digest
            return image
        return digests[0]

    def _run(self, spec: ContainerSpec, network: str, labels: dict[str, str]):
        container = self.client.containers.create(
            image=spec.image,
            name=spec.name,
            command=spec.command,
            environment=spec.env,
            labels=labels,
            volumes=self.volumes,
            network=network,
            nano_cpus=int(spec.cpu * 1_000_000_000),
            mem_limit=int(spec.memory * 1024**3),
        )
        return container

    async def create(self, spec: JobSpec) -> None:
        await asyncio.to_thread(self._create, spec)

    def _create(self, spec: JobSpec) -> None:
        server = self._network(self.server_network)
        proxy_net = self._network(self.proxy_network)
        jobs = self._network(self.jobs_network)

        # A proxy left over from an earlier failed attempt would block the name
        self._remove(spec.proxy.name)

        proxy = self._run(spec.proxy, server.name, spec.labels)
        try:
            proxy_net.connect(proxy)
            jobs.connect(proxy)
            proxy.start()
            logger.info("Started proxy container %s", spec.proxy.name)

            updater = self._run(spec.updater, jobs.name, spec.labels)
        except Exception:
            logger.exception("Failed to create containers for %s; removing the proxy", spec.name)
            proxy.remove(force=True)
            raise

        try:
            updater.start()
        except Exception:
            logger.exception("Failed to start updater %s; removing both containers", spec.updater.name)
            updater.remove(force=True)
            proxy.remove(force=True)
            raise
        logger.info("Started updater container %s", spec.updater.name)

    async def delete(self, job: UpdateJob) -> None:
        await asyncio.to_thread(self._delete, job)

    def _remove(self, name: str) -> None:
        container = self._find(name)
        if container is None:
            return
        try:
            container.remove(force=True)
        except docker.errors.NotFound:
            return
        logger.info("Removed container %s", name)

    def _delete(self, job: UpdateJob) -> None:
        for name in (job.resource_name, job.proxy_resource_name):
            self._remove(name)

    async def get_state(self, job: UpdateJob) -> JobState | None:
        return await asyncio.to_thread(self._get_state, job)

    def _get_state(self, job: UpdateJob) -> JobState | None:
        container = self._find(job.resource_name)
        if container is None:
            return None

        state = container.attrs.get("State") or {}
        status = map_container_state(state)
        if status is None:
            return None
        return JobState(
            status=status,
            start=parse_docker_time(state.get("StartedAt")),
            end=parse_docker_time(state.get("FinishedAt")),
        )

    async def get_logs(self, job: UpdateJob) -> str | None:
        return await asyncio.to_thread(self._get_logs, job)

    def _get_logs(self, job: UpdateJob) -> str | None:
        container = self._find(job.resource_name)
        if container is None:
            return None

        logs = container.logs(stdout=True, stderr=False).decode("utf-8", errors="replace")
        if not logs.strip():
            logs = container.logs(stdout=False, stderr=True).decode("utf-8", errors="replace")
        return logs

    async def close(self) -> None:
        await asyncio.to_thread(self.client.close)
