"""Execution backends for update jobs."""

from __future__ import annotations

from dependabot_server.config import Settings
from dependabot_server.enums import UpdateJobPlatform
from dependabot_server.errors import ConfigurationError
from dependabot_server.services.backends.base import ContainerSpec
from dependabot_server.services.backends.base import JobBackend
from dependabot_server.services.backends.base import JobSpec
from dependabot_server.services.backends.base import JobState


def create_backend(settings: Settings) -> JobBackend:
    """Instantiate the backend named by ``settings.platform``."""
    try:
        platform = UpdateJobPlatform(settings.platform)
    except ValueError:
        raise ConfigurationError(f"Platform '{settings.platform}' is not supported") from None

    if platform == UpdateJobPlatform.CONTAINER_APPS:
        from dependabot_server.services.backends.container_apps import ContainerAppsBackend

        return ContainerAppsBackend(settings)

    from dependabot_server.services.backends.docker_compose import DockerComposeBackend

    return DockerComposeBackend(settings)


__all__ = ["ContainerSpec", "JobBackend", "JobSpec", "JobState", "create_backend"]
