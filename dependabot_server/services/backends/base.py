"""Execution backend contract.

A backend runs one job as a pair of containers (egress proxy and updater) and
reports back on it. The runner builds the container specs; backends only know
how to place them on their platform.
"""

from __future__ import annotations

from abc import ABC
from abc import abstractmethod
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime

from dependabot_server.enums import UpdateJobPlatform
from dependabot_server.enums import UpdateJobStatus
from dependabot_server.models import UpdateJob

PROXY_PORT = 1080


@dataclass
class ContainerSpec:
    name: str
    image: str
    cpu: float
    memory: float  # GiB
    command: list[str]
    env: dict[str, str] = field(default_factory=dict)


@dataclass
class JobSpec:
    """Everything needed to start one job on any backend."""

    name: str
    proxy: ContainerSpec
    updater: ContainerSpec
    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class JobState:
    status: UpdateJobStatus
    start: datetime | None = None
    end: datetime | None = None


class JobBackend(ABC):
    """Container platform that runs job pairs.

    ``get_state`` returns None for jobs that are still running or not yet
    visible; only terminal states are reported. ``delete`` treats missing
    resources as already deleted.
    """

    platform: UpdateJobPlatform

    @abstractmethod
    async def exists(self, name: str) -> bool:
        ...

    @abstractmethod
    def proxy_address(self, job: UpdateJob) -> str:
        """Host the updater uses to reach its proxy."""
        ...

    @abstractmethod
    async def resolve_image(self, image: str) -> str:
        """Pin ``image`` to a digest reference (``name@sha256:...``)."""
        ...

    @abstractmethod
    async def create(self, spec: JobSpec) -> None:
        ...

    @abstractmethod
    async def delete(self, job: UpdateJob) -> None:
        ...

    @abstractmethod
    async def get_state(self, job: UpdateJob) -> JobState | None:
        ...

    @abstractmethod
    async def get_logs(self, job: UpdateJob) -> str | None:
        ...

    async def close(self) -> None:
        """Release clients held by the backend."""
        return None
