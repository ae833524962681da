from __future__ import annotations

from datetime import datetime
from datetime import timezone
from typing import Any

from sqlalchemy import JSON
from sqlalchemy import Boolean
from sqlalchemy import DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import Float
from sqlalchemy import ForeignKey
from sqlalchemy import Integer
from sqlalchemy import String
from sqlalchemy import Text
from sqlalchemy.orm import Mapped
from sqlalchemy.orm import mapped_column
from sqlalchemy.types import TypeDecorator

from dependabot_server.db import Base
from dependabot_server.enums import UpdateJobPlatform
from dependabot_server.enums import UpdateJobStatus
from dependabot_server.enums import UpdateJobTrigger
from dependabot_server.schemas import DependabotRegistry
from dependabot_server.schemas import RepositoryUpdate
from dependabot_server.utils.time import utc_now

NPM_LIKE_ECOSYSTEMS = ("npm", "yarn", "pnpm")


class UTCDateTime(TypeDecorator):
    """Stores naive UTC and hands back aware UTC datetimes (SQLite drops offsets)."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    type: Mapped[str] = mapped_column(String(32), default="azure")
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    slug: Mapped[str | None] = mapped_column(String(255), nullable=True)
    provider_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    url: Mapped[str] = mapped_column(Text)
    token: Mapped[str] = mapped_column(Text)
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    private: Mapped[bool] = mapped_column(Boolean, default=True)
    password: Mapped[str | None] = mapped_column(Text, nullable=True)
    github_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    debug: Mapped[bool] = mapped_column(Boolean, default=False)

    auto_complete: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    auto_approve: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    secrets: Mapped[dict[str, str]] = mapped_column(JSON, default=dict)
    experiments: Mapped[dict[str, str]] = mapped_column(JSON, default=dict)

    synchronized: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    updated: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, onupdate=utc_now)


class Repository(Base):
    __tablename__ = "repositories"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    project_id: Mapped[str] = mapped_column(String(64), ForeignKey("projects.id"), index=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    slug: Mapped[str | None] = mapped_column(String(512), nullable=True)
    provider_id: Mapped[str] = mapped_column(String(64), index=True)
    latest_commit: Mapped[str | None] = mapped_column(String(64), nullable=True)
    config_file_contents: Mapped[str | None] = mapped_column(Text, nullable=True)
    sync_exception: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Nested documents, always replaced as a whole (never mutated in place)
    updates_data: Mapped[list[dict[str, Any]]] = mapped_column("updates", JSON, default=list)
    registries_data: Mapped[dict[str, dict[str, Any]]] = mapped_column("registries", JSON, default=dict)

    created: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    updated: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    @property
    def updates(self) -> list[RepositoryUpdate]:
        return [RepositoryUpdate.model_validate(u) for u in self.updates_data or []]

    @updates.setter
    def updates(self, value: list[RepositoryUpdate]) -> None:
        self.updates_data = [u.to_document() for u in value]

    @property
    def registries(self) -> dict[str, DependabotRegistry]:
        return {name: DependabotRegistry.model_validate(r) for name, r in (self.registries_data or {}).items()}

    @registries.setter
    def registries(self, value: dict[str, DependabotRegistry]) -> None:
        self.registries_data = {name: r.to_document() for name, r in value.items()}

    def replace_update(self, index: int, update: RepositoryUpdate) -> None:
        """Swap a single entry; assigns a new list so the JSON column is flagged dirty."""
        data = list(self.updates_data or [])
        data[index] = update.to_document()
        self.updates_data = data


class UpdateJob(Base):
    __tablename__ = "update_jobs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    created: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, index=True)
    status: Mapped[UpdateJobStatus] = mapped_column(
        SAEnum(UpdateJobStatus, native_enum=False, name="update_job_status_enum"),
        default=UpdateJobStatus.SCHEDULED,
        index=True,
    )  # scheduled → running → succeeded|failed
    trigger: Mapped[UpdateJobTrigger] = mapped_column(
        SAEnum(UpdateJobTrigger, native_enum=False, name="update_job_trigger_enum")
    )
    platform: Mapped[UpdateJobPlatform | None] = mapped_column(
        SAEnum(UpdateJobPlatform, native_enum=False, name="update_job_platform_enum"), nullable=True
    )

    project_id: Mapped[str] = mapped_column(String(64), index=True)
    repository_id: Mapped[str] = mapped_column(String(64), index=True)
    repository_slug: Mapped[str | None] = mapped_column(String(512), nullable=True)
    event_bus_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    commit: Mapped[str | None] = mapped_column(String(64), nullable=True)
    package_ecosystem: Mapped[str] = mapped_column(String(64))
    package_manager: Mapped[str | None] = mapped_column(String(64), nullable=True)
    directory: Mapped[str | None] = mapped_column(Text, nullable=True)
    directories: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)

    cpu: Mapped[float] = mapped_column(Float, default=0.5)
    memory: Mapped[float] = mapped_column(Float, default=1.0)
    proxy_image: Mapped[str | None] = mapped_column(Text, nullable=True)
    updater_image: Mapped[str | None] = mapped_column(Text, nullable=True)
    auth_key: Mapped[str] = mapped_column(String(64))

    start: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    end: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    duration: Mapped[int | None] = mapped_column(Integer, nullable=True)

    logs_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    flame_graph_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    errors: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    unknown_errors: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)

    @property
    def resource_name(self) -> str:
        return f"dependabot-{self.id}"

    @property
    def proxy_resource_name(self) -> str:
        return f"{self.resource_name}-proxy"

    def matches(self, update: RepositoryUpdate) -> bool:
        return (
            self.package_ecosystem == update.package_ecosystem
            and self.directory == update.directory
            and (self.directories or None) == (update.directories or None)
        )


def resources_for_ecosystem(ecosystem: str) -> tuple[float, float]:
    """(cpu cores, memory GiB) for an updater container."""
    cpu, memory = 0.5, 1.0
    if ecosystem in NPM_LIKE_ECOSYSTEMS:
        cpu, memory = cpu * 2, memory * 2
    return cpu, memory
