from __future__ import annotations

import os
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings

DEFAULT_EXPERIMENTS: dict[str, str] = {
    "record-ecosystem-versions": "true",
    "record-update-job-unknown-error": "true",
    "proxy-cached": "true",
    "move-job-token": "true",
    "dependency-change-validation": "true",
    "nuget-install-dotnet-sdks": "true",
    "nuget-native-analysis": "true",
    "nuget-use-direct-discovery": "true",
    "enable-file-parser-python-local": "true",
    "lead-security-dependency": "true",
    "enable-record-ecosystem-meta": "true",
    "enable-shared-helpers-command-timeout": "true",
    "enable-engine-version-detection": "true",
    "avoid-duplicate-updates-package-json": "true",
    "allow-refresh-for-existing-pr-dependencies": "true",
    "allow-refresh-group-with-all-dependencies": "true",
    "exclude-local-composer-packages": "true",
    "enable-enhanced-error-details-for-updater": "true",
    "gradle-lockfile-updater": "true",
    "enable-exclude-paths-subdirectory-manifest-files": "true",
    "group-membership-enforcement": "true",
    "deprecate-close-command": "true",
    "deprecate-reopen-command": "true",
    "deprecate-merge-command": "true",
    "deprecate-cancel-merge-command": "true",
    "deprecate-squash-merge-command": "true",
}


class Settings(BaseSettings):
    # Core
    database_url: str = "sqlite:///./dependabot.db"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    platform: str = "docker_compose"

    # Endpoints
    jobs_api_url: str = "http://host.docker.internal:44390"
    webhook_endpoint: str | None = None
    github_token: str | None = None

    # Images
    proxy_image: str = "ghcr.io/github/dependabot-update-job-proxy/dependabot-update-job-proxy"
    proxy_image_tag: str = "latest"
    updater_image: str = "ghcr.io/dependabot/dependabot-updater-{ecosystem}"
    updater_image_tag: str = "latest"

    # Work directories. host_work_directory is the same directory as seen by the
    # docker daemon; container_mount_root is where it appears inside job containers.
    work_directory: str = "work"
    host_work_directory: str | None = None
    container_mount_root: str = "/mnt/dependabot"

    # Docker/compose
    docker_host: str = "unix:///var/run/docker.sock"
    compose_project: str = "dependabot"

    # Azure Container Apps
    azure_subscription_id: str | None = None
    azure_resource_group: str | None = None
    azure_location: str | None = None
    azure_app_environment_id: str | None = None
    azure_log_analytics_workspace_id: str | None = None
    azure_file_share_storage_name: str | None = None
    azure_managed_identity_client_id: str | None = None

    # Reconciliation
    sync_interval_hours: int = 6
    sync_debounce_minutes: int = 60
    missed_schedule_grace_hours: int = 12
    cleanup_interval_minutes: int = 15
    stuck_job_grace_minutes: int = 10
    job_retention_days: int = 90
    cleanup_batch_size: int = 100
    pending_job_timeout_minutes: int = 180
    scheduler_stop_timeout_seconds: float = 1.0

    # Job definition
    default_experiments: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_EXPERIMENTS))
    debug_targets: list[str] = Field(default_factory=list)

    class Config:
        env_prefix = "DEPENDABOT_"

    @property
    def certs_directory(self) -> str:
        return os.path.join(self.work_directory, "certs")

    @property
    def proxy_directory(self) -> str:
        return os.path.join(self.work_directory, "proxy")

    @property
    def jobs_directory(self) -> str:
        return os.path.join(self.work_directory, "jobs")

    @property
    def logs_directory(self) -> str:
        return os.path.join(self.work_directory, "logs")


settings = Settings()
