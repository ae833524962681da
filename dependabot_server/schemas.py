"""Pydantic models for ``dependabot.yml`` and the stored update directives.

Keys in the file are hyphenated; every model maps ``snake_case`` fields to
``hyphen-case`` aliases so that dumps ``by_alias`` round-trip into the same
shape the file uses.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any
from typing import Literal

import yaml
from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import ValidationError
from pydantic import field_validator
from pydantic import model_validator

from dependabot_server.enums import ScheduleDay
from dependabot_server.enums import ScheduleInterval
from dependabot_server.enums import UpdateJobStatus
from dependabot_server.errors import ConfigFileValidationError
from dependabot_server.schedules import make_trigger
from dependabot_server.schedules import validate_timezone

_TIME_PATTERN = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


def _hyphenate(name: str) -> str:
    return name.replace("_", "-")


class HyphenatedModel(BaseModel):
    model_config = ConfigDict(alias_generator=_hyphenate, populate_by_name=True, extra="ignore")

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class DependabotRegistry(HyphenatedModel):
    type: str
    url: str | None = None
    username: str | None = None
    password: str | None = None
    key: str | None = None
    token: str | None = None
    replaces_base: bool | None = None
    organization: str | None = None
    repo: str | None = None
    auth_key: str | None = None
    public_key_fingerprint: str | None = None

    @model_validator(mode="after")
    def _require_url(self) -> "DependabotRegistry":
        if not self.url and self.type != "hex-organization":
            raise ValueError(f"'url' is required for registries of type '{self.type}'")
        return self


class DependabotSchedule(HyphenatedModel):
    interval: ScheduleInterval
    time: str = "02:00"
    day: ScheduleDay = ScheduleDay.MONDAY
    timezone: str = "Etc/UTC"
    cronjob: str | None = None

    @field_validator("interval", "day", mode="before")
    @classmethod
    def _lowercase(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value

    @field_validator("time", mode="before")
    @classmethod
    def _parse_time(cls, value: Any) -> Any:
        # YAML 1.1 reads an unquoted 03:45 as the sexagesimal integer 225
        if isinstance(value, int):
            return f"{value // 60:02d}:{value % 60:02d}"
        return value

    @field_validator("time")
    @classmethod
    def _check_time(cls, value: str) -> str:
        match = _TIME_PATTERN.match(value.strip())
        if not match:
            raise ValueError(f"'{value}' is not a valid time of day (HH:MM)")
        return f"{int(match.group(1)):02d}:{match.group(2)}"

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        return validate_timezone(value)

    @model_validator(mode="after")
    def _check_cronjob(self) -> "DependabotSchedule":
        if self.interval == ScheduleInterval.CRON:
            if not self.cronjob:
                raise ValueError("'cronjob' must be a valid CRON expression when 'interval' is set to 'cron'")
            try:
                make_trigger(self.cronjob, self.timezone)
            except ValueError as exc:
                raise ValueError(
                    f"'cronjob' must be a valid CRON expression when 'interval' is set to 'cron': {exc}"
                ) from exc
        return self

    def generate_cron(self) -> str:
        """Cron expression (minute hour day-of-month month day-of-week) for this schedule."""
        if self.interval == ScheduleInterval.CRON:
            return self.cronjob

        hour, minute = self.time.split(":")
        prefix = f"{minute} {hour} "
        if self.interval == ScheduleInterval.DAILY:
            return prefix + "* * mon-fri"
        if self.interval == ScheduleInterval.WEEKLY:
            return prefix + f"* * {self.day.value[:3]}"
        if self.interval == ScheduleInterval.MONTHLY:
            return prefix + "1 * *"
        if self.interval == ScheduleInterval.QUARTERLY:
            return prefix + "1 1,4,7,10 *"
        if self.interval == ScheduleInterval.SEMIANNUALLY:
            return prefix + "1 1,7 *"
        if self.interval == ScheduleInterval.YEARLY:
            return prefix + "1 1 *"
        raise NotImplementedError(f"Unsupported schedule interval '{self.interval}'")

    def trigger(self):
        return make_trigger(self.generate_cron(), self.timezone)


class DependabotGroup(HyphenatedModel):
    applies_to: str | None = None
    dependency_type: str | None = None
    patterns: list[str] | None = None
    exclude_patterns: list[str] | None = None
    update_types: list[str] | None = None


class DependabotAllowDependency(HyphenatedModel):
    dependency_name: str | None = None
    dependency_type: str | None = None
    update_type: str | None = None

    @model_validator(mode="after")
    def _require_name_or_type(self) -> "DependabotAllowDependency":
        if self.dependency_name is None and self.dependency_type is None:
            raise ValueError("Each entry under 'allow' must have 'dependency-name', 'dependency-type' or both set")
        return self


class DependabotIgnoreDependency(HyphenatedModel):
    dependency_name: str | None = None
    versions: list[str] | str | None = None
    update_types: list[str] | None = None
    source: str | None = None
    updated_at: str | None = None

    @model_validator(mode="after")
    def _require_condition(self) -> "DependabotIgnoreDependency":
        if self.dependency_name is None and self.versions is None and self.update_types is None:
            raise ValueError(
                "Each entry under 'ignore' must have one of 'dependency-name', 'versions', or 'update-types' set"
            )
        return self


class DependabotCommitMessage(HyphenatedModel):
    prefix: str | None = None
    prefix_development: str | None = None
    include: str | None = None


class DependabotPullRequestBranchName(HyphenatedModel):
    separator: Literal["-", "_", "/"]


class DependabotUpdate(HyphenatedModel):
    package_ecosystem: str
    directory: str | None = None
    directories: list[str] | None = None
    schedule: DependabotSchedule
    open_pull_requests_limit: int = 5
    registries: list[str] | None = None
    allow: list[DependabotAllowDependency] | None = None
    groups: dict[str, DependabotGroup] | None = None
    ignore: list[DependabotIgnoreDependency] | None = None
    commit_message: DependabotCommitMessage | None = None
    labels: list[str] | None = None
    milestone: int | None = None
    pull_request_branch_name: DependabotPullRequestBranchName | None = None
    rebase_strategy: str = "auto"
    insecure_external_code_execution: str | None = None
    target_branch: str | None = None
    vendor: bool = False
    versioning_strategy: str = "auto"

    @model_validator(mode="after")
    def _require_directory(self) -> "DependabotUpdate":
        if (self.directory is None or not self.directory.strip()) and not self.directories:
            raise ValueError("Either 'directory' or 'directories' must be provided")
        return self

    @property
    def security_only(self) -> bool:
        """A zero pull request limit restricts the update to security fixes."""
        return self.open_pull_requests_limit == 0

    def all_directories(self) -> list[str]:
        if self.directories:
            return list(self.directories)
        return [self.directory]


class DependabotConfiguration(HyphenatedModel):
    version: Literal[2]
    updates: list[DependabotUpdate] = Field(min_length=1)
    registries: dict[str, DependabotRegistry] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_registries(self) -> "DependabotConfiguration":
        configured = list(self.registries)
        referenced: list[str] = []
        for update in self.updates:
            for name in update.registries or []:
                if name not in referenced:
                    referenced.append(name)

        problems = []
        missing_configuration = [name for name in referenced if name not in configured]
        if missing_configuration:
            problems.append(
                f"Referenced registries: '{','.join(missing_configuration)}' have not been configured "
                "in the root of dependabot.yml"
            )
        missing_references = [name for name in configured if name not in referenced]
        if missing_references:
            problems.append(
                f"Registries: '{','.join(missing_references)}' have not been referenced by any update"
            )
        if problems:
            raise ValueError("; ".join(problems))
        return self


class RepositoryUpdate(DependabotUpdate):
    """An update directive as stored on a repository, plus its run bookkeeping."""

    files: list[str] = Field(default_factory=list)
    existing_pull_requests: list[Any] = Field(default_factory=list)
    latest_job_id: str | None = None
    latest_job_status: UpdateJobStatus | None = None
    latest_update: datetime | None = None

    @classmethod
    def from_update(cls, update: DependabotUpdate) -> "RepositoryUpdate":
        return cls.model_validate(update.model_dump(by_alias=True))


def _format_validation_error(exc: ValidationError) -> list[str]:
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        message = error.get("msg", "invalid value")
        messages.append(f"{location}: {message}" if location else message)
    return messages


def parse_configuration(content: str) -> DependabotConfiguration:
    """Parse and validate the contents of a ``dependabot.yml`` file.

    Raises:
        ConfigFileValidationError: YAML syntax errors and every validation failure
    """
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as exc:
        raise ConfigFileValidationError([f"The YAML file is invalid: {exc}"]) from exc

    if not isinstance(data, dict):
        raise ConfigFileValidationError(["The configuration file must contain a mapping at the root"])

    try:
        return DependabotConfiguration.model_validate(data)
    except ValidationError as exc:
        raise ConfigFileValidationError(_format_validation_error(exc)) from exc
