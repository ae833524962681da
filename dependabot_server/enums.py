"""Shared *Enum* definitions for SQLAlchemy & Pydantic models.

The Enums inherit from ``str`` so JSON serialisation renders plain strings and
comparisons against raw literals (``status == "running"``) keep working.
"""

from __future__ import annotations

from enum import Enum


class UpdateJobStatus(str, Enum):
    SCHEDULED = "scheduled"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (UpdateJobStatus.SUCCEEDED, UpdateJobStatus.FAILED)


class UpdateJobTrigger(str, Enum):
    SCHEDULED = "scheduled"
    MISSED_SCHEDULE = "missed_schedule"
    SYNCHRONIZATION = "synchronization"
    MANUAL = "manual"


class UpdateJobPlatform(str, Enum):
    CONTAINER_APPS = "container_apps"
    DOCKER_COMPOSE = "docker_compose"


class ScheduleInterval(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    SEMIANNUALLY = "semiannually"
    YEARLY = "yearly"
    CRON = "cron"


class ScheduleDay(str, Enum):
    SUNDAY = "sunday"
    MONDAY = "monday"
    TUESDAY = "tuesday"
    WEDNESDAY = "wednesday"
    THURSDAY = "thursday"
    FRIDAY = "friday"
    SATURDAY = "saturday"
