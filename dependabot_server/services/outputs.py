"""Apply the operations an updater reported during its run.

Operations arrive on the update jobs API while the job runs and are held in a
``JobOutputStore``. Once the job reaches a terminal state they are folded into
the job record and its repository update here.
"""

from __future__ import annotations

import logging
from typing import Any
from typing import Iterable

from dependabot_server.cache import JobOutput
from dependabot_server.models import UpdateJob
from dependabot_server.schemas import RepositoryUpdate

logger = logging.getLogger(__name__)

OPERATIONS = (
    "create_pull_request",
    "update_pull_request",
    "close_pull_request",
    "record_update_job_error",
    "record_update_job_unknown_error",
    "mark_as_processed",
    "update_dependency_list",
    "record_ecosystem_versions",
    "increment_metric",
)


def _error_entry(payload: dict[str, Any]) -> dict[str, Any]:
    return {"type": payload.get("error-type"), "detail": payload.get("error-details")}


def pull_request_entry(payload: dict[str, Any]) -> Any:
    """Existing pull request record in the shape the job definition expects."""
    dependencies = [
        {
            "dependency-name": dependency.get("name"),
            "dependency-version": dependency.get("version"),
            "directory": dependency.get("directory"),
        }
        for dependency in payload.get("dependencies") or []
    ]
    group = payload.get("dependency-group") or {}
    if group.get("name"):
        return {"dependency-group-name": group["name"], "dependencies": dependencies}
    return dependencies


def _dependency_names(entry: Any) -> set[str]:
    dependencies = entry.get("dependencies", []) if isinstance(entry, dict) else entry
    return {d.get("dependency-name") for d in dependencies if isinstance(d, dict)}


def apply_job_outputs(job: UpdateJob, update: RepositoryUpdate | None, outputs: Iterable[JobOutput]) -> None:
    errors = list(job.errors or [])
    unknown_errors = list(job.unknown_errors or [])

    for output in outputs:
        payload = output.payload or {}
        if output.type == "record_update_job_error":
            errors.append(_error_entry(payload))
        elif output.type == "record_update_job_unknown_error":
            unknown_errors.append(_error_entry(payload))
        elif output.type == "update_dependency_list" and update is not None:
            update.files = list(payload.get("dependency_files") or payload.get("dependency-files") or [])
        elif output.type == "create_pull_request" and update is not None:
            update.existing_pull_requests = [*update.existing_pull_requests, pull_request_entry(payload)]
        elif output.type == "close_pull_request" and update is not None:
            names = set(payload.get("dependency-names") or [])
            update.existing_pull_requests = [
                entry for entry in update.existing_pull_requests if _dependency_names(entry) != names
            ]
        else:
            logger.info("Job %s reported %s", job.id, output.type)

    job.errors = errors
    job.unknown_errors = unknown_errors
