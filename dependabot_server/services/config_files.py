"""Job-definition and proxy-config documents handed to the job containers.

Keys are the ones the updater and proxy read; values that the updater treats as
optional are written as null rather than omitted.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime
from typing import Any
from typing import Iterable
from typing import Mapping

from dependabot_server.errors import ConfigurationError
from dependabot_server.schemas import DependabotAllowDependency
from dependabot_server.schemas import DependabotCommitMessage
from dependabot_server.schemas import DependabotGroup
from dependabot_server.schemas import DependabotIgnoreDependency
from dependabot_server.schemas import RepositoryUpdate
from dependabot_server.services.certificates import CertificateAuthority
from dependabot_server.services.credentials import make_credentials_metadata

logger = logging.getLogger(__name__)

DEFAULT_IGNORE_SOURCE = ".github/dependabot.yml"
MAX_UPDATER_RUN_TIME = 2700

PACKAGE_MANAGERS = {
    "dotnet-sdk": "dotnet_sdk",
    "github-actions": "github_actions",
    "gitsubmodule": "submodules",
    "gomod": "go_modules",
    "mix": "hex",
    "npm": "npm_and_yarn",
    "yarn": "npm_and_yarn",
    "pnpm": "npm_and_yarn",
    "pipenv": "pip",
    "pip-compile": "pip",
    "poetry": "pip",
}

REQUIREMENTS_UPDATE_STRATEGIES = {
    "auto": None,
    "increase": "bump_versions",
    "increase-if-necessary": "bump_versions_if_necessary",
    "lockfile-only": "lockfile_only",
    "widen": "widen_ranges",
}


def convert_ecosystem_to_package_manager(ecosystem: str) -> str:
    if not ecosystem:
        raise ValueError("ecosystem must not be empty")
    return PACKAGE_MANAGERS.get(ecosystem, ecosystem)


def map_dependency_group(name: str, group: DependabotGroup) -> dict[str, Any]:
    return {
        "name": name,
        "applies-to": group.applies_to,
        "rules": {
            "patterns": group.patterns or ["*"],
            "exclude-patterns": group.exclude_patterns,
            "dependency-type": group.dependency_type,
            "update-types": group.update_types,
        },
    }


def map_allowed_updates(allow: list[DependabotAllowDependency] | None, security_only: bool) -> list[dict[str, Any]]:
    # Direct dependencies only when nothing is configured
    if not allow:
        return [{"dependency-type": "direct", "update-type": "security" if security_only else "all"}]

    return [
        {
            "dependency-name": entry.dependency_name,
            "dependency-type": entry.dependency_type,
            "update-type": entry.update_type,
        }
        for entry in allow
    ]


def map_ignore_condition(ignore: DependabotIgnoreDependency, created: datetime) -> dict[str, Any]:
    versions = ignore.versions
    if isinstance(versions, list):
        versions = ",".join(versions)
    return {
        "source": ignore.source or DEFAULT_IGNORE_SOURCE,
        "updated-at": ignore.updated_at or created.isoformat(),
        "dependency-name": ignore.dependency_name,
        "update-types": ignore.update_types,
        "version-requirement": versions,
    }


def map_commit_message(message: DependabotCommitMessage | None) -> dict[str, Any] | None:
    if message is None:
        return None
    include_scope = message.include is not None and message.include.strip().lower() == "scope"
    return {
        "prefix": message.prefix,
        "prefix-development": message.prefix_development,
        "include-scope": True if include_scope else None,
    }


def map_experiments(experiments: Mapping[str, str]) -> dict[str, Any]:
    """'true' and 'false' become booleans; anything else stays a string."""
    result: dict[str, Any] = {}
    for key, value in experiments.items():
        if isinstance(value, str) and value.lower() == "true":
            result[key] = True
        elif isinstance(value, str) and value.lower() == "false":
            result[key] = False
        else:
            result[key] = value
    return result


def map_requirements_update_strategy(value: str | None) -> str | None:
    if not value:
        return None
    try:
        return REQUIREMENTS_UPDATE_STRATEGIES[value]
    except KeyError:
        raise ConfigurationError(f"Versioning strategy: '{value}' is not supported") from None


def split_existing_pull_requests(entries: Iterable[Any]) -> tuple[list[Any], list[Any]]:
    """(individual, grouped) existing pull requests."""
    individual: list[Any] = []
    grouped: list[Any] = []
    for entry in entries:
        if isinstance(entry, Mapping) and entry.get("dependency-group-name"):
            grouped.append(entry)
        else:
            individual.append(entry)
    return individual, grouped


def build_job_definition(
    *,
    update: RepositoryUpdate,
    credentials: list[dict[str, str]],
    api_endpoint: str,
    hostname: str,
    repository_slug: str | None,
    created: datetime,
    experiments: Mapping[str, str],
    repo_private: bool | None = None,
    repo_contents_path: str | None = None,
    debug: bool = False,
    updating_pull_request: bool = False,
    dependency_group_to_refresh: str | None = None,
    dependencies: list[str] | None = None,
) -> dict[str, Any]:
    """The ``{"job": {...}}`` document read by the updater at start-up."""
    directories = update.all_directories()
    source: dict[str, Any] = {
        "provider": "azure",
        "api-endpoint": api_endpoint,
        "hostname": hostname,
        "repo": repository_slug,
        "branch": update.target_branch,
        "commit": None,
    }
    if len(directories) == 1:
        source["directory"] = directories[0]
    else:
        source["directories"] = directories

    existing, existing_grouped = split_existing_pull_requests(update.existing_pull_requests)

    return {
        "job": {
            "package-manager": convert_ecosystem_to_package_manager(update.package_ecosystem),
            "updating-a-pull-request": updating_pull_request,
            "dependency-group-to-refresh": dependency_group_to_refresh,
            "dependency-groups": [map_dependency_group(name, group) for name, group in (update.groups or {}).items()],
            "dependencies": dependencies,
            "allowed-updates": map_allowed_updates(update.allow, update.security_only),
            "ignore-conditions": [map_ignore_condition(ignore, created) for ignore in update.ignore or []],
            "security-updates-only": update.security_only,
            "security-advisories": [],
            "source": source,
            "existing-pull-requests": existing,
            "existing-group-pull-requests": existing_grouped,
            "commit-message-options": map_commit_message(update.commit_message),
            "experiments": map_experiments(experiments),
            "reject-external-code": update.insecure_external_code_execution == "deny",
            "repo-private": repo_private,
            "repo-contents-path": repo_contents_path,
            "requirements-update-strategy": map_requirements_update_strategy(update.versioning_strategy),
            "lockfile-only": update.versioning_strategy == "lockfile-only",
            "vendor-dependencies": update.vendor,
            "debug": debug,
            "credentials-metadata": make_credentials_metadata(credentials),
            "max-updater-run-time": MAX_UPDATER_RUN_TIME,
            "update-subdependencies": False,
        }
    }


def build_proxy_config(credentials: list[dict[str, str]], ca: CertificateAuthority) -> dict[str, Any]:
    return {"all_credentials": credentials, "ca": {"cert": ca.cert, "key": ca.key}}


def write_json(path: str, document: Mapping[str, Any]) -> str:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w") as f:
        json.dump(document, f, indent=2)
    logger.debug("Wrote %s", path)
    return path
