"""Azure DevOps REST client used by the synchronizer and subscription setup.

Only the handful of calls the server issues are covered; responses are returned
as plain dictionaries straight from the API.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlparse

import httpx

from dependabot_server.errors import ProviderError

logger = logging.getLogger(__name__)

API_VERSION = "7.0"
DEFAULT_TIMEOUT = 30.0

CONFIGURATION_FILE_PATHS = (
    ".github/dependabot.yml",
    ".github/dependabot.yaml",
)

SUBSCRIPTION_EVENT_TYPES = (
    ("git.push", "1.0"),
    ("git.pullrequest.updated", "1.0"),
    ("git.pullrequest.merged", "1.0"),
    ("ms.vss-code.git-pullrequest-comment-event", "2.0"),
)


@dataclass(frozen=True)
class AzureDevOpsProjectUrl:
    """Components of a project URL on ``dev.azure.com`` or ``*.visualstudio.com``."""

    url: str
    scheme: str
    hostname: str
    port: int | None
    organization_name: str
    organization_url: str
    project_id_or_name: str

    @classmethod
    def parse(cls, value: str) -> "AzureDevOpsProjectUrl":
        parsed = urlparse(value)
        hostname = parsed.hostname or ""
        port = parsed.port
        if (parsed.scheme, port) in (("http", 80), ("https", 443)):
            port = None
        netloc = hostname if port is None else f"{hostname}:{port}"

        path = parsed.path.replace("_apis/projects/", "")
        segments = path.split("/")
        if hostname.lower() == "dev.azure.com":
            if len(segments) < 3 or not segments[1] or not segments[2]:
                raise ValueError(f"Error parsing: '{value}' into components")
            organization = segments[1]
            project = segments[2]
            organization_url = f"{parsed.scheme}://{netloc}/{organization}/"
        elif hostname.lower().endswith("visualstudio.com"):
            if len(segments) < 2 or not segments[1]:
                raise ValueError(f"Error parsing: '{value}' into components")
            organization = hostname.split(".")[0]
            project = segments[1]
            organization_url = f"{parsed.scheme}://{netloc}/"
        else:
            raise ValueError(f"Error parsing: '{value}' into components")

        return cls(
            url=value,
            scheme=parsed.scheme,
            hostname=hostname,
            port=port,
            organization_name=organization,
            organization_url=organization_url,
            project_id_or_name=project,
        )

    @property
    def uses_project_id(self) -> bool:
        try:
            uuid.UUID(self.project_id_or_name)
        except ValueError:
            return False
        return True

    @property
    def project_id(self) -> str | None:
        return self.project_id_or_name if self.uses_project_id else None

    @property
    def project_name(self) -> str | None:
        return None if self.uses_project_id else self.project_id_or_name

    @property
    def api_endpoint(self) -> str:
        netloc = self.hostname if self.port is None else f"{self.hostname}:{self.port}"
        return f"https://{netloc}/"

    def make_repository_slug(self, name: str, project_name: str | None = None) -> str:
        """``{org}/{project}/_git/{name}``; URLs holding a project id need the name passed in."""
        project = project_name or self.project_name or self.project_id_or_name
        return f"{self.organization_name}/{project}/_git/{name}"


@dataclass
class ConfigurationFile:
    path: str
    content: str
    commit_id: str | None


def make_tfs_publisher_inputs(event_type: str, project_id: str) -> dict[str, str]:
    inputs = {"projectId": project_id}
    if event_type == "git.pullrequest.updated":
        inputs["notificationType"] = "StatusUpdateNotification"
    if event_type == "git.pullrequest.merged":
        inputs["mergeResult"] = "Conflicts"
    return inputs


def make_webhooks_consumer_inputs(project_id: str, password: str, webhook_url: str) -> dict[str, str]:
    return {
        "detailedMessagesToSend": "none",
        "messagesToSend": "none",
        "url": webhook_url,
        "basicAuthUsername": project_id,
        "basicAuthPassword": password,
    }


def _same_url(left: str, right: str) -> bool:
    a, b = urlparse(left), urlparse(right)
    return (a.scheme, a.hostname, a.port, a.path.rstrip("/")) == (b.scheme, b.hostname, b.port, b.path.rstrip("/"))


class AzureDevOpsClient:
    """Async client for a single project.

    Args:
        project_url: The project URL as stored on the project.
        token: Personal access token, sent as Basic ``:{token}``.
        transport: Optional httpx transport (tests pass a ``MockTransport``).
    """

    def __init__(self, project_url: str, token: str, *, transport: httpx.AsyncBaseTransport | None = None):
        self.url = AzureDevOpsProjectUrl.parse(project_url)
        self._auth = httpx.BasicAuth("", token)
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.url.organization_url,
            auth=self._auth,
            headers={"Accept": "application/json"},
            timeout=DEFAULT_TIMEOUT,
            transport=self._transport,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        params = {"api-version": API_VERSION, **kwargs.pop("params", {})}
        async with self._client() as client:
            response = await client.request(method, path, params=params, **kwargs)
        return response

    @staticmethod
    def _check(response: httpx.Response) -> None:
        if response.is_success:
            return
        raise ProviderError(
            f"Azure DevOps returned {response.status_code} for {response.request.method} {response.request.url.path}",
            status_code=response.status_code,
        )

    async def _json(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        response = await self._request(method, path, **kwargs)
        self._check(response)
        return response.json()

    async def get_project(self) -> dict[str, Any]:
        return await self._json("GET", f"_apis/projects/{self.url.project_id_or_name}")

    async def list_repositories(self) -> list[dict[str, Any]]:
        data = await self._json("GET", f"{self.url.project_id_or_name}/_apis/git/repositories")
        return data.get("value", [])

    async def get_repository(self, repository_id_or_name: str) -> dict[str, Any]:
        return await self._json("GET", f"{self.url.project_id_or_name}/_apis/git/repositories/{repository_id_or_name}")

    async def get_connection_data(self) -> dict[str, Any]:
        return await self._json("GET", "_apis/connectionData")

    async def get_configuration_file(self, repository_id_or_name: str) -> ConfigurationFile | None:
        """First existing configuration file in the repository's default branch, or None."""
        for path in CONFIGURATION_FILE_PATHS:
            response = await self._request(
                "GET",
                f"{self.url.project_id_or_name}/_apis/git/repositories/{repository_id_or_name}/items",
                params={"path": path, "includeContent": "true", "latestProcessedChange": "true"},
            )
            if response.status_code == 404:
                continue
            if response.status_code in (401, 403):
                raise ProviderError(
                    f"Not authorized to read '{path}' in repository '{repository_id_or_name}'",
                    status_code=response.status_code,
                )
            self._check(response)

            item = response.json()
            commit_id = item.get("commitId") or (item.get("latestProcessedChange") or {}).get("commitId")
            return ConfigurationFile(path=path, content=item.get("content") or "", commit_id=commit_id)

        return None

    async def create_or_update_subscriptions(self, project_id: str, password: str, webhook_url: str) -> list[str]:
        """Ensure one webhook subscription per event type; returns their ids."""
        provider_project_id = (await self.get_project())["id"]
        query = {
            "publisherId": "tfs",
            "publisherInputFilters": [
                {"conditions": [{"inputId": "projectId", "operator": "equals", "inputValue": provider_project_id}]}
            ],
            "consumerId": "webHooks",
            "consumerActionId": "httpRequest",
        }
        existing = (await self._json("POST", "_apis/hooks/subscriptionsquery", json=query)).get("results") or []

        ids: list[str] = []
        for event_type, resource_version in SUBSCRIPTION_EVENT_TYPES:
            body = {
                "eventType": event_type,
                "resourceVersion": resource_version,
                "publisherId": "tfs",
                "publisherInputs": make_tfs_publisher_inputs(event_type, provider_project_id),
                "consumerId": "webHooks",
                "consumerActionId": "httpRequest",
                "consumerInputs": make_webhooks_consumer_inputs(project_id, password, webhook_url),
            }
            match = next(
                (
                    sub
                    for sub in existing
                    if sub.get("eventType") == event_type
                    and _same_url((sub.get("consumerInputs") or {}).get("url", ""), webhook_url)
                ),
                None,
            )
            if match is not None:
                saved = await self._json("PUT", f"_apis/hooks/subscriptions/{match['id']}", json={**body, "id": match["id"]})
                logger.debug("Updated %s subscription %s", event_type, match["id"])
            else:
                saved = await self._json("POST", "_apis/hooks/subscriptions", json=body)
                logger.debug("Created %s subscription %s", event_type, saved.get("id"))
            ids.append(saved["id"])

        return ids
