"""Azure Container Apps jobs backend (ARM REST API).

Each update job becomes a manually triggered Container Apps job holding both
containers. Containers in one replica share a network namespace, so the
updater reaches its proxy on localhost.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any

import httpx

from dependabot_server.config import Settings
from dependabot_server.enums import UpdateJobPlatform
from dependabot_server.enums import UpdateJobStatus
from dependabot_server.errors import BackendError
from dependabot_server.errors import ConfigurationError
from dependabot_server.models import UpdateJob
from dependabot_server.services.backends.azure_identity import ManagedIdentityCredential
from dependabot_server.services.backends.base import ContainerSpec
from dependabot_server.services.backends.base import JobBackend
from dependabot_server.services.backends.base import JobSpec
from dependabot_server.services.backends.base import JobState
from dependabot_server.services.backends.registry import RegistryResolver

logger = logging.getLogger(__name__)

ARM_ENDPOINT = "https://management.azure.com"
ARM_RESOURCE = "https://management.azure.com/"
LOG_ANALYTICS_ENDPOINT = "https://api.loganalytics.io"
LOG_ANALYTICS_RESOURCE = "https://api.loganalytics.io"
API_VERSION = "2023-05-01"

VOLUME_NAME = "working-dir"
REPLICA_TIMEOUT_SECONDS = 3600
NON_TERMINAL_STATUSES = ("Running", "Processing")
PROVISIONING_DONE = ("Succeeded", "Failed", "Canceled")

LOGS_QUERY = (
    "ContainerAppConsoleLogs_CL | where ContainerJobName_s == '{name}' "
    "| order by _timestamp_d asc | project Log_s"
)

REQUIRED_SETTINGS = (
    "azure_subscription_id",
    "azure_resource_group",
    "azure_location",
    "azure_app_environment_id",
    "azure_file_share_storage_name",
)


def map_execution_status(status: str | None) -> UpdateJobStatus | None:
    if status == "Succeeded":
        return UpdateJobStatus.SUCCEEDED
    if status in NON_TERMINAL_STATUSES:
        return None
    return UpdateJobStatus.FAILED


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class ContainerAppsBackend(JobBackend):
    platform = UpdateJobPlatform.CONTAINER_APPS

    def __init__(
        self,
        settings: Settings,
        credential: ManagedIdentityCredential | None = None,
        resolver: RegistryResolver | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        poll_interval: float = 2.0,
        poll_attempts: int = 90,
    ):
        missing = [name for name in REQUIRED_SETTINGS if not getattr(settings, name)]
        if missing:
            raise ConfigurationError(f"Container Apps backend requires settings: {', '.join(missing)}")

        self.settings = settings
        self.credential = credential or ManagedIdentityCredential(settings.azure_managed_identity_client_id)
        self.resolver = resolver or RegistryResolver()
        self._transport = transport
        self.poll_interval = poll_interval
        self.poll_attempts = poll_attempts

    def _job_path(self, name: str) -> str:
        return (
            f"/subscriptions/{self.settings.azure_subscription_id}"
            f"/resourceGroups/{self.settings.azure_resource_group}"
            f"/providers/Microsoft.App/jobs/{name}"
        )

    async def _arm(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        token = await self.credential.get_token(ARM_RESOURCE)
        async with httpx.AsyncClient(
            base_url=ARM_ENDPOINT,
            headers={"Authorization": f"Bearer {token}"},
            timeout=30.0,
            transport=self._transport,
        ) as client:
            return await client.request(method, path, params={"api-version": API_VERSION}, **kwargs)

    @staticmethod
    def _check(response: httpx.Response) -> None:
        if response.is_success:
            return
        raise BackendError(
            f"Azure Resource Manager returned {response.status_code} for "
            f"{response.request.method} {response.request.url.path}: {response.text[:500]}"
        )

    async def _get_job(self, name: str) -> dict[str, Any] | None:
        response = await self._arm("GET", self._job_path(name))
        if response.status_code == 404:
            return None
        self._check(response)
        return response.json()

    async def exists(self, name: str) -> bool:
        return await self._get_job(name) is not None

    def proxy_address(self, job: UpdateJob) -> str:
        return "127.0.0.1"

    async def resolve_image(self, image: str) -> str:
        return await self.resolver.resolve(image)

    def _container(self, spec: ContainerSpec) -> dict[str, Any]:
        return {
            "name": spec.name,
            "image": spec.image,
            "command": spec.command,
            "env": [{"name": k, "value": v} for k, v in spec.env.items()],
            "resources": {"cpu": spec.cpu, "memory": f"{spec.memory}Gi"},
            "volumeMounts": [{"volumeName": VOLUME_NAME, "mountPath": self.settings.container_mount_root}],
        }

    def build_resource(self, spec: JobSpec) -> dict[str, Any]:
        """ARM body for a manually triggered job running the proxy and updater."""
        # Job files are written to the shared work directory, so the share is always mounted
        volume = {
            "name": VOLUME_NAME,
            "storageType": "AzureFile",
            "storageName": self.settings.azure_file_share_storage_name,
        }

        return {
            "location": self.settings.azure_location,
            "tags": {"purpose": "dependabot", **spec.labels},
            "properties": {
                "environmentId": self.settings.azure_app_environment_id,
                "configuration": {
                    "triggerType": "Manual",
                    "replicaTimeout": REPLICA_TIMEOUT_SECONDS,
                    "replicaRetryLimit": 1,
                    "manualTriggerConfig": {"parallelism": 1, "replicaCompletionCount": 1},
                },
                "template": {
                    "containers": [self._container(spec.proxy), self._container(spec.updater)],
                    "volumes": [volume],
                },
            },
        }

    async def _wait_provisioned(self, name: str) -> None:
        for _ in range(self.poll_attempts):
            resource = await self._get_job(name)
            state = ((resource or {}).get("properties") or {}).get("provisioningState")
            if state in PROVISIONING_DONE:
                if state != "Succeeded":
                    raise BackendError(f"Provisioning of Container Apps job {name} ended as {state}")
                return
            await asyncio.sleep(self.poll_interval)
        raise BackendError(f"Timed out waiting for Container Apps job {name} to provision")

    async def create(self, spec: JobSpec) -> None:
        response = await self._arm("PUT", self._job_path(spec.name), json=self.build_resource(spec))
        self._check(response)
        await self._wait_provisioned(spec.name)
        logger.info("Created Container Apps job %s", spec.name)

        response = await self._arm("POST", f"{self._job_path(spec.name)}/start")
        self._check(response)
        logger.info("Started Container Apps job %s", spec.name)

    async def delete(self, job: UpdateJob) -> None:
        response = await self._arm("DELETE", self._job_path(job.resource_name))
        if response.status_code == 404:
            return
        self._check(response)
        logger.info("Deleted Container Apps job %s", job.resource_name)

    async def get_state(self, job: UpdateJob) -> JobState | None:
        response = await self._arm("GET", f"{self._job_path(job.resource_name)}/executions")
        if response.status_code == 404:
            return None
        self._check(response)

        executions = response.json().get("value") or []
        if not executions:
            return None
        properties = executions[0].get("properties") or {}
        status = map_execution_status(properties.get("status"))
        if status is None:
            return None
        return JobState(
            status=status,
            start=_parse_time(properties.get("startTime")),
            end=_parse_time(properties.get("endTime")),
        )

    async def get_logs(self, job: UpdateJob) -> str | None:
        workspace = self.settings.azure_log_analytics_workspace_id
        if not workspace:
            logger.warning("No Log Analytics workspace configured; logs for %s are unavailable", job.id)
            return None

        token = await self.credential.get_token(LOG_ANALYTICS_RESOURCE)
        async with httpx.AsyncClient(
            base_url=LOG_ANALYTICS_ENDPOINT,
            headers={"Authorization": f"Bearer {token}"},
            timeout=60.0,
            transport=self._transport,
        ) as client:
            response = await client.post(
                f"/v1/workspaces/{workspace}/query",
                json={"query": LOGS_QUERY.format(name=job.resource_name)},
            )
        self._check(response)

        lines = []
        for table in response.json().get("tables") or []:
            for row in table.get("rows") or []:
                if row and row[0] is not None:
                    lines.append(str(row[0]))
        return "\n".join(lines)
