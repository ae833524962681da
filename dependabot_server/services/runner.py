"""Update job runner: materialize a job's files and start it on the backend.

Per job, the work directory holds::

    proxy/{id}/config.json   credentials and CA for the proxy
    jobs/{id}/job.json       job definition for the updater
    jobs/{id}/output.json    updater output
    jobs/{id}/repo/          checked out repository contents

Both containers mount the work directory at ``container_mount_root``.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import shutil

from dependabot_server.config import Settings
from dependabot_server.enums import UpdateJobStatus
from dependabot_server.models import Project
from dependabot_server.models import Repository
from dependabot_server.models import UpdateJob
from dependabot_server.schemas import RepositoryUpdate
from dependabot_server.services.azure_devops import AzureDevOpsProjectUrl
from dependabot_server.services.backends.base import PROXY_PORT
from dependabot_server.services.backends.base import ContainerSpec
from dependabot_server.services.backends.base import JobBackend
from dependabot_server.services.backends.base import JobSpec
from dependabot_server.services.backends.base import JobState
from dependabot_server.services.certificates import CERT_FILE_NAME
from dependabot_server.services.certificates import CertificateManager
from dependabot_server.services.config_files import build_job_definition
from dependabot_server.services.config_files import build_proxy_config
from dependabot_server.services.config_files import write_json
from dependabot_server.services.credentials import make_credentials
from dependabot_server.services.features import FeatureFlags

logger = logging.getLogger(__name__)

PROXY_CPU = 0.25
PROXY_MEMORY = 0.5
SYSTEM_CA_PATH = "/usr/local/share/ca-certificates/dbot-ca.crt"


def container_path(local_path: str, work_directory: str, mount_root: str) -> str:
    """Map a path under the local work directory to where containers see it."""
    relative = os.path.relpath(os.path.abspath(local_path), os.path.abspath(work_directory))
    if relative == os.curdir:
        return mount_root
    if relative.startswith(os.pardir):
        raise ValueError(f"'{local_path}' is outside the work directory '{work_directory}'")
    return mount_root.rstrip("/") + "/" + relative.replace(os.sep, "/")


def install_ca_script(cert_path: str) -> str:
    return f"cp {shlex.quote(cert_path)} {SYSTEM_CA_PATH} && update-ca-certificates"


def updater_command(cert_path: str) -> list[str]:
    script = f"{install_ca_script(cert_path)} && bin/run fetch_files && bin/run update_files"
    return ["/bin/sh", "-c", script]


def proxy_command(cert_path: str, config_path: str) -> list[str]:
    script = f"cp {shlex.quote(config_path)} /config.json && {install_ca_script(cert_path)} && /update-job-proxy"
    return ["/bin/sh", "-c", script]


class UpdateRunner:
    def __init__(
        self,
        backend: JobBackend,
        certificates: CertificateManager,
        settings: Settings,
        features: FeatureFlags | None = None,
    ):
        self.backend = backend
        self.certificates = certificates
        self.settings = settings
        self.features = features or FeatureFlags(settings.debug_targets)

    def job_directory(self, job: UpdateJob) -> str:
        return os.path.join(self.settings.jobs_directory, job.id)

    def proxy_directory(self, job: UpdateJob) -> str:
        return os.path.join(self.settings.proxy_directory, job.id)

    def _container_path(self, local_path: str) -> str:
        return container_path(local_path, self.settings.work_directory, self.settings.container_mount_root)

    def proxy_image(self) -> str:
        return f"{self.settings.proxy_image}:{self.settings.proxy_image_tag}"

    def updater_image(self, ecosystem: str) -> str:
        return f"{self.settings.updater_image.format(ecosystem=ecosystem)}:{self.settings.updater_image_tag}"

    async def create(self, project: Project, repository: Repository, update: RepositoryUpdate, job: UpdateJob) -> None:
        if await self.backend.exists(job.resource_name):
            logger.info("Job %s already has resources on %s; nothing to create", job.id, self.backend.platform.value)
            return

        ecosystem = job.package_ecosystem
        debug = self.features.is_debug_enabled(project.id, ecosystem, project_debug=bool(project.debug))
        url = AzureDevOpsProjectUrl.parse(project.url)

        secrets = {**(project.secrets or {}), "DEFAULT_TOKEN": project.token}
        all_registries = repository.registries
        registries = [all_registries[name] for name in update.registries or []]
        credentials = make_credentials(
            registries,
            secrets,
            hostname=url.hostname,
            token=project.token,
            github_token=project.github_token or self.settings.github_token,
        )

        job_dir = self.job_directory(job)
        proxy_dir = self.proxy_directory(job)
        proxy_config_path = os.path.join(proxy_dir, "config.json")
        job_definition_path = os.path.join(job_dir, "job.json")
        output_path = os.path.join(job_dir, "output.json")
        repo_contents_path = os.path.join(job_dir, "repo")

        definition = build_job_definition(
            update=update,
            credentials=credentials,
            api_endpoint=url.api_endpoint,
            hostname=url.hostname,
            repository_slug=job.repository_slug,
            created=job.created,
            experiments=project.experiments or self.settings.default_experiments,
            repo_private=project.private,
            repo_contents_path=self._container_path(repo_contents_path),
            debug=debug,
        )
        proxy_config = build_proxy_config(credentials, self.certificates.get())

        # Both files exist before any container that reads them
        await asyncio.to_thread(write_json, proxy_config_path, proxy_config)
        await asyncio.to_thread(write_json, job_definition_path, definition)

        proxy_image = job.proxy_image = await self.backend.resolve_image(self.proxy_image())
        updater_image = job.updater_image = await self.backend.resolve_image(self.updater_image(ecosystem))

        cert_path = self._container_path(os.path.join(self.settings.certs_directory, CERT_FILE_NAME))
        proxy_url = f"http://{self.backend.proxy_address(job)}:{PROXY_PORT}"
        spec = JobSpec(
            name=job.resource_name,
            proxy=ContainerSpec(
                name=job.proxy_resource_name,
                image=proxy_image,
                cpu=PROXY_CPU,
                memory=PROXY_MEMORY,
                command=proxy_command(cert_path, self._container_path(proxy_config_path)),
                env={
                    "JOB_ID": job.id,
                    "PROXY_CACHE": "true",
                    "LOG_RESPONSE_BODY_ON_AUTH_FAILURE": "true",
                },
            ),
            updater=ContainerSpec(
                name=job.resource_name,
                image=updater_image,
                cpu=job.cpu,
                memory=job.memory,
                command=updater_command(cert_path),
                env={
                    "DEPENDABOT_JOB_ID": job.id,
                    "DEPENDABOT_JOB_TOKEN": job.auth_key,
                    "DEPENDABOT_JOB_PATH": self._container_path(job_definition_path),
                    "DEPENDABOT_OUTPUT_PATH": self._container_path(output_path),
                    "DEPENDABOT_REPO_CONTENTS_PATH": self._container_path(repo_contents_path),
                    "DEPENDABOT_API_URL": self.settings.jobs_api_url,
                    "DEPENDABOT_DEBUG": "true" if debug else "false",
                    "http_proxy": proxy_url,
                    "https_proxy": proxy_url,
                    "HTTP_PROXY": proxy_url,
                    "HTTPS_PROXY": proxy_url,
                },
            ),
            labels={
                "purpose": "dependabot",
                "ecosystem": ecosystem,
                "repository": job.repository_slug or repository.slug or "",
            },
        )

        await self.backend.create(spec)
        job.platform = self.backend.platform
        job.status = UpdateJobStatus.RUNNING
        logger.info("Started job %s for %s (%s)", job.id, job.repository_slug, ecosystem)

    async def delete(self, job: UpdateJob) -> None:
        await self.backend.delete(job)

    async def get_state(self, job: UpdateJob) -> JobState | None:
        """Terminal state of the job, or None while it runs.

        A terminal read removes the job's local files; later reads still
        report the state but find nothing left to remove.
        """
        state = await self.backend.get_state(job)
        if state is None or not state.status.is_terminal:
            return None

        await asyncio.to_thread(self._remove_job_files, job)
        return state

    def _remove_job_files(self, job: UpdateJob) -> None:
        for directory in (self.job_directory(job), self.proxy_directory(job)):
            shutil.rmtree(directory, ignore_errors=True)

    async def get_logs(self, job: UpdateJob) -> str | None:
        return await self.backend.get_logs(job)
