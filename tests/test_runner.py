from __future__ import annotations

import json
import os

import pytest
import pytest_asyncio

from dependabot_server.enums import UpdateJobPlatform
from dependabot_server.enums import UpdateJobStatus
from dependabot_server.services.backends.base import JobState
from dependabot_server.services.certificates import CertificateManager
from dependabot_server.services.runner import UpdateRunner
from dependabot_server.services.runner import container_path
from tests.helpers import END
from tests.helpers import START
from tests.helpers import FakeBackend
from tests.helpers import make_job
from tests.helpers import make_project
from tests.helpers import make_repository


@pytest_asyncio.fixture
async def runner(settings):
    certificates = CertificateManager(settings.certs_directory)
    await certificates.initialize()
    return UpdateRunner(FakeBackend(), certificates, settings)


def test_container_path_maps_into_the_mount(tmp_path):
    work = str(tmp_path / "work")
    assert container_path(os.path.join(work, "jobs", "job-1", "job.json"), work, "/mnt/dependabot") == (
        "/mnt/dependabot/jobs/job-1/job.json"
    )
    assert container_path(work, work, "/mnt/dependabot") == "/mnt/dependabot"
    with pytest.raises(ValueError):
        container_path(str(tmp_path / "elsewhere"), work, "/mnt/dependabot")


@pytest.mark.asyncio
async def test_create_writes_files_and_starts_both_containers(runner, settings):
    project = make_project()
    repository = make_repository()
    job = make_job()

    await runner.create(project, repository, repository.updates[0], job)

    assert job.status == UpdateJobStatus.RUNNING
    assert job.platform == UpdateJobPlatform.DOCKER_COMPOSE
    assert job.updater_image == "ghcr.io/dependabot/dependabot-updater-npm@sha256:abc"

    with open(os.path.join(settings.jobs_directory, "job-1", "job.json")) as f:
        definition = json.load(f)
    assert definition["job"]["package-manager"] == "npm_and_yarn"
    assert all("password" not in c for c in definition["job"]["credentials-metadata"])

    with open(os.path.join(settings.proxy_directory, "job-1", "config.json")) as f:
        proxy_config = json.load(f)
    assert proxy_config["all_credentials"][0]["password"] == "pat-token"
    assert proxy_config["ca"]["cert"].startswith("-----BEGIN CERTIFICATE-----")

    (spec,) = runner.backend.created
    assert spec.name == "dependabot-job-1"
    assert spec.proxy.name == "dependabot-job-1-proxy"
    assert spec.updater.env["DEPENDABOT_JOB_TOKEN"] == "k" * 32
    assert spec.updater.env["DEPENDABOT_API_URL"] == "http://server:8080"
    assert spec.updater.env["DEPENDABOT_JOB_PATH"] == "/mnt/dependabot/jobs/job-1/job.json"
    assert spec.updater.env["https_proxy"] == "http://dependabot-job-1-proxy:1080"
    assert spec.updater.command[-1].endswith("bin/run fetch_files && bin/run update_files")
    assert spec.labels["ecosystem"] == "npm"


@pytest.mark.asyncio
async def test_create_is_a_no_op_when_resources_exist(runner):
    runner.backend.existing.add("dependabot-job-1")
    job = make_job()

    await runner.create(make_project(), make_repository(), make_repository().updates[0], job)

    assert runner.backend.created == []
    assert job.status == UpdateJobStatus.SCHEDULED


@pytest.mark.asyncio
async def test_running_state_is_not_reported(runner):
    runner.backend.state = JobState(status=UpdateJobStatus.RUNNING, start=START)
    assert await runner.get_state(make_job()) is None


@pytest.mark.asyncio
async def test_terminal_read_removes_job_files_and_stays_readable(runner, settings):
    job = make_job()
    await runner.create(make_project(), make_repository(), make_repository().updates[0], job)
    runner.backend.state = JobState(status=UpdateJobStatus.SUCCEEDED, start=START, end=END)

    state = await runner.get_state(job)
    assert state.status == UpdateJobStatus.SUCCEEDED
    assert not os.path.exists(os.path.join(settings.jobs_directory, "job-1"))
    assert not os.path.exists(os.path.join(settings.proxy_directory, "job-1"))

    again = await runner.get_state(job)
    assert again.end == END
