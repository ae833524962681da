"""Docker backend tests against a mocked docker client."""
from __future__ import annotations

from datetime import datetime
from datetime import timezone
from unittest.mock import MagicMock

import docker
import pytest

from dependabot_server.enums import UpdateJobStatus
from dependabot_server.errors import ConfigurationError
from dependabot_server.services.backends.base import ContainerSpec
from dependabot_server.services.backends.base import JobSpec
from dependabot_server.services.backends.docker_compose import DockerComposeBackend
from dependabot_server.services.backends.docker_compose import map_container_state
from dependabot_server.services.backends.docker_compose import parse_docker_time
from tests.helpers import make_job


def make_spec() -> JobSpec:
    return JobSpec(
        name="dependabot-job-1",
        proxy=ContainerSpec("dependabot-job-1-proxy", "proxy@sha256:1", 0.25, 0.5, ["/bin/sh"], {"JOB_ID": "job-1"}),
        updater=ContainerSpec("dependabot-job-1", "updater@sha256:2", 1.0, 2.0, ["/bin/sh"], {"A": "b"}),
        labels={"purpose": "dependabot"},
    )


@pytest.fixture()
def client():
    client = MagicMock()
    networks = {}
    for suffix in ("server", "proxy", "jobs"):
        network = MagicMock()
        network.name = f"dependabot_{suffix}"
        networks[network.name] = network
    client.networks.get.side_effect = lambda name: networks[name]
    client.networks_by_name = networks
    return client


@pytest.fixture()
def backend(settings, client):
    return DockerComposeBackend(settings, client=client)


def test_parse_docker_time():
    assert parse_docker_time("0001-01-01T00:00:00Z") is None
    assert parse_docker_time(None) is None
    assert parse_docker_time("2024-05-01T10:00:00.123456789Z") == datetime(
        2024, 5, 1, 10, 0, 0, 123456, tzinfo=timezone.utc
    )


@pytest.mark.parametrize(
    "state, expected",
    [
        ({"Status": "running"}, None),
        ({"Status": "created"}, None),
        ({"Status": "exited", "ExitCode": 0}, UpdateJobStatus.SUCCEEDED),
        ({"Status": "exited", "ExitCode": 1}, UpdateJobStatus.FAILED),
        ({"Status": "dead"}, UpdateJobStatus.FAILED),
    ],
)
def test_map_container_state(state, expected):
    assert map_container_state(state) == expected


@pytest.mark.asyncio
async def test_proxy_joins_all_networks_and_updater_only_jobs(backend, client):
    proxy, updater = MagicMock(), MagicMock()
    client.containers.create.side_effect = [proxy, updater]

    await backend.create(make_spec())

    proxy_call, updater_call = client.containers.create.call_args_list
    assert proxy_call.kwargs["network"] == "dependabot_server"
    assert updater_call.kwargs["network"] == "dependabot_jobs"
    assert updater_call.kwargs["nano_cpus"] == 1_000_000_000
    assert updater_call.kwargs["mem_limit"] == 2 * 1024**3
    client.networks_by_name["dependabot_proxy"].connect.assert_called_once_with(proxy)
    client.networks_by_name["dependabot_jobs"].connect.assert_called_once_with(proxy)
    proxy.start.assert_called_once()
    updater.start.assert_called_once()


@pytest.mark.asyncio
async def test_missing_network_is_a_configuration_error(backend, client):
    client.networks.get.side_effect = docker.errors.NotFound("no such network")
    with pytest.raises(ConfigurationError):
        await backend.create(make_spec())
    client.containers.create.assert_not_called()


@pytest.mark.asyncio
async def test_delete_ignores_missing_containers(backend, client):
    existing = MagicMock()
    client.containers.get.side_effect = [existing, docker.errors.NotFound("gone")]

    await backend.delete(make_job())

    existing.remove.assert_called_once_with(force=True)


@pytest.mark.asyncio
async def test_state_of_finished_container(backend, client):
    container = MagicMock()
    container.attrs = {
        "State": {
            "Status": "exited",
            "ExitCode": 0,
            "StartedAt": "2024-05-01T10:00:00Z",
            "FinishedAt": "2024-05-01T10:05:00.5Z",
        }
    }
    client.containers.get.return_value = container

    state = await backend.get_state(make_job())

    assert state.status == UpdateJobStatus.SUCCEEDED
    assert state.start == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
    assert state.end == datetime(2024, 5, 1, 10, 5, 0, 500000, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_logs_fall_back_to_stderr(backend, client):
    container = MagicMock()
    container.logs.side_effect = lambda stdout, stderr: b"" if stdout else b"stderr output"
    client.containers.get.return_value = container

    assert await backend.get_logs(make_job()) == "stderr output"


@pytest.mark.asyncio
async def test_resolve_image_pulls_and_pins_digest(backend, client):
    client.images.get.side_effect = docker.errors.ImageNotFound("missing")
    pulled = MagicMock()
    pulled.attrs = {"RepoDigests": ["ghcr.io/dependabot/updater@sha256:abc"]}
    client.images.pull.return_value = pulled

    assert await backend.resolve_image("ghcr.io/dependabot/updater:latest") == "ghcr.io/dependabot/updater@sha256:abc"
    client.images.pull.assert_called_once_with("ghcr.io/dependabot/updater", tag="latest")


@pytest.mark.asyncio
async def test_exists_matches_exact_names(backend, client):
    other = MagicMock()
    other.name = "dependabot-job-10"
    client.containers.list.return_value = [other]
    assert await backend.exists("dependabot-job-1") is False


class FakeContainer:
    def __init__(self, client, name, fail_start=False):
        self.client = client
        self.name = name
        self.fail_start = fail_start

    def start(self):
        if self.fail_start:
            raise docker.errors.APIError("start failed")

    def remove(self, force=False):
        self.client.names.pop(self.name, None)


class NameCheckingContainers:
    """Container collection that rejects duplicate names like the daemon does."""

    def __init__(self, client):
        self.client = client
        self.fail_start_for: set[str] = set()

    def create(self, name, **kwargs):
        if name in self.client.names:
            raise docker.errors.APIError(f"409 Conflict: name {name} already in use")
        container = FakeContainer(self.client, name, fail_start=name in self.fail_start_for)
        self.client.names[name] = container
        return container

    def get(self, name):
        if name not in self.client.names:
            raise docker.errors.NotFound(name)
        return self.client.names[name]

    def list(self, all=False, filters=None):
        return [c for c in self.client.names.values() if filters["name"] in c.name]


@pytest.fixture()
def strict_client(client):
    client.names = {}
    client.containers = NameCheckingContainers(client)
    return client


@pytest.mark.asyncio
async def test_failed_updater_start_leaves_nothing_behind(settings, strict_client):
    backend = DockerComposeBackend(settings, client=strict_client)
    strict_client.containers.fail_start_for.add("dependabot-job-1")

    with pytest.raises(docker.errors.APIError):
        await backend.create(make_spec())

    assert strict_client.names == {}
    assert await backend.exists("dependabot-job-1") is False

    strict_client.containers.fail_start_for.clear()
    await backend.create(make_spec())
    assert sorted(strict_client.names) == ["dependabot-job-1", "dependabot-job-1-proxy"]


@pytest.mark.asyncio
async def test_create_replaces_an_orphaned_proxy(settings, strict_client):
    backend = DockerComposeBackend(settings, client=strict_client)
    strict_client.containers.create(name="dependabot-job-1-proxy")

    await backend.create(make_spec())

    assert sorted(strict_client.names) == ["dependabot-job-1", "dependabot-job-1-proxy"]
