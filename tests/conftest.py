from __future__ import annotations

import os

# Set required env vars before importing app code
os.environ.setdefault("DEPENDABOT_DATABASE_URL", "sqlite:///")
os.environ.setdefault("DEPENDABOT_PLATFORM", "docker_compose")

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402

from dependabot_server.config import Settings  # noqa: E402
from dependabot_server.db import Base  # noqa: E402
from dependabot_server.db import make_session_factory  # noqa: E402
from tests.helpers import RecordingEventBus  # noqa: E402
from tests.helpers import make_project  # noqa: E402
from tests.helpers import make_repository  # noqa: E402


@pytest.fixture()
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path}/test.db",
        work_directory=str(tmp_path / "work"),
        jobs_api_url="http://server:8080",
    )


@pytest.fixture()
def engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path}/test.db")
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture()
def bus():
    return RecordingEventBus()


@pytest.fixture()
def project(session_factory):
    project = make_project()
    with session_factory() as db:
        db.add(project)
        db.commit()
    return project


@pytest.fixture()
def repository(session_factory, project):
    repository = make_repository(project.id)
    with session_factory() as db:
        db.add(repository)
        db.commit()
    return repository
