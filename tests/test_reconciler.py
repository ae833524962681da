from __future__ import annotations

from datetime import datetime
from datetime import timedelta
from datetime import timezone

import pytest

from dependabot_server.enums import UpdateJobStatus
from dependabot_server.enums import UpdateJobTrigger
from dependabot_server.events import EventType
from dependabot_server.models import UpdateJob
from dependabot_server.schemas import RepositoryUpdate
from dependabot_server.services.reconciler import BackgroundReconciler
from dependabot_server.services.reconciler import is_schedule_missed
from dependabot_server.services.scheduler import UpdateScheduler
from tests.helpers import make_job
from tests.helpers import make_project
from tests.helpers import make_repository

REFERENCE = datetime(2023, 1, 24, 5, 0, tzinfo=timezone.utc)

TWO_DAILY_UPDATES = """
version: 2
updates:
  - package-ecosystem: "npm"
    directory: "/"
    schedule:
      interval: "daily"
      time: "03:45"
  - package-ecosystem: "npm"
    directories: ["/legacy"]
    schedule:
      interval: "daily"
      time: "03:30"
"""


def daily(time: str, latest_update: datetime | None) -> RepositoryUpdate:
    return RepositoryUpdate.model_validate(
        {
            "package-ecosystem": "npm",
            "directory": "/",
            "schedule": {"interval": "daily", "time": time},
            "latest-update": latest_update,
        }
    )


@pytest.fixture()
def reconciler(settings, bus, session_factory):
    return BackgroundReconciler(settings, bus, session_factory)


def store_repository(session_factory, latest0, latest1):
    repository = make_repository(content=TWO_DAILY_UPDATES)
    updates = repository.updates
    updates[0].latest_update = latest0
    updates[1].latest_update = latest1
    repository.updates = updates
    with session_factory() as db:
        db.add(make_project())
        db.add(repository)
        db.commit()


def test_never_run_update_is_missed():
    assert is_schedule_missed(daily("03:45", None), REFERENCE, timedelta(hours=12)) is True


def test_recent_run_is_not_missed():
    last = REFERENCE - timedelta(minutes=15)
    assert is_schedule_missed(daily("03:45", last), REFERENCE, timedelta(hours=12)) is False


def test_daily_grace_suppresses_runs_due_soon():
    # Last ran Monday 03:30, so Tuesday 03:30 was missed; the next tick is 22.5 hours away
    last = datetime(2023, 1, 23, 3, 30, tzinfo=timezone.utc)
    assert is_schedule_missed(daily("03:30", last), REFERENCE, timedelta(hours=12)) is True
    assert is_schedule_missed(daily("03:30", last), REFERENCE, timedelta(hours=23)) is False


@pytest.mark.asyncio
async def test_missed_schedule_is_triggered_once(reconciler, session_factory, bus):
    store_repository(
        session_factory,
        datetime(2023, 1, 24, 3, 45, tzinfo=timezone.utc),
        datetime(2023, 1, 23, 3, 30, tzinfo=timezone.utc),
    )

    assert await reconciler.check_missed_schedules(REFERENCE) == 1

    (event,) = bus.of_type(EventType.TRIGGER_UPDATE_JOBS)
    assert event["repository_id"] == "r1"
    assert event["repository_update_id"] == 1
    assert event["trigger"] == UpdateJobTrigger.MISSED_SCHEDULE.value


@pytest.mark.asyncio
async def test_update_that_never_ran_is_triggered(reconciler, session_factory, bus):
    store_repository(session_factory, datetime(2023, 1, 24, 3, 45, tzinfo=timezone.utc), None)

    assert await reconciler.check_missed_schedules(REFERENCE) == 1
    assert bus.of_type(EventType.TRIGGER_UPDATE_JOBS)[0]["repository_update_id"] == 1


@pytest.mark.asyncio
async def test_no_missed_schedule(reconciler, session_factory, bus):
    store_repository(
        session_factory,
        datetime(2023, 1, 24, 3, 45, tzinfo=timezone.utc),
        datetime(2023, 1, 24, 3, 30, tzinfo=timezone.utc),
    )

    assert await reconciler.check_missed_schedules(REFERENCE) == 0
    assert bus.published == []


@pytest.mark.asyncio
async def test_cleanup_checks_stuck_jobs_only_after_grace(reconciler, session_factory, bus):
    now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    with session_factory() as db:
        db.add(make_job(id="job-old", created=now - timedelta(minutes=20), status=UpdateJobStatus.RUNNING))
        db.add(make_job(id="job-new", created=now - timedelta(minutes=5), status=UpdateJobStatus.RUNNING))
        db.add(make_job(id="job-done", created=now - timedelta(minutes=30), status=UpdateJobStatus.SUCCEEDED))
        db.commit()

    checked, deleted = await reconciler.cleanup(now)

    assert (checked, deleted) == (1, 0)
    assert bus.of_type(EventType.UPDATE_JOB_CHECK_STATE) == [{"job_id": "job-old"}]


@pytest.mark.asyncio
async def test_cleanup_deletes_jobs_past_retention(reconciler, session_factory):
    now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    with session_factory() as db:
        db.add(make_job(id="job-90", created=now - timedelta(days=90), status=UpdateJobStatus.SUCCEEDED))
        db.add(make_job(id="job-89", created=now - timedelta(days=89), status=UpdateJobStatus.FAILED))
        db.commit()

    _, deleted = await reconciler.cleanup(now)

    assert deleted == 1
    with session_factory() as db:
        assert [job.id for job in db.query(UpdateJob).all()] == ["job-89"]


@pytest.mark.asyncio
async def test_cleanup_deletes_in_capped_batches(reconciler, session_factory, settings):
    settings.cleanup_batch_size = 2
    now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    with session_factory() as db:
        for i in range(3):
            db.add(make_job(id=f"job-{i}", created=now - timedelta(days=100 + i), status=UpdateJobStatus.FAILED))
        db.commit()

    assert (await reconciler.cleanup(now))[1] == 2
    assert (await reconciler.cleanup(now))[1] == 1


@pytest.mark.asyncio
async def test_synchronize_requests_every_project_without_triggering(reconciler, session_factory, bus):
    with session_factory() as db:
        db.add(make_project(id="p1"))
        db.add(make_project(id="p2"))
        db.commit()

    assert await reconciler.synchronize() == 2
    events = bus.of_type(EventType.PROCESS_SYNCHRONIZATION)
    assert sorted(e["project_id"] for e in events) == ["p1", "p2"]
    assert all(e["trigger"] is False for e in events)


@pytest.mark.asyncio
async def test_register_adds_periodic_tasks(reconciler, bus):
    scheduler = UpdateScheduler(bus)
    reconciler.register(scheduler)
    ids = {job.id for job in scheduler.scheduler.get_jobs()}
    assert ids == {"reconciler_synchronization", "reconciler_missed_schedules", "reconciler_cleanup"}
