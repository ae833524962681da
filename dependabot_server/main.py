"""Server entrypoint.

The lifespan brings components up in dependency order:
- database tables and the certificate authority
- the execution backend and the job runner
- event consumers, repository timers and reconciliation tasks
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from sqlalchemy import select
from sqlalchemy.engine import Engine

from dependabot_server.cache import JobOutputStore
from dependabot_server.config import Settings
from dependabot_server.config import settings as default_settings
from dependabot_server.db import SessionLocal
from dependabot_server.db import db_session
from dependabot_server.db import get_db
from dependabot_server.db import init_db
from dependabot_server.db import make_session_factory
from dependabot_server.events import EventBus
from dependabot_server.models import Project
from dependabot_server.models import Repository
from dependabot_server.routers import health
from dependabot_server.routers import update_jobs
from dependabot_server.routers import webhooks
from dependabot_server.services.backends import JobBackend
from dependabot_server.services.backends import create_backend
from dependabot_server.services.certificates import CertificateManager
from dependabot_server.services.consumers import EventConsumers
from dependabot_server.services.reconciler import BackgroundReconciler
from dependabot_server.services.runner import UpdateRunner
from dependabot_server.services.scheduler import UpdateScheduler
from dependabot_server.services.synchronizer import Synchronizer

# Load .env for local dev
load_dotenv()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stdout,
    )


logger = logging.getLogger(__name__)


async def _load_timers(scheduler: UpdateScheduler, session_factory) -> int:
    with db_session(session_factory) as db:
        repositories = list(db.scalars(select(Repository)).all())
    for repository in repositories:
        await scheduler.create_or_update(repository)
    return len(repositories)


async def _register_webhooks(synchronizer: Synchronizer, session_factory) -> None:
    with db_session(session_factory) as db:
        projects = list(db.scalars(select(Project)).all())
    for project in projects:
        try:
            await synchronizer.register_webhooks(project)
        except Exception:
            logger.exception("Failed to register webhooks for project %s", project.id)


@asynccontextmanager
async def lifespan(app: FastAPI):
    cfg: Settings = app.state.settings
    session_factory = app.state.session_factory
    bus: EventBus = app.state.bus

    init_db(session_factory.kw.get("bind"))

    certificates = CertificateManager(cfg.certs_directory)
    await certificates.initialize()

    backend: JobBackend = app.state.backend or create_backend(cfg)
    runner = UpdateRunner(backend, certificates, cfg)
    synchronizer = Synchronizer(cfg, bus, session_factory)
    scheduler = UpdateScheduler(bus, stop_timeout=cfg.scheduler_stop_timeout_seconds)
    reconciler = BackgroundReconciler(cfg, bus, session_factory)
    consumers = EventConsumers(cfg, bus, synchronizer, scheduler, runner, app.state.outputs, session_factory)

    consumers.register()
    scheduler.start()
    count = await _load_timers(scheduler, session_factory)
    logger.info("Loaded timers for %s repositories", count)
    reconciler.register(scheduler)
    await _register_webhooks(synchronizer, session_factory)

    app.state.scheduler = scheduler
    app.state.synchronizer = synchronizer
    logger.info("Server started on platform %s", backend.platform.value)
    try:
        yield
    finally:
        consumers.unregister()
        await scheduler.stop()
        await backend.close()
        logger.info("Server stopped")


def create_app(
    settings: Settings | None = None,
    engine: Engine | None = None,
    backend: JobBackend | None = None,
) -> FastAPI:
    cfg = settings or default_settings
    session_factory = make_session_factory(engine) if engine is not None else SessionLocal

    app = FastAPI(title="Dependabot Server", version="0.1.0", lifespan=lifespan)
    app.state.settings = cfg
    app.state.session_factory = session_factory
    app.state.backend = backend
    app.state.bus = EventBus()
    app.state.outputs = JobOutputStore()

    if engine is not None:

        def _get_db():
            db = session_factory()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = _get_db

    app.include_router(health.router)
    app.include_router(update_jobs.router)
    app.include_router(webhooks.router)
    return app
