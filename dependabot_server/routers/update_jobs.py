"""Callback API used by running updaters to report their operations."""

from __future__ import annotations

import hmac
import logging
from typing import Any

from fastapi import APIRouter
from fastapi import BackgroundTasks
from fastapi import Depends
from fastapi import Header
from fastapi import HTTPException
from fastapi import status
from pydantic import BaseModel
from pydantic import Field
from sqlalchemy.orm import Session

from dependabot_server.cache import JobOutputStore
from dependabot_server.db import get_db
from dependabot_server.events import EventBus
from dependabot_server.events import EventType
from dependabot_server.models import UpdateJob
from dependabot_server.routers.deps import get_bus
from dependabot_server.routers.deps import get_outputs
from dependabot_server.services.outputs import OPERATIONS

router = APIRouter(prefix="/update_jobs", tags=["update_jobs"])
logger = logging.getLogger(__name__)

MARK_AS_PROCESSED = "mark_as_processed"


class OperationRequest(BaseModel):
    data: dict[str, Any] = Field(default_factory=dict)


def require_job(
    id: str,
    authorization: str | None = Header(default=None),
    db: Session = Depends(get_db),
) -> UpdateJob:
    """The job named in the path, authenticated by its own auth key."""
    if not authorization or not authorization.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing job token")

    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        # The updater may send the bare token
        token = authorization.strip()

    job = db.get(UpdateJob, id)
    # Unknown jobs and wrong tokens are indistinguishable to the caller
    if job is None or not hmac.compare_digest(token.strip().encode(), job.auth_key.encode()):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid job token")
    if job.status.is_terminal:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Job is already {job.status.value} and accepts no more operations",
        )
    return job


@router.patch("/{id}/" + MARK_AS_PROCESSED)
async def mark_as_processed(
    body: OperationRequest,
    background_tasks: BackgroundTasks,
    job: UpdateJob = Depends(require_job),
    outputs: JobOutputStore = Depends(get_outputs),
    bus: EventBus = Depends(get_bus),
):
    await outputs.add(job.id, MARK_AS_PROCESSED, body.data)
    background_tasks.add_task(bus.publish, EventType.UPDATE_JOB_CHECK_STATE, {"job_id": job.id})
    return {}


@router.post("/{id}/{operation}")
async def record_operation(
    operation: str,
    body: OperationRequest,
    job: UpdateJob = Depends(require_job),
    outputs: JobOutputStore = Depends(get_outputs),
):
    if operation == MARK_AS_PROCESSED:
        raise HTTPException(status_code=status.HTTP_405_METHOD_NOT_ALLOWED, detail="Use PATCH")
    if operation not in OPERATIONS:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown operation '{operation}'")

    await outputs.add(job.id, operation, body.data)
    logger.debug("Job %s reported %s", job.id, operation)
    return {}
