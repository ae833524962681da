"""Service hook receiver for Azure DevOps.

Projects register subscriptions that post here with basic auth, using the
project id as username and the project's webhook password.
"""

from __future__ import annotations

import hmac
import logging
from typing import Any

from fastapi import APIRouter
from fastapi import BackgroundTasks
from fastapi import Body
from fastapi import Depends
from fastapi import HTTPException
from fastapi import status
from fastapi.security import HTTPBasic
from fastapi.security import HTTPBasicCredentials
from sqlalchemy.orm import Session

from dependabot_server.db import get_db
from dependabot_server.events import EventBus
from dependabot_server.events import EventType
from dependabot_server.models import Project
from dependabot_server.routers.deps import get_bus

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

logger = logging.getLogger(__name__)

basic_auth = HTTPBasic(auto_error=False)

PULL_REQUEST_EVENTS = ("git.pullrequest.updated", "git.pullrequest.merged", "ms.vss-code.git-pullrequest-comment-event")


def require_project(
    credentials: HTTPBasicCredentials | None = Depends(basic_auth),
    db: Session = Depends(get_db),
) -> Project:
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing credentials",
            headers={"WWW-Authenticate": "Basic"},
        )

    project = db.get(Project, credentials.username)
    if project is None or not project.password:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unknown project")
    if not hmac.compare_digest(credentials.password.encode(), project.password.encode()):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
    return project


def pushed_to_default_branch(resource: dict[str, Any]) -> bool:
    default_branch = (resource.get("repository") or {}).get("defaultBranch")
    if not default_branch:
        return False
    return any(ref.get("name") == default_branch for ref in resource.get("refUpdates") or [])


@router.post("/azure")
async def azure_webhook(
    background_tasks: BackgroundTasks,
    payload: dict[str, Any] = Body(...),
    project: Project = Depends(require_project),
    bus: EventBus = Depends(get_bus),
):
    event_type = payload.get("eventType")
    resource = payload.get("resource") or {}

    if event_type == "git.push":
        repository_provider_id = (resource.get("repository") or {}).get("id")
        if not pushed_to_default_branch(resource):
            logger.debug("Ignoring push to a non-default branch of %s", repository_provider_id)
            return {"status": "ignored"}

        logger.info("Push to default branch of %s in project %s", repository_provider_id, project.id)
        background_tasks.add_task(
            bus.publish,
            EventType.PROCESS_SYNCHRONIZATION,
            {"project_id": project.id, "trigger": True, "repository_provider_id": repository_provider_id},
        )
        return {"status": "accepted"}

    if event_type in PULL_REQUEST_EVENTS:
        pull_request_id = resource.get("pullRequestId") or (resource.get("pullRequest") or {}).get("pullRequestId")
        logger.info("Received %s for pull request %s in project %s", event_type, pull_request_id, project.id)
        return {"status": "ok"}

    logger.warning("Unsupported webhook event '%s' for project %s", event_type, project.id)
    return {"status": "ignored"}
