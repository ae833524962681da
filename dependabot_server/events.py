"""Event bus implementation for decoupled trigger handling."""

import asyncio
import logging
import uuid
from enum import Enum
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Dict
from typing import Set

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Trigger and lifecycle messages exchanged between components."""

    # Synchronization requests (periodic task, webhooks)
    PROCESS_SYNCHRONIZATION = "process_synchronization"

    # Repository lifecycle (drives the scheduler)
    REPOSITORY_CREATED = "repository_created"
    REPOSITORY_UPDATED = "repository_updated"
    REPOSITORY_DELETED = "repository_deleted"

    # Job triggers (timers, missed schedules, synchronization, manual)
    TRIGGER_UPDATE_JOBS = "trigger_update_jobs"

    # Job lifecycle
    UPDATE_JOB_CHECK_STATE = "update_job_check_state"
    UPDATE_JOB_COLLECT_LOGS = "update_job_collect_logs"


Handler = Callable[[Dict[str, Any]], Awaitable[None]]


def new_event_id() -> str:
    """Identifier carried by trigger events so a redelivered event reuses its job."""
    return uuid.uuid4().hex


class EventBus:
    """Central event bus for publishing and subscribing to events."""

    def __init__(self):
        """Initialize an empty event bus."""
        self._subscribers: Dict[EventType, Set[Handler]] = {}

    async def publish(self, event_type: EventType, data: Dict[str, Any]) -> None:
        """Publish an event to all subscribers.

        Args:
            event_type: The type of event being published
            data: Event payload data
        """
        subscribers = self._subscribers.get(event_type, set())
        if not subscribers:
            logger.debug("No subscribers for %s", event_type)
            return

        logger.debug("Publishing event %s to %s subscriber(s)", event_type, len(subscribers))

        # Fan out concurrently; every callback runs and failures are logged individually.
        results = await asyncio.gather(*(callback(data) for callback in list(subscribers)), return_exceptions=True)
        for i, result in enumerate(results):
            if isinstance(result, Exception):
                logger.error("Error in event handler %s for %s", i, event_type, exc_info=result)

    def subscribe(self, event_type: EventType, callback: Handler) -> None:
        """Subscribe to an event type.

        Args:
            event_type: The event type to subscribe to
            callback: Async callback function to handle the event
        """
        self._subscribers.setdefault(event_type, set()).add(callback)
        logger.debug("Added subscriber for event %s", event_type)

    def unsubscribe(self, event_type: EventType, callback: Handler) -> None:
        """Unsubscribe from an event type.

        Args:
            event_type: The event type to unsubscribe from
            callback: The callback function to remove
        """
        if event_type in self._subscribers:
            self._subscribers[event_type].discard(callback)
            logger.debug("Removed subscriber for event %s", event_type)

            if not self._subscribers[event_type]:
                del self._subscribers[event_type]
