"""Shared dependencies for routers; components live on ``app.state``."""

from __future__ import annotations

from fastapi import Request

from dependabot_server.cache import JobOutputStore
from dependabot_server.events import EventBus


def get_outputs(request: Request) -> JobOutputStore:
    return request.app.state.outputs


def get_bus(request: Request) -> EventBus:
    return request.app.state.bus
