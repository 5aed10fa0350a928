"""FastAPI dependencies that resolve services from the app's container."""
from __future__ import annotations

from fastapi import Request

from backend.app.container import ServiceContainer


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container
