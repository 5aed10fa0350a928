from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request

from .config import get_settings
from .container import ServiceContainer, build_container
from .errors import register_error_handlers
from .routes.accounts import router as accounts_router
from .routes.billing import router as billing_router
from .routes.metrics import router as metrics_router
from .routes.reconcile import router as reconcile_router
from .routes.webhooks import router as webhooks_router
from .telemetry.metrics import observe_api_request

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    """
    Application factory for the billing service.

    When ``container`` is given (tests) it is installed as-is and never
    closed by the app; otherwise one is built from the environment at
    startup and torn down at shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if container is not None:
            app.state.container = container
            yield
            return

        settings = get_settings()
        configure_logging(settings.LOG_LEVEL)
        built = build_container(settings)
        app.state.container = built
        logger.info("app_started", extra={"env": settings.env, "service": settings.service})
        try:
            yield
        finally:
            await built.aclose()
            logger.info("app_stopped")

    app = FastAPI(title="saaskit-billing", lifespan=lifespan)
    if container is not None:
        app.state.container = container

    register_error_handlers(app)

    @app.middleware("http")
    async def record_request_metrics(request: Request, call_next):
        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            route = request.scope.get("route")
            path = getattr(route, "path", None) or "unmatched"
            observe_api_request(path, request.method, status_code, time.perf_counter() - started)

    # Metrics endpoint (no prefix) – scraped directly by Prometheus.
    app.include_router(metrics_router)
    app.include_router(webhooks_router)
    app.include_router(billing_router)
    app.include_router(accounts_router)
    app.include_router(reconcile_router)

    return app


app = create_app()
