# servicekit/main.py
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Callable

import sentry_sdk
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

from servicekit.core.handlers import register_exception_handlers
from servicekit.core.logging import get_logger, setup_logging
from servicekit.kit import ServiceKit
from servicekit.routers.system import router as system_router
from servicekit.settings import get_settings

log = get_logger("servicekit.app")


def _init_sentry() -> None:
    s = get_settings()
    if not s.SERVICEKIT_SENTRY_DSN:
        log.info("Sentry disabled (SERVICEKIT_SENTRY_DSN empty).")
        return
    sentry_sdk.init(
        dsn=s.SERVICEKIT_SENTRY_DSN,
        environment=s.SERVICEKIT_ENVIRONMENT,
        release=str(s.SERVICEKIT_BUILD_VERSION),
        traces_sample_rate=1,
        integrations=[
            FastApiIntegration(transaction_style="url"),
            StarletteIntegration(transaction_style="url"),
        ],
    )
    log.info("Sentry initialized.")


def build_lifespan(kit_factory: Callable[[], ServiceKit] = ServiceKit):
    """
    Lifespan for any service built on servicekit: connects Redis, loads the
    registry, listens for registry changes, and tears everything down on exit.
    The kit is exposed as ``app.state.servicekit``.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        s = get_settings()
        setup_logging(s.SERVICEKIT_LOG_LEVEL, s.log_label)
        _init_sentry()

        log.info(
            "---------- SERVICEKIT ----------\n"
            f"Version: {s.SERVICEKIT_BUILD_VERSION}\n"
            f"Environment: {s.SERVICEKIT_ENVIRONMENT}\n"
            f"Service: {s.SERVICEKIT_SERVICE_NAME or 'unnamed'}\n"
            f"Redis Host: {s.REDIS_HOST}\n"
            f"Redis Port: {s.REDIS_PORT}\n"
            "------------------------------"
        )

        kit = kit_factory()
        await kit.start()
        app.state.servicekit = kit
        try:
            yield
        finally:
            await kit.stop()
            app.state.servicekit = None

    return lifespan


lifespan = build_lifespan()


def create_app(kit_factory: Callable[[], ServiceKit] = ServiceKit) -> FastAPI:
    s = get_settings()
    app = FastAPI(
        title="servicekit",
        version=s.SERVICEKIT_BUILD_VERSION,
        lifespan=build_lifespan(kit_factory),
    )

    @app.get("/healthz", include_in_schema=False)
    async def _healthz():
        return JSONResponse({"status": "ok"})

    app.include_router(system_router)
    register_exception_handlers(app)
    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=8000, reload=False)
