from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from servicekit.core.logging import get_logger
from servicekit.errors import ServiceKitError, TransportFailure

log = get_logger("servicekit.handlers")


async def _servicekit_error_handler(request: Request, exc: ServiceKitError) -> JSONResponse:
    log.error(
        "[ErrorHandler] %s: %s (path=%s method=%s)",
        exc.error_code,
        exc.message,
        request.url.path,
        request.method,
    )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()})


async def _transport_failure_handler(request: Request, exc: TransportFailure) -> JSONResponse:
    """Relay the downstream answer as-is; fall back to 502 when there was none."""
    log.error(
        "[ErrorHandler] downstream %s failed with %s (path=%s method=%s)",
        exc.service_name,
        exc.status,
        request.url.path,
        request.method,
    )
    if exc.status is None:
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()})
    content = exc.body if exc.body is not None else {"detail": exc.to_detail()}
    return JSONResponse(status_code=exc.status, content=content)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(TransportFailure, _transport_failure_handler)
    app.add_exception_handler(ServiceKitError, _servicekit_error_handler)
