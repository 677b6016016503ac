# servicekit/core/security.py
from __future__ import annotations

import json
import secrets
from typing import Awaitable, Callable, Optional

from fastapi import Header, HTTPException, Request, status

from servicekit.constants import WEBHOOK_SOURCE_TYPE, Headers, decode_header_text
from servicekit.core.logging import get_logger
from servicekit.errors import SerializationFailure
from servicekit.models import CallerIdentity
from servicekit.settings import get_settings

log = get_logger("servicekit.security")


def _unauthorized(error_code: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"error_code": error_code, "message": message},
    )


def _configured_token(request: Request) -> Optional[str]:
    kit = getattr(request.app.state, "servicekit", None)
    s = kit.settings if kit is not None else get_settings()
    return s.SERVICEKIT_SERVICE_TOKEN


def parse_caller_identity(
    company_raw: Optional[str],
    username: Optional[str],
    roles_raw: Optional[str],
) -> CallerIdentity:
    """
    Decode the identity headers sent by the dispatcher.

    Company and roles are JSON text, username is percent-escaped text. Raises
    SerializationFailure on malformed JSON or a roles value that is not a list
    of strings.
    """
    tenant = None
    roles = None
    try:
        if company_raw:
            tenant = json.loads(company_raw)
        if roles_raw:
            roles = json.loads(roles_raw)
    except ValueError as exc:
        raise SerializationFailure(
            f"{Headers.USER_COMPANY} or {Headers.USER_ROLES} is not valid JSON"
        ) from exc
    if roles is not None and not (isinstance(roles, list) and all(isinstance(r, str) for r in roles)):
        raise SerializationFailure(f"{Headers.USER_ROLES} must be a JSON array of strings")
    username = decode_header_text(username) if username else None
    return CallerIdentity(tenant=tenant, username=username, roles=roles)


def internal_request_guard(
    expected_token: Optional[str] = None,
) -> Callable[..., Awaitable[Optional[CallerIdentity]]]:
    """
    Build a FastAPI dependency that admits only internal callers.

    The trust header must equal ``expected_token``, or else the
    SERVICEKIT_SERVICE_TOKEN of the running ServiceKit (global settings when
    none is installed). Webhook-originated calls skip identity parsing and
    yield None; every other call must carry at least one identity header.
    """

    async def _guard(
        request: Request,
        x_internal_request: Optional[str] = Header(None, alias=Headers.INTERNAL_REQUEST),
        x_source_type: Optional[str] = Header(None, alias=Headers.SOURCE_TYPE),
        x_user_company: Optional[str] = Header(None, alias=Headers.USER_COMPANY),
        x_user_name: Optional[str] = Header(None, alias=Headers.USER_NAME),
        x_user_roles: Optional[str] = Header(None, alias=Headers.USER_ROLES),
    ) -> Optional[CallerIdentity]:
        token = expected_token or _configured_token(request)
        if not token:
            log.error("No SERVICEKIT_SERVICE_TOKEN configured; rejecting internal request.")
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail={"error_code": "SERVICE_TOKEN_NOT_CONFIGURED", "message": "Internal authentication not configured"},
            )

        if not x_internal_request or not secrets.compare_digest(x_internal_request.encode(), token.encode()):
            log.warning("Unauthorized internal request: %s missing or wrong.", Headers.INTERNAL_REQUEST)
            raise _unauthorized("INVALID_INTERNAL_TOKEN", "Internal authentication header missing or invalid")

        if x_source_type == WEBHOOK_SOURCE_TYPE:
            log.debug("Webhook-originated request; identity headers not required.")
            return None

        if not (x_user_company or x_user_name or x_user_roles):
            raise _unauthorized("MISSING_USER_HEADERS", "User identity headers are missing")

        try:
            return parse_caller_identity(x_user_company, x_user_name, x_user_roles)
        except SerializationFailure as exc:
            log.error("Rejecting internal request: %s", exc.message)
            raise _unauthorized("MALFORMED_USER_HEADERS", exc.message) from exc

    return _guard
