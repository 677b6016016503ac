"""
Internal HTTP client.

Callers name a logical service and a relative path; the dispatcher resolves the
address from the registry snapshot, attaches the trust header and the caller
context headers, and performs the call. It never retries and never
deduplicates: two identical dispatches are two requests.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

import httpx

from servicekit.constants import WEBHOOK_SOURCE_TYPE, Headers, encode_header_text
from servicekit.core.logging import get_logger
from servicekit.errors import (
    ConfigurationUnavailable,
    IncompleteServiceConfig,
    MissingTrustToken,
    SerializationFailure,
    TransportFailure,
    UnknownService,
)
from servicekit.models import DispatchContext, RequestSpec, SourceKind
from servicekit.registry import ServiceRegistry
from servicekit.settings import Settings, get_settings

log = get_logger("servicekit.dispatcher")


def _response_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


class RequestDispatcher:
    def __init__(
        self,
        registry: ServiceRegistry,
        *,
        client: Optional[httpx.AsyncClient] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        s = settings or get_settings()
        self.registry = registry
        self.scheme = s.SERVICEKIT_DISPATCH_SCHEME
        self.client_identity = s.SERVICEKIT_CLIENT_IDENTITY
        self.timeout = s.SERVICEKIT_DISPATCH_TIMEOUT_MS / 1000.0
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    # ------------------- request building -------------------

    def _context_headers(self, context: DispatchContext) -> Dict[str, str]:
        if context.source_kind is SourceKind.WEBHOOK:
            return {Headers.SOURCE_TYPE: WEBHOOK_SOURCE_TYPE}

        identity = context.caller_identity
        if identity is None or identity.is_empty():
            log.warning("No caller identity given for %s; no user/company headers added.", context.target_service)
            return {}

        headers: Dict[str, str] = {}
        if identity.tenant is not None:
            headers[Headers.USER_COMPANY] = json.dumps(identity.tenant, default=str)
        if identity.username is not None:
            headers[Headers.USER_NAME] = encode_header_text(identity.username)
        if identity.roles is not None:
            headers[Headers.USER_ROLES] = json.dumps(identity.roles)
        return headers

    def build_request(self, context: DispatchContext, spec: Optional[RequestSpec] = None) -> httpx.Request:
        """Resolve the target and assemble the physical request without sending it."""
        spec = spec or RequestSpec()

        snapshot = self.registry.current_snapshot()
        if snapshot.is_empty:
            log.warning("No service configurations loaded; cannot resolve %s.", context.target_service)
            raise ConfigurationUnavailable("Service configurations are not available yet")

        descriptor = snapshot.get(context.target_service)
        if descriptor is None:
            log.warning("Configuration not found for target service %s.", context.target_service)
            raise UnknownService(context.target_service)

        if not descriptor.host or not descriptor.port:
            log.warning("Service %s has no host or port defined.", context.target_service)
            raise IncompleteServiceConfig(context.target_service)

        base_url = f"{self.scheme}://{descriptor.host}:{descriptor.port}"
        path = context.relative_path
        if path and not path.startswith("/"):
            path = f"/{path}"
        url = f"{base_url}{path}"

        if not descriptor.trust_token:
            log.warning("No trust token configured for service %s; refusing to dispatch.", context.target_service)
            raise MissingTrustToken(context.target_service)

        headers: Dict[str, str] = dict(spec.headers or {})
        headers[Headers.INTERNAL_REQUEST] = descriptor.trust_token
        headers[Headers.USER_AGENT] = self.client_identity
        headers[Headers.CONTENT_TYPE] = "application/json"
        headers.update(self._context_headers(context))

        content = None
        if spec.body is not None:
            content = json.dumps(spec.body, default=str).encode()

        kwargs: Dict[str, Any] = {"headers": headers, "params": spec.params, "content": content}
        if spec.timeout is not None:
            kwargs["timeout"] = spec.timeout

        log.debug("Built %s request for %s: %s", spec.method, context.target_service, url)
        try:
            return self.client.build_request(spec.method, url, **kwargs)
        except UnicodeEncodeError as exc:
            log.error("Request headers for %s are not ASCII-encodable.", context.target_service)
            raise SerializationFailure("Request headers must be ASCII text", service_name=context.target_service) from exc

    # ------------------- sending -------------------

    async def dispatch(self, context: DispatchContext, spec: Optional[RequestSpec] = None) -> httpx.Response:
        request = self.build_request(context, spec)
        url = str(request.url)
        try:
            response = await self.client.send(request)
        except httpx.RequestError as exc:
            log.error("Request to %s failed: %s", url, exc)
            raise TransportFailure(
                f"Request to service '{context.target_service}' failed",
                url=url,
                service_name=context.target_service,
            ) from exc

        if response.is_success:
            log.debug("Response from %s with status %s", url, response.status_code)
            return response

        body = _response_body(response)
        log.error("Error response from %s. Status: %s. Body: %s", url, response.status_code, body)
        raise TransportFailure(
            f"Service '{context.target_service}' answered {response.status_code}",
            url=url,
            status=response.status_code,
            body=body,
            service_name=context.target_service,
        )

    async def dispatch_json(self, context: DispatchContext, spec: Optional[RequestSpec] = None) -> Any:
        """Dispatch and decode the JSON (or text) body of a successful response."""
        response = await self.dispatch(context, spec)
        return _response_body(response)
