"""
Typed failures raised by servicekit.

Every error carries an ``error_code`` and an HTTP-ish ``status_code`` so the
FastAPI handlers in :mod:`servicekit.core.handlers` can render them the same
way the rest of the platform renders ``{"error_code", "message"}`` details.

Messages are safe to show to callers: they name services and keys but never
hosts, ports or trust tokens. Anything sensitive goes into ``context``, which
is only meant for logs.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ServiceKitError(Exception):
    error_code: str = "SERVICEKIT_ERROR"
    status_code: int = 500

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_detail(self) -> Dict[str, Any]:
        return {"error_code": self.error_code, "message": self.message}


# ------------------- registry / dispatch -------------------


class ConfigurationUnavailable(ServiceKitError):
    """Registry was never loaded, or the last load failed."""

    error_code = "CONFIGURATION_UNAVAILABLE"
    status_code = 503


class UnknownService(ServiceKitError):
    error_code = "UNKNOWN_SERVICE"
    status_code = 502

    def __init__(self, service_name: str) -> None:
        super().__init__(f"No configuration found for service '{service_name}'", service_name=service_name)
        self.service_name = service_name


class IncompleteServiceConfig(ServiceKitError):
    error_code = "INCOMPLETE_SERVICE_CONFIG"
    status_code = 502

    def __init__(self, service_name: str) -> None:
        super().__init__(f"Service '{service_name}' has no host or port configured", service_name=service_name)
        self.service_name = service_name


class MissingTrustToken(ServiceKitError):
    error_code = "MISSING_TRUST_TOKEN"
    status_code = 502

    def __init__(self, service_name: str) -> None:
        super().__init__(f"Service '{service_name}' has no trust token configured", service_name=service_name)
        self.service_name = service_name


class TransportFailure(ServiceKitError):
    """
    Network failure or non-2xx answer from the downstream service.

    ``status`` and ``body`` are the downstream values (``None`` when the
    request never got a response).
    """

    error_code = "TRANSPORT_FAILURE"
    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        url: str,
        status: Optional[int] = None,
        body: Any = None,
        service_name: Optional[str] = None,
    ) -> None:
        super().__init__(message, url=url, status=status, service_name=service_name)
        self.url = url
        self.status = status
        self.body = body
        self.service_name = service_name


# ------------------- backend -------------------


class BackendUnavailable(ServiceKitError):
    """Redis is not connected yet, already closed, or failed the command."""

    error_code = "BACKEND_UNAVAILABLE"
    status_code = 503


class SerializationFailure(ServiceKitError):
    error_code = "SERIALIZATION_FAILURE"
    status_code = 422


class IndexerNotFound(ServiceKitError):
    error_code = "INDEXER_NOT_FOUND"
    status_code = 404

    def __init__(self, platform_name: str) -> None:
        super().__init__(f"No indexer configured for channel '{platform_name}'", platform_name=platform_name)
        self.platform_name = platform_name


__all__ = [
    "ServiceKitError",
    "ConfigurationUnavailable",
    "UnknownService",
    "IncompleteServiceConfig",
    "MissingTrustToken",
    "TransportFailure",
    "BackendUnavailable",
    "SerializationFailure",
    "IndexerNotFound",
]
