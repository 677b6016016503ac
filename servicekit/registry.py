"""
Service registry: logical service name -> address + trust token.

The registry holds one immutable :class:`RegistrySnapshot`. ``reload()`` builds a
complete new snapshot and swaps the reference in a single assignment, so readers
always see one whole load, never a mix of two. Concurrent reloads are not
serialized; whichever finishes last wins.

Nothing here reloads implicitly. Refreshes happen at startup, on registry
change events (see :mod:`servicekit.kit`) or when a caller asks for one.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Union

from pydantic import ValidationError
from redis.exceptions import RedisError

from servicekit.core.logging import get_logger
from servicekit.core.redis import RedisManager
from servicekit.errors import BackendUnavailable, SerializationFailure
from servicekit.models import RegistrySnapshot, ServiceDescriptor

log = get_logger("servicekit.registry")


class DescriptorSource(Protocol):
    async def fetch_document(self) -> Optional[Dict[str, Any]]:
        """Return the configuration document, or None when it does not exist."""
        ...


class RedisDocumentSource:
    """Configuration document stored as JSON under one fixed key."""

    def __init__(self, rm: RedisManager, key: str) -> None:
        self.rm = rm
        self.key = key

    async def fetch_document(self) -> Optional[Dict[str, Any]]:
        try:
            raw = await self.rm.client.get(self.rm.ns_key(self.key))
        except RedisError as exc:
            raise BackendUnavailable("Service configuration document unreachable") from exc
        if raw is None:
            return None
        try:
            doc = json.loads(raw)
        except ValueError as exc:
            raise SerializationFailure("Service configuration document is not valid JSON") from exc
        if not isinstance(doc, dict):
            raise SerializationFailure("Service configuration document must be a JSON object")
        return doc

    async def save_document(self, services: List[Dict[str, Any]]) -> None:
        """Replace the stored document (provisioning scripts and tests)."""
        doc = {"_id": self.key.rsplit(":", 1)[-1], "services": services}
        try:
            await self.rm.client.set(self.rm.ns_key(self.key), json.dumps(doc))
        except RedisError as exc:
            raise BackendUnavailable("Service configuration document unreachable") from exc


class FileDocumentSource:
    """Same document read from a JSON file, for local runs without a shared store."""

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)

    async def fetch_document(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                doc = json.load(f)
        except ValueError as exc:
            raise SerializationFailure(f"{self.path.name} is not valid JSON") from exc
        except OSError as exc:
            raise BackendUnavailable(f"{self.path.name} could not be read") from exc
        if not isinstance(doc, dict):
            raise SerializationFailure(f"{self.path.name} must contain a JSON object")
        return doc


def build_snapshot(doc: Optional[Dict[str, Any]]) -> RegistrySnapshot:
    """Validate a configuration document. Raises SerializationFailure when malformed."""
    if not doc or not doc.get("services"):
        log.warning("No service configuration found or no services defined.")
        return RegistrySnapshot.empty()

    services = doc["services"]
    if not isinstance(services, list):
        raise SerializationFailure("'services' must be a list")

    descriptors: List[ServiceDescriptor] = []
    for entry in services:
        try:
            descriptor = ServiceDescriptor.model_validate(entry)
        except ValidationError as exc:
            raise SerializationFailure(f"Invalid service descriptor: {exc.error_count()} error(s)") from exc
        if descriptor.base_address is None:
            log.warning(
                "Service '%s' has no host or port; no base address derived.",
                descriptor.service_name,
            )
        descriptors.append(descriptor)

    return RegistrySnapshot(descriptors=tuple(descriptors), loaded_at=datetime.now(timezone.utc))


class ServiceRegistry:
    def __init__(self, source: DescriptorSource) -> None:
        self.source = source
        self._snapshot: RegistrySnapshot = RegistrySnapshot.empty()

    def current_snapshot(self) -> RegistrySnapshot:
        return self._snapshot

    def get(self, service_name: str) -> Optional[ServiceDescriptor]:
        return self._snapshot.get(service_name)

    async def reload(self, target_service_name: Optional[str] = None) -> Optional[ServiceDescriptor]:
        """
        Replace the snapshot from the durable source.

        On an unreachable or malformed source the snapshot is cleared and the
        error logged; callers then see "configuration not available" rather
        than stale or guessed addresses.
        """
        log.debug("Loading service configurations...")
        try:
            doc = await self.source.fetch_document()
            snapshot = build_snapshot(doc)
        except (BackendUnavailable, SerializationFailure) as exc:
            log.error("Failed to load service configurations: %s", exc.message)
            self._snapshot = RegistrySnapshot.empty()
            return None

        self._snapshot = snapshot
        if not snapshot.is_empty:
            log.info(
                "Service configurations loaded: %d service(s) [%s]",
                len(snapshot),
                ", ".join(snapshot.names()),
            )

        if target_service_name is None:
            return None
        return snapshot.get(target_service_name)
