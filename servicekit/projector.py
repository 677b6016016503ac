"""
Tenant settings projection into the config store.

Saving a tenant's settings writes the full document under
``company_settings:{tenant_id}`` and one reverse-lookup key per messaging
platform (``wapPhoneNumberId:{phone_number_id} -> tenant_id`` and so on), so
webhook receivers can find the owning tenant from the platform identifier.

Entries for a token the tenant no longer uses are not removed.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, Mapping, Optional, Sequence, Tuple

from servicekit.constants import KeyPrefix, MetaChannel
from servicekit.core.logging import get_logger
from servicekit.errors import IndexerNotFound, ServiceKitError
from servicekit.models import IndexerDefinition, IndexOutcome, IndexStatus, ProjectionResult
from servicekit.store import ConfigStore

log = get_logger("servicekit.projector")

DEFAULT_META_INDEXERS: Tuple[IndexerDefinition, ...] = (
    IndexerDefinition(
        platform_name=MetaChannel.WHATSAPP.value,
        token_path=("meta_integrations", "whatsapp", "phoneNumberId"),
        index_prefix=KeyPrefix.WAP_PHONE_NUMBER_ID,
    ),
    IndexerDefinition(
        platform_name=MetaChannel.MESSENGER.value,
        token_path=("meta_integrations", "messenger", "pageId"),
        index_prefix=KeyPrefix.MSN_PAGE_ID,
    ),
    IndexerDefinition(
        platform_name=MetaChannel.INSTAGRAM.value,
        token_path=("meta_integrations", "instagram", "instagramBusinessAccountId"),
        index_prefix=KeyPrefix.IGM_BUSINESS_ACCOUNT_ID,
    ),
)


def resolve_path(document: Any, path: Sequence[str]) -> Optional[Any]:
    """Walk ``path`` through nested mappings; any missing step yields None."""
    current = document
    for part in path:
        if isinstance(current, Mapping):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
        if current is None:
            return None
    return current


def _usable_token(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return isinstance(value, (int, float))


def settings_key(tenant_id: Any) -> str:
    return f"{KeyPrefix.COMPANY_SETTINGS}:{tenant_id}"


class SecondaryIndexProjector:
    def __init__(self, store: ConfigStore, indexers: Optional[Iterable[IndexerDefinition]] = None) -> None:
        self.store = store
        self.indexers: Tuple[IndexerDefinition, ...] = tuple(indexers if indexers is not None else DEFAULT_META_INDEXERS)

    @staticmethod
    def _validate(tenant_id: Any, settings: Any) -> None:
        if tenant_id is None or str(tenant_id) == "":
            raise ValueError("tenant_id is required")
        if not isinstance(settings, Mapping):
            raise ValueError("settings document must be a mapping")

    def get_indexer(self, platform_name: str) -> Optional[IndexerDefinition]:
        return next((i for i in self.indexers if i.platform_name == platform_name), None)

    async def _write_index(self, tenant_id: str, settings: Mapping[str, Any], indexer: IndexerDefinition) -> IndexOutcome:
        token = resolve_path(settings, indexer.token_path)
        if not _usable_token(token):
            log.debug(
                "No %s token in settings of tenant %s; no secondary index written.",
                indexer.platform_name,
                tenant_id,
            )
            return IndexOutcome(platform_name=indexer.platform_name, status=IndexStatus.SKIPPED)

        key = indexer.index_key(token)
        await self.store.put(key, tenant_id)
        log.debug("Secondary index for %s written: %s -> %s", indexer.platform_name, key, tenant_id)
        return IndexOutcome(platform_name=indexer.platform_name, status=IndexStatus.WRITTEN, key=key)

    async def project_tenant_settings(self, tenant_id: Any, settings: Dict[str, Any]) -> ProjectionResult:
        """
        Write the primary settings record, then every secondary index.

        Only the primary write can fail the call. Each indexer's failure is
        logged and reported as a FAILED outcome; the remaining indexers still run.
        """
        self._validate(tenant_id, settings)
        tid = str(tenant_id)
        primary_key = settings_key(tid)

        await self.store.put(primary_key, dict(settings))
        log.debug("Settings of tenant %s stored under %s", tid, primary_key)

        result = ProjectionResult(tenant_id=tid, primary_key=primary_key)
        for indexer in self.indexers:
            try:
                outcome = await self._write_index(tid, settings, indexer)
            except ServiceKitError as exc:
                log.error(
                    "Secondary index for %s failed (tenant %s): %s",
                    indexer.platform_name,
                    tid,
                    exc.message,
                )
                outcome = IndexOutcome(
                    platform_name=indexer.platform_name,
                    status=IndexStatus.FAILED,
                    error=exc.message,
                )
            result.outcomes.append(outcome)

        if result.ok:
            log.info("Settings of tenant %s projected (%d index(es) written).", tid, len(result.written))
        else:
            log.warning(
                "Settings of tenant %s projected with %d failed index(es): %s",
                tid,
                len(result.failed),
                ", ".join(o.platform_name for o in result.failed),
            )
        return result

    async def update_index_for_channel(self, tenant_id: Any, settings: Dict[str, Any], platform_name: str) -> IndexOutcome:
        """Rewrite the secondary index of one channel. Any failure propagates."""
        self._validate(tenant_id, settings)
        if not platform_name:
            raise ValueError("platform_name is required")
        tid = str(tenant_id)

        indexer = self.get_indexer(platform_name)
        if indexer is None:
            log.warning("No indexer configured for channel '%s' (tenant %s).", platform_name, tid)
            raise IndexerNotFound(platform_name)

        outcome = await self._write_index(tid, settings, indexer)
        log.info("Secondary index for '%s' of tenant %s: %s", platform_name, tid, outcome.status.value)
        return outcome

    async def resolve_tenant(self, platform_name: str, token: Any) -> Optional[str]:
        """Reverse lookup: platform identifier -> tenant id, or None when not indexed."""
        indexer = self.get_indexer(platform_name)
        if indexer is None:
            raise IndexerNotFound(platform_name)
        found = await self.store.get(indexer.index_key(token))
        if not found.found or found.value is None:
            return None
        return str(found.value)
