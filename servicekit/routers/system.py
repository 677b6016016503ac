from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends

from servicekit.core.logging import get_logger
from servicekit.core.security import internal_request_guard
from servicekit.kit import ServiceKit, get_servicekit
from servicekit.models import CallerIdentity

log = get_logger("servicekit.system")

router = APIRouter(prefix="/api/v1", tags=["system"])


@router.get("/system/heartbeat", operation_id="heartbeat_check")
async def heartbeat_check():
    return {"status": "alive", "timestamp": datetime.now(timezone.utc).isoformat()}


@router.get("/system/diagnostics", operation_id="diagnostics")
async def diagnostics(kit: ServiceKit = Depends(get_servicekit)):
    """
    Readiness/diagnostics:
    - Redis ping
    - Registry size, service names and load time
    """
    snapshot = kit.registry.current_snapshot()
    return {
        "redis": "ok" if await kit.redis.is_available() else "down",
        "registry": {
            "services": len(snapshot),
            "names": snapshot.names(),
            "loaded_at": snapshot.loaded_at.isoformat() if snapshot.loaded_at else None,
        },
        "registry_channel": kit.registry_channel,
    }


@router.post("/system/registry/reload", operation_id="reload_registry")
async def reload_registry(
    kit: ServiceKit = Depends(get_servicekit),
    caller: Optional[CallerIdentity] = Depends(internal_request_guard()),
):
    await kit.registry.reload()
    snapshot = kit.registry.current_snapshot()
    log.info(
        "Registry reloaded on request of %s: %d service(s)",
        caller.username if caller and caller.username else "internal caller",
        len(snapshot),
    )
    return {"detail": "Registry reloaded", "services": len(snapshot)}
