from __future__ import annotations

import os
from functools import lru_cache
from typing import List, Optional, Tuple

from dotenv import load_dotenv
from pydantic_settings import BaseSettings

load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env(name: str, fallback: Optional[str] = None, default: Optional[str] = None) -> Optional[str]:
    """SERVICEKIT_* wins; the unprefixed name used by older services is the fallback."""
    val = os.getenv(name)
    if val is None and fallback:
        val = os.getenv(fallback)
    return default if val is None else val


def _parse_sentinels(raw: Optional[str]) -> List[Tuple[str, int]]:
    if not raw:
        return []
    sentinels: List[Tuple[str, int]] = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        if ":" in part:
            host, port = part.rsplit(":", 1)
            try:
                sentinels.append((host.strip(), int(port.strip())))
            except ValueError:
                # ignore malformed entries
                continue
        else:
            # default sentinel port
            sentinels.append((part, 26379))
    return sentinels


class Settings(BaseSettings):
    SERVICEKIT_BUILD_VERSION: str = os.getenv("SERVICEKIT_BUILD_VERSION", "1.0.0")
    SERVICEKIT_ENVIRONMENT: str = _env("SERVICEKIT_ENVIRONMENT", "NODE_ENV", "prd")
    SERVICEKIT_LOG_LEVEL: str = _env("SERVICEKIT_LOG_LEVEL", "LOG_LEVEL", "INFO")
    # Shows up in every log line as "servicekit-<API_NAME>"
    SERVICEKIT_API_NAME: str = _env("SERVICEKIT_API_NAME", "API_NAME", "")

    # This service, as seen by its callers
    SERVICEKIT_SERVICE_NAME: str = _env("SERVICEKIT_SERVICE_NAME", "SERVICE_NAME", "")
    SERVICEKIT_SERVICE_TOKEN: Optional[str] = _env("SERVICEKIT_SERVICE_TOKEN", "SERVICE_TOKEN")

    # Redis
    SERVICEKIT_REDIS_URL: Optional[str] = _env("SERVICEKIT_REDIS_URL", "REDIS_URL")
    REDIS_HOST: str = _env("SERVICEKIT_REDIS_HOST", "REDIS_HOST", "127.0.0.1")
    REDIS_PORT: int = int(_env("SERVICEKIT_REDIS_PORT", "REDIS_PORT", "6379"))
    REDIS_DB: int = int(_env("SERVICEKIT_REDIS_DB", "REDIS_DB", "0"))
    REDIS_PASSWORD: Optional[str] = _env("SERVICEKIT_REDIS_PASSWORD", "REDIS_PASSWORD")
    SERVICEKIT_REDIS_NAMESPACE: str = os.getenv("SERVICEKIT_REDIS_NAMESPACE", "")
    SERVICEKIT_REDIS_MAX_CONNECTIONS: int = int(os.getenv("SERVICEKIT_REDIS_MAX_CONNECTIONS", "64"))
    # Must stay above the longest XREADGROUP block
    SERVICEKIT_REDIS_SOCKET_TIMEOUT: float = float(os.getenv("SERVICEKIT_REDIS_SOCKET_TIMEOUT", "10.0"))
    SERVICEKIT_REDIS_CONNECT_TIMEOUT: float = float(os.getenv("SERVICEKIT_REDIS_CONNECT_TIMEOUT", "2.0"))

    SERVICEKIT_REDIS_SENTINEL: bool = _env_bool("SERVICEKIT_REDIS_SENTINEL", False)
    SERVICEKIT_REDIS_SENTINELS: str = os.getenv("SERVICEKIT_REDIS_SENTINELS", "")
    SERVICEKIT_REDIS_SENTINEL_MASTER: str = os.getenv("SERVICEKIT_REDIS_SENTINEL_MASTER", "mymaster")

    # Internal dispatch
    SERVICEKIT_DISPATCH_TIMEOUT_MS: int = int(_env("SERVICEKIT_DISPATCH_TIMEOUT_MS", "AXIOS_TIME_OUT", "5000"))
    SERVICEKIT_DISPATCH_SCHEME: str = os.getenv("SERVICEKIT_DISPATCH_SCHEME", "http")
    SERVICEKIT_CLIENT_IDENTITY: str = os.getenv("SERVICEKIT_CLIENT_IDENTITY", "Gateway-Proxy")

    # Service registry
    SERVICEKIT_REGISTRY_KEY: str = os.getenv(
        "SERVICEKIT_REGISTRY_KEY", "system_parameters:service_configurations"
    )
    SERVICEKIT_REGISTRY_FILE: Optional[str] = os.getenv("SERVICEKIT_REGISTRY_FILE")
    SERVICEKIT_REGISTRY_CHANNEL: str = os.getenv("SERVICEKIT_REGISTRY_CHANNEL", "service_registry:changes")
    SERVICEKIT_REGISTRY_PUBSUB: bool = _env_bool("SERVICEKIT_REGISTRY_PUBSUB", True)

    # Streams
    SERVICEKIT_STREAM_MAXLEN: int = int(os.getenv("SERVICEKIT_STREAM_MAXLEN", "0"))
    SERVICEKIT_STREAM_BLOCK_MS: int = int(os.getenv("SERVICEKIT_STREAM_BLOCK_MS", "5000"))
    SERVICEKIT_STREAM_COUNT: int = int(os.getenv("SERVICEKIT_STREAM_COUNT", "1"))
    SERVICEKIT_STREAM_DEDUP_TTL_SEC: int = int(os.getenv("SERVICEKIT_STREAM_DEDUP_TTL_SEC", "604800"))

    # Sentry
    SERVICEKIT_SENTRY_DSN: Optional[str] = os.getenv("SERVICEKIT_SENTRY_DSN")

    # Derived sentinel endpoints (computed in model_post_init)
    SERVICEKIT_REDIS_SENTINELS_PARSED: List[Tuple[str, int]] = []

    def model_post_init(self, __context) -> None:  # pydantic v2 hook
        self.SERVICEKIT_REDIS_SENTINELS_PARSED = _parse_sentinels(self.SERVICEKIT_REDIS_SENTINELS)

    @property
    def log_label(self) -> str:
        label = self.SERVICEKIT_API_NAME.strip()
        return f"servicekit-{label}" if label else "servicekit"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
