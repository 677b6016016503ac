from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, computed_field, field_validator


# ------------------- service registry -------------------


class ServiceDescriptor(BaseModel):
    """How to reach one internal service. Loaded in bulk, never mutated."""

    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    service_name: str = Field(validation_alias=AliasChoices("serviceName", "service_name"))
    host: Optional[str] = None
    port: Optional[int] = None
    trust_token: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("trustToken", "token", "trust_token"),
        repr=False,
        exclude=True,
    )

    @field_validator("host", "trust_token", mode="before")
    @classmethod
    def _blank_to_none(cls, v: Any):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @computed_field  # type: ignore[prop-decorator]
    @property
    def base_address(self) -> Optional[str]:
        if self.host and self.port:
            return f"http://{self.host}:{self.port}"
        return None


class RegistrySnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    descriptors: Tuple[ServiceDescriptor, ...] = ()
    loaded_at: Optional[datetime] = None

    @classmethod
    def empty(cls) -> "RegistrySnapshot":
        return cls()

    @property
    def is_empty(self) -> bool:
        return not self.descriptors

    def get(self, service_name: str) -> Optional[ServiceDescriptor]:
        return next((d for d in self.descriptors if d.service_name == service_name), None)

    def names(self) -> List[str]:
        return [d.service_name for d in self.descriptors]

    def __len__(self) -> int:
        return len(self.descriptors)


# ------------------- dispatch -------------------


class SourceKind(str, Enum):
    INTERNAL = "internal"
    WEBHOOK = "webhook"


class CallerIdentity(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tenant: Optional[Any] = None
    username: Optional[str] = None
    roles: Optional[List[str]] = None

    def is_empty(self) -> bool:
        return self.tenant is None and self.username is None and self.roles is None


class DispatchContext(BaseModel):
    model_config = ConfigDict(extra="forbid")

    target_service: str
    relative_path: str
    source_kind: SourceKind = SourceKind.INTERNAL
    caller_identity: Optional[CallerIdentity] = None

    @field_validator("source_kind", mode="before")
    @classmethod
    def _kind_by_name_or_value(cls, v: Any):
        # accepts "INTERNAL" as well as "internal"
        if isinstance(v, str) and v.upper() in SourceKind.__members__:
            return SourceKind[v.upper()]
        return v


class RequestSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    method: str = "GET"
    body: Optional[Any] = None
    params: Optional[Dict[str, Any]] = None
    headers: Optional[Dict[str, str]] = None
    # seconds; falls back to the dispatcher default
    timeout: Optional[float] = None

    @field_validator("method", mode="before")
    @classmethod
    def _upper(cls, v: Any):
        return str(v).upper()


# ------------------- config store -------------------


class ValueKind(str, Enum):
    JSON = "json"
    RAW = "raw"
    EMPTY = "empty"


class StoreResult(BaseModel):
    """Outcome of a store read. ``found=False`` means the key is absent, nothing else."""

    found: bool
    value: Any = None
    kind: Optional[ValueKind] = None

    @classmethod
    def missing(cls) -> "StoreResult":
        return cls(found=False)


# ------------------- secondary indices -------------------


class IndexerDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    platform_name: str
    token_path: Tuple[str, ...]
    index_prefix: str

    def index_key(self, token: Any) -> str:
        return f"{self.index_prefix}:{token}"


class IndexStatus(str, Enum):
    WRITTEN = "written"
    SKIPPED = "skipped"
    FAILED = "failed"


class IndexOutcome(BaseModel):
    platform_name: str
    status: IndexStatus
    key: Optional[str] = None
    error: Optional[str] = None


class ProjectionResult(BaseModel):
    tenant_id: str
    primary_key: str
    outcomes: List[IndexOutcome] = Field(default_factory=list)

    @property
    def failed(self) -> List[IndexOutcome]:
        return [o for o in self.outcomes if o.status is IndexStatus.FAILED]

    @property
    def written(self) -> List[IndexOutcome]:
        return [o for o in self.outcomes if o.status is IndexStatus.WRITTEN]

    @property
    def ok(self) -> bool:
        return not self.failed


# ------------------- streams -------------------


class StreamMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    payload: Any = None
