from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base for models exchanged with the executor or persisted to disk (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ProviderToken(WireModel):
    """One locally-owned credential record per provider id."""

    provider_id: str = Field(..., description="Canonical provider id (lower-case, hyphen-separated)")
    access_token: str = Field(..., description="Access token")
    refresh_token: Optional[str] = Field(default=None, description="Refresh token, if the provider issued one")
    expires_at: Optional[int] = Field(default=None, description="Expiry in epoch ms; None means non-expiring")
    scope: Optional[str] = Field(default=None, description="Granted scope string")
    token_type: Optional[str] = Field(default=None, description="Token type, usually 'Bearer'")
    user: Optional[Dict[str, Any]] = Field(default=None, description="Opaque display info (name/email)")
    stored_at: int = Field(default=0, description="First time this provider was stored (epoch ms)")
    updated_at: int = Field(default=0, description="Last upsert (epoch ms)")


class ProviderStatus(WireModel):
    """Per-provider status surfaced by TokenStore.status()."""

    authenticated: bool = Field(..., description="A record exists for this provider")
    expired: bool = Field(..., description="now >= expiresAt when expiresAt is set")
    user: Optional[Dict[str, Any]] = Field(default=None, description="Display info")
    stored_at: int = Field(..., description="First stored (epoch ms)")
    updated_at: int = Field(..., description="Last updated (epoch ms)")
    last_error: Optional[str] = Field(default=None, description="Last refresh failure, until dismissed")


class TokenSourceDescriptor(BaseModel):
    """Name and priority of a token source; lower priority numbers are checked first."""

    model_config = ConfigDict(frozen=True)

    name: str
    priority: int


class TokenResult(WireModel):
    """Outcome of a resolution attempt."""

    success: bool
    token: Optional[str] = None
    user: Optional[Dict[str, Any]] = None
    provider_name: Optional[str] = None
    source_name: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None

    @model_validator(mode="after")
    def _token_required_on_success(self) -> "TokenResult":
        if self.success and not self.token:
            raise ValueError("a successful TokenResult must carry a non-empty token")
        return self

    # PUBLIC_INTERFACE
    @classmethod
    def failure(cls, error: str, **kwargs: Any) -> "TokenResult":
        """Build an unsuccessful result."""
        return cls(success=False, error=error, **kwargs)


class ConnectionTarget(WireModel):
    """A concrete executor location; localhost or a discovered remote sandbox."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    type: Literal["localhost", "remote"]
    url: str = Field(..., description="Duplex (ws/wss) endpoint")
    name: Optional[str] = None
    remote_id: Optional[str] = None

    @property
    def label(self) -> str:
        return self.name or self.url

    @property
    def http_url(self) -> str:
        """REST base URL for the same host as the duplex endpoint."""
        if self.url.startswith("wss://"):
            return "https://" + self.url[len("wss://"):].rstrip("/")
        if self.url.startswith("ws://"):
            return "http://" + self.url[len("ws://"):].rstrip("/")
        return self.url.rstrip("/")


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


EventKind = Literal[
    "connecting",
    "connected",
    "disconnected",
    "reconnecting",
    "switching",
    "error",
    "reconnect_exhausted",
]


class ConnectionEvent(BaseModel):
    """Read-only notification delivered to connection observers."""

    kind: EventKind
    target: Optional[ConnectionTarget] = None
    previous: Optional[ConnectionTarget] = None
    attempt: Optional[int] = None
    max_attempts: Optional[int] = None
    message: Optional[str] = None


class ExecutorEnvelope(WireModel):
    """Typed envelope for messages on the duplex channel; unknown keys are kept."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    type: str
    id: Optional[Any] = None
    data: Optional[Any] = None
    # echoed back verbatim, whatever its JSON type
    request_id: Optional[Any] = None
    timestamp: Optional[Any] = None

    @property
    def provider_id(self) -> Optional[str]:
        extra = self.model_extra or {}
        value = extra.get("providerId") or extra.get("provider_id")
        return str(value) if value else None
