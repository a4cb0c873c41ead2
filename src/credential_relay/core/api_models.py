from __future__ import annotations

from typing import Any, Dict, Generic, Optional, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class SuccessResponse(BaseModel, Generic[T]):
    """Standardized success payload wrapper."""
    status: str = Field("ok", description="Success status, always 'ok'")
    data: T = Field(..., description="Response data")
    meta: Dict[str, Any] = Field(default_factory=dict, description="Optional metadata associated with the response")


class HealthData(BaseModel):
    message: str = Field(..., description="Health status message")
    connection: str = Field(..., description="Executor connection state")


class ProviderStatusItem(BaseModel):
    """Stored provider merged with its status for GET /providers."""
    provider_id: str = Field(..., description="Canonical provider id")
    name: str = Field(..., description="Display name")
    authenticated: bool = Field(..., description="A record is stored")
    expired: bool = Field(..., description="Stored token is past its expiry")
    user: Optional[Dict[str, Any]] = Field(default=None, description="Display info")
    stored_at: int = Field(..., description="First stored (epoch ms)")
    updated_at: int = Field(..., description="Last updated (epoch ms)")
    last_error: Optional[str] = Field(default=None, description="Last refresh failure, until dismissed")


class SwitchTargetRequest(BaseModel):
    """Body for POST /connection/switch; omit url to switch back to localhost."""
    type: str = Field("remote", description="'localhost' or 'remote'")
    url: Optional[str] = Field(default=None, description="Duplex endpoint (ws/wss)")
    name: Optional[str] = Field(default=None, description="Display name")
    remote_id: Optional[str] = Field(default=None, description="Remote sandbox id")


class CredentialRequest(BaseModel):
    """Body for PUT /connection/credential; null clears the credential."""
    credential: Optional[str] = Field(default=None, description="Bearer credential for the executor")
