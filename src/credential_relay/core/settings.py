from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field
from dotenv import load_dotenv

# Load .env if present
load_dotenv()


class StorageSettings(BaseModel):
    """Where locally-owned provider tokens live and how they are encrypted at rest."""

    TOKEN_STORE_DIR: str = Field(..., description="Directory holding one encrypted file per provider")
    ENCRYPTION_KEY: str = Field(..., description="Symmetric key used for encrypting stored tokens. Request from operator.")


class VaultSettings(BaseModel):
    """Remote token vault (connected accounts) settings."""

    TOKEN_VAULT_URL: Optional[str] = Field(default=None, description="Base URL of the token vault service; empty disables the source")
    VAULT_ACCESS_TOKEN: Optional[str] = Field(default=None, description="Bearer credential used to talk to the vault")
    VAULT_TIMEOUT_SECONDS: float = Field(default=20.0, description="HTTP timeout for vault calls")


class ExecutorSettings(BaseModel):
    """Execution backend connection settings."""

    EXECUTOR_LOCAL_URL: str = Field(default="ws://127.0.0.1:4002", description="Fixed localhost duplex endpoint used when discovery finds nothing")
    EXECUTOR_WS_PORT: int = Field(default=4002, description="Port a remote sandbox forwards for the executor")
    DISCOVERY_API_URL: str = Field(default="https://api.github.com", description="API used to enumerate remote sandboxes")
    EXECUTOR_CREDENTIAL: Optional[str] = Field(default=None, description="Bearer credential for the executor and discovery API")
    RECONNECT_DELAY_SECONDS: float = Field(default=5.0, description="Fixed delay before each reconnect attempt")
    MAX_RECONNECT_ATTEMPTS: int = Field(default=10, description="Consecutive reconnect attempts before giving up")
    PUBLIC_KEY_TIMEOUT_SECONDS: float = Field(default=10.0, description="Timeout for the public-key fetch")
    HEARTBEAT_SECONDS: float = Field(default=30.0, description="Ping interval on the duplex channel")


class ResolutionSettings(BaseModel):
    """Token resolution tunables."""

    RESOLUTION_CACHE_TTL_SECONDS: float = Field(default=0.0, description="Cache successful resolutions for this long; 0 disables caching")


class APISettings(BaseModel):
    """Local control API settings."""

    API_TITLE: str = Field(default="Credential Relay", description="API title for OpenAPI")
    API_DESCRIPTION: str = Field(
        default="Local control API for the credential broker and executor connection.",
        description="API description",
    )
    API_VERSION: str = Field(default="0.1.0", description="API version")
    HOST: str = Field(default="127.0.0.1", description="Bind host; localhost only by default")
    PORT: int = Field(default=4010, description="Bind port")
    LOG_LEVEL: str = Field(default="info", description="Uvicorn log level")
    CORS_ALLOW_ORIGINS: List[str] = Field(default_factory=lambda: ["http://localhost"], description="CORS allowed origins")


class Settings(BaseModel):
    """Application configuration bundle."""

    storage: StorageSettings
    vault: VaultSettings
    executor: ExecutorSettings
    resolution: ResolutionSettings
    api: APISettings

    @staticmethod
    def _get_env(name: str, default: Optional[str] = None) -> Optional[str]:
        return os.getenv(name, default)

    # PUBLIC_INTERFACE
    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings from environment variables."""
        storage = StorageSettings(
            TOKEN_STORE_DIR=cls._get_env("TOKEN_STORE_DIR") or str(Path.home() / ".credential-relay"),
            ENCRYPTION_KEY=cls._get_env("ENCRYPTION_KEY", "") or "",
        )
        vault = VaultSettings(
            TOKEN_VAULT_URL=cls._get_env("TOKEN_VAULT_URL") or None,
            VAULT_ACCESS_TOKEN=cls._get_env("VAULT_ACCESS_TOKEN") or None,
            VAULT_TIMEOUT_SECONDS=float(cls._get_env("VAULT_TIMEOUT_SECONDS", "20") or 20),
        )
        executor = ExecutorSettings(
            EXECUTOR_LOCAL_URL=cls._get_env("EXECUTOR_LOCAL_URL", "ws://127.0.0.1:4002") or "ws://127.0.0.1:4002",
            EXECUTOR_WS_PORT=int(cls._get_env("EXECUTOR_WS_PORT", "4002") or 4002),
            DISCOVERY_API_URL=cls._get_env("DISCOVERY_API_URL", "https://api.github.com") or "https://api.github.com",
            EXECUTOR_CREDENTIAL=cls._get_env("EXECUTOR_CREDENTIAL") or None,
            RECONNECT_DELAY_SECONDS=float(cls._get_env("RECONNECT_DELAY_SECONDS", "5") or 5),
            MAX_RECONNECT_ATTEMPTS=int(cls._get_env("MAX_RECONNECT_ATTEMPTS", "10") or 10),
            PUBLIC_KEY_TIMEOUT_SECONDS=float(cls._get_env("PUBLIC_KEY_TIMEOUT_SECONDS", "10") or 10),
            HEARTBEAT_SECONDS=float(cls._get_env("HEARTBEAT_SECONDS", "30") or 30),
        )
        resolution = ResolutionSettings(
            RESOLUTION_CACHE_TTL_SECONDS=float(cls._get_env("RESOLUTION_CACHE_TTL_SECONDS", "0") or 0),
        )
        api = APISettings(
            API_TITLE=cls._get_env("API_TITLE", "Credential Relay"),
            API_VERSION=cls._get_env("API_VERSION", "0.1.0"),
            HOST=cls._get_env("HOST", "127.0.0.1"),
            PORT=int(cls._get_env("PORT", "4010") or 4010),
            LOG_LEVEL=cls._get_env("LOG_LEVEL", "info"),
            CORS_ALLOW_ORIGINS=(cls._get_env("CORS_ALLOW_ORIGINS", "http://localhost") or "http://localhost").split(","),
        )
        return cls(storage=storage, vault=vault, executor=executor, resolution=resolution, api=api)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Singleton access to application settings loaded from environment."""
    return Settings.from_env()
