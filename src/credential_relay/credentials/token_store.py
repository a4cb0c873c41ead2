# PUBLIC_INTERFACE
"""
Durable, encrypted per-provider token storage.

- One Fernet-encrypted JSON file per provider (oauth-tokens.<id>.encrypted).
- Thread-safe cache over the files; writes go through a single RLock.
- Refreshes are serialized per provider with an asyncio.Lock so two concurrent
  callers never refresh the same provider twice.
"""
from __future__ import annotations

import asyncio
import os
import threading
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import ValidationError

from ..core.logging import get_logger
from ..core.models import ProviderStatus, ProviderToken
from ..core.observability import increment_metric
from ..core.security import decrypt_secret, encrypt_secret, get_fernet, is_expired, now_ms

logger = get_logger(__name__)

RefreshFn = Callable[[str, str], Awaitable[ProviderToken]]

_FILE_PREFIX = "oauth-tokens."
_FILE_SUFFIX = ".encrypted"


class TokenStore:
    """Manages encrypted storage and refresh of locally-owned provider tokens."""

    def __init__(self, storage_dir: str | Path, encryption_key: str):
        self._dir = Path(storage_dir).expanduser()
        self._dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        self._fernet = get_fernet(encryption_key)
        self._lock = threading.RLock()
        self._cache: Dict[str, ProviderToken] = {}
        self._loaded: set[str] = set()
        self._errors: Dict[str, str] = {}
        self._refresh_locks: Dict[str, asyncio.Lock] = {}

    @property
    def storage_dir(self) -> Path:
        return self._dir

    def _path(self, provider_id: str) -> Path:
        if not provider_id or "/" in provider_id or "\\" in provider_id or provider_id.startswith("."):
            raise ValueError(f"invalid provider id for storage: {provider_id!r}")
        return self._dir / f"{_FILE_PREFIX}{provider_id}{_FILE_SUFFIX}"

    def _load(self, provider_id: str) -> Optional[ProviderToken]:
        path = self._path(provider_id)
        self._loaded.add(provider_id)
        if not path.exists():
            return None
        raw = decrypt_secret(self._fernet, path.read_text(encoding="utf-8"))
        if raw is None:
            logger.error("Stored token file for %s could not be decrypted; ignoring it", provider_id)
            return None
        try:
            token = ProviderToken.model_validate_json(raw)
        except ValidationError:
            logger.error("Stored token file for %s is malformed; ignoring it", provider_id)
            return None
        self._cache[provider_id] = token
        return token

    def _load_all(self) -> None:
        for path in self._dir.glob(f"{_FILE_PREFIX}*{_FILE_SUFFIX}"):
            provider_id = path.name[len(_FILE_PREFIX):-len(_FILE_SUFFIX)]
            if provider_id and provider_id not in self._loaded:
                self._load(provider_id)

    def _write(self, token: ProviderToken) -> None:
        path = self._path(token.provider_id)
        tmp = path.with_name(path.name + ".tmp")
        payload = encrypt_secret(self._fernet, token.model_dump_json(by_alias=True))
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(payload)
        os.replace(tmp, path)

    # PUBLIC_INTERFACE
    def get(self, provider_id: str) -> Optional[ProviderToken]:
        """Return the stored record for a provider, or None."""
        with self._lock:
            if provider_id not in self._loaded:
                self._load(provider_id)
            token = self._cache.get(provider_id)
            return token.model_copy(deep=True) if token else None

    # PUBLIC_INTERFACE
    def put(self, token: ProviderToken) -> ProviderToken:
        """Upsert a record; keeps the original storedAt and stamps updatedAt."""
        with self._lock:
            existing = self.get(token.provider_id)
            stamp = now_ms()
            stored = token.model_copy(
                deep=True,
                update={
                    "stored_at": existing.stored_at if existing and existing.stored_at else stamp,
                    "updated_at": stamp,
                }
            )
            self._write(stored)
            self._cache[stored.provider_id] = stored
            self._errors.pop(stored.provider_id, None)
            return stored.model_copy(deep=True)

    # PUBLIC_INTERFACE
    def remove(self, provider_id: str) -> None:
        """Remove a provider's record; removing a missing record is a no-op."""
        with self._lock:
            self._cache.pop(provider_id, None)
            self._errors.pop(provider_id, None)
            self._loaded.add(provider_id)
            path = self._path(provider_id)
            if path.exists():
                path.unlink()
                logger.info("Removed stored token for %s", provider_id)

    # PUBLIC_INTERFACE
    def clear(self) -> None:
        """Remove every stored record."""
        with self._lock:
            self._load_all()
            for provider_id in list(self._cache):
                self.remove(provider_id)
            self._loaded.clear()

    # PUBLIC_INTERFACE
    def update_user(self, provider_id: str, user: Dict[str, Any]) -> bool:
        """Replace display info for a stored provider; returns False if nothing is stored."""
        with self._lock:
            token = self.get(provider_id)
            if token is None:
                return False
            self.put(token.model_copy(update={"user": user}))
            return True

    # PUBLIC_INTERFACE
    def status(self) -> Dict[str, ProviderStatus]:
        """Authentication and expiry status for every stored provider."""
        with self._lock:
            self._load_all()
            now = now_ms()
            return {
                provider_id: ProviderStatus(
                    authenticated=True,
                    expired=is_expired(token.expires_at, at=now),
                    user=token.user,
                    stored_at=token.stored_at,
                    updated_at=token.updated_at,
                    last_error=self._errors.get(provider_id),
                )
                for provider_id, token in sorted(self._cache.items())
            }

    # PUBLIC_INTERFACE
    def dismiss_error(self, provider_id: str) -> None:
        """Clear the last refresh failure recorded for a provider."""
        with self._lock:
            self._errors.pop(provider_id, None)

    def _refresh_lock(self, provider_id: str) -> asyncio.Lock:
        with self._lock:
            lock = self._refresh_locks.get(provider_id)
            if lock is None:
                lock = self._refresh_locks[provider_id] = asyncio.Lock()
            return lock

    # PUBLIC_INTERFACE
    async def valid_access_token(self, provider_id: str, refresh_fn: Optional[RefreshFn]) -> Optional[str]:
        """Return a non-expired access token, refreshing through refresh_fn when needed.

        Refresh failures are logged, recorded as the provider's last error and
        reported as None; the stale record is left in place for a later retry.
        """
        async with self._refresh_lock(provider_id):
            token = self.get(provider_id)
            if token is None:
                return None
            if not is_expired(token.expires_at):
                return token.access_token
            if not token.refresh_token or refresh_fn is None:
                logger.info("Token for %s is expired and cannot be refreshed", provider_id)
                return None

            increment_metric("token_refresh_total", 1.0)
            try:
                refreshed = await refresh_fn(provider_id, token.refresh_token)
            except Exception as exc:
                increment_metric("token_refresh_failures_total", 1.0)
                with self._lock:
                    self._errors[provider_id] = str(exc) or type(exc).__name__
                logger.warning("Refresh failed for %s: %s", provider_id, type(exc).__name__)
                return None

            merged = refreshed.model_copy(
                update={
                    "provider_id": provider_id,
                    "refresh_token": refreshed.refresh_token or token.refresh_token,
                    "user": refreshed.user if refreshed.user is not None else token.user,
                }
            )
            stored = self.put(merged)
            logger.info("Refreshed token for %s", provider_id)
            return stored.access_token
