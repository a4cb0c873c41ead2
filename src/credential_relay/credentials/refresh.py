from __future__ import annotations

from typing import Dict, List, Optional

import httpx

from ..core.errors import RefreshFailed
from ..core.logging import get_logger
from ..core.models import ProviderToken
from ..core.security import compute_expiry_ms
from .providers import ProviderCatalog
from .token_store import RefreshFn, TokenStore

logger = get_logger(__name__)


class OAuthRefresher:
    """Refresh callback performing the standard refresh_token grant against a provider's token URL."""

    def __init__(
        self,
        catalog: ProviderCatalog,
        timeout: float = 20.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.catalog = catalog
        self.timeout = timeout
        self._transport = transport

    async def __call__(self, provider_id: str, refresh_token: str) -> ProviderToken:
        """Exchange a refresh token for a new ProviderToken; raises RefreshFailed on any failure."""
        provider = self.catalog.get(provider_id)
        if provider is None:
            raise RefreshFailed(f"no refresh endpoint configured for provider '{provider_id}'")

        data: Dict[str, str] = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        if provider.client_id:
            data["client_id"] = provider.client_id
        if provider.client_secret:
            data["client_secret"] = provider.client_secret

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(provider.token_url, data=data, headers={"Accept": "application/json"})
        except httpx.HTTPError as exc:
            raise RefreshFailed(f"refresh request for '{provider_id}' failed", cause=exc) from exc

        if resp.status_code >= 400:
            logger.error("Refresh for %s failed with status %s", provider_id, resp.status_code)
            raise RefreshFailed(f"refresh for '{provider_id}' returned HTTP {resp.status_code}")
        try:
            payload = resp.json()
        except ValueError as exc:
            raise RefreshFailed(f"refresh for '{provider_id}' returned a non-JSON body", cause=exc) from exc

        new_access = payload.get("access_token")
        if not new_access:
            raise RefreshFailed(payload.get("error_description") or payload.get("error") or "refresh response had no access_token")

        expires_in = payload.get("expires_in")
        return ProviderToken(
            provider_id=provider_id,
            access_token=new_access,
            # sometimes rotated
            refresh_token=payload.get("refresh_token", refresh_token),
            expires_at=compute_expiry_ms(int(expires_in)) if expires_in else None,
            scope=payload.get("scope"),
            token_type=payload.get("token_type"),
        )


# PUBLIC_INTERFACE
async def refresh_expired_on_startup(store: TokenStore, refresh_fn: RefreshFn) -> List[str]:
    """Best-effort, sequential refresh of every authenticated-but-expired stored provider.

    Runs once at startup. Never raises; returns the ids that were refreshed.
    """
    refreshed: List[str] = []
    try:
        statuses = store.status()
    except Exception:
        logger.exception("Startup refresh could not read token status")
        return refreshed

    expired = [pid for pid, st in statuses.items() if st.authenticated and st.expired]
    if not expired:
        return refreshed

    logger.info("Refreshing %d expired provider token(s) on startup", len(expired))
    # Sequential on purpose: providers rate-limit refresh bursts
    for provider_id in expired:
        try:
            if await store.valid_access_token(provider_id, refresh_fn):
                refreshed.append(provider_id)
        except Exception:
            logger.warning("Startup refresh for %s failed", provider_id, exc_info=True)
    return refreshed
