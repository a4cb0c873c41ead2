from __future__ import annotations

from typing import List, Optional

from ..core.logging import get_logger
from ..core.models import TokenResult, TokenSourceDescriptor
from ..credentials.providers import ProviderCatalog
from ..credentials.token_store import RefreshFn, TokenStore
from .base import TokenSource

logger = get_logger(__name__)


class LocalTokenSource(TokenSource):
    """Locally-stored OAuth tokens, refreshed on demand through the store."""

    def __init__(
        self,
        store: TokenStore,
        refresh_fn: Optional[RefreshFn] = None,
        catalog: Optional[ProviderCatalog] = None,
        name: str = "local-provider",
        priority: int = 0,
    ):
        self.descriptor = TokenSourceDescriptor(name=name, priority=priority)
        self.store = store
        self.refresh_fn = refresh_fn
        self.catalog = catalog or ProviderCatalog()

    async def can_provide(self, provider_id: str) -> bool:
        try:
            return self.store.get(provider_id) is not None
        except (OSError, ValueError):
            logger.warning("Local token lookup failed for %s", provider_id, exc_info=True)
            return False

    async def resolve(self, provider_id: str) -> TokenResult:
        access_token = await self.store.valid_access_token(provider_id, self.refresh_fn)
        if not access_token:
            return TokenResult.failure(f"stored token for {provider_id} is expired and could not be refreshed")
        record = self.store.get(provider_id)
        return TokenResult(
            success=True,
            token=access_token,
            user=record.user if record else None,
            provider_name=self.catalog.display_name(provider_id),
            metadata={
                "source": self.name,
                "expiresAt": record.expires_at if record else None,
                "scope": record.scope if record else None,
            },
        )

    async def list_providers(self) -> List[str]:
        try:
            return [pid for pid, st in self.store.status().items() if st.authenticated]
        except (OSError, ValueError):
            logger.warning("Listing local providers failed", exc_info=True)
            return []
