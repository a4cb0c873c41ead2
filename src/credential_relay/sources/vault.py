from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from ..core.errors import SourceUnavailable
from ..core.logging import get_logger
from ..core.models import TokenResult, TokenSourceDescriptor
from ..credentials.providers import ProviderCatalog
from .base import TokenSource
from .registry import normalize

logger = get_logger(__name__)

AccessTokenGetter = Callable[[], Awaitable[Optional[str]]]


class TokenVaultClient:
    """Remote token vault (connected accounts) REST client with Bearer access token."""

    def __init__(self, base_url: str, timeout: float = 20.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _headers(self, access_token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    def _url(self, path: str) -> str:
        return f"{self.base_url}/api/token-vault/connected-accounts{path}"

    async def _request(self, method: str, path: str, access_token: str, json: Any = None) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, headers=self._headers(access_token), transport=self._transport) as client:
                resp = await client.request(method, self._url(path), json=json)
        except httpx.HTTPError as exc:
            raise SourceUnavailable(f"token vault unreachable: {type(exc).__name__}", cause=exc) from exc
        if resp.status_code >= 400:
            raise SourceUnavailable(f"token vault returned HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as exc:
            raise SourceUnavailable("token vault returned a non-JSON body", cause=exc) from exc
        if not isinstance(data, dict) or not data.get("success"):
            message = data.get("message") if isinstance(data, dict) else None
            raise SourceUnavailable(message or "token vault reported failure")
        return data

    # PUBLIC_INTERFACE
    async def list_connected_accounts(self, access_token: str) -> List[Dict[str, Any]]:
        """Accounts the user connected through the vault."""
        data = await self._request("GET", "", access_token)
        return list(data.get("accounts") or [])

    # PUBLIC_INTERFACE
    async def get_credentials(self, connection: str, access_token: str) -> Dict[str, Any]:
        """Fetch the live credentials for one connection."""
        data = await self._request("POST", "/credentials", access_token, json={"connection": connection})
        credentials = data.get("credentials") or {}
        if not credentials.get("access_token"):
            raise SourceUnavailable(f"token vault returned no access token for {connection}")
        return credentials


class VaultTokenSource(TokenSource):
    """Tokens held by the remote vault; needs the user's vault credential to answer."""

    def __init__(
        self,
        client: TokenVaultClient,
        get_access_token: AccessTokenGetter,
        catalog: Optional[ProviderCatalog] = None,
        name: str = "connected-accounts",
        priority: int = 10,
    ):
        self.descriptor = TokenSourceDescriptor(name=name, priority=priority)
        self.client = client
        self.catalog = catalog or ProviderCatalog()
        self._get_access_token = get_access_token

    async def _accounts(self) -> List[Dict[str, Any]]:
        access_token = await self._get_access_token()
        if not access_token:
            raise SourceUnavailable("no vault credential available")
        return await self.client.list_connected_accounts(access_token)

    @staticmethod
    def _find(accounts: List[Dict[str, Any]], provider_id: str) -> Optional[Dict[str, Any]]:
        for account in accounts:
            if normalize(str(account.get("connection") or "")) == provider_id:
                return account
        return None

    async def can_provide(self, provider_id: str) -> bool:
        try:
            return self._find(await self._accounts(), provider_id) is not None
        except SourceUnavailable as exc:
            logger.info("Vault cannot answer for %s: %s", provider_id, exc.message)
            return False
        except Exception:
            logger.warning("Vault lookup failed for %s", provider_id, exc_info=True)
            return False

    async def resolve(self, provider_id: str) -> TokenResult:
        access_token = await self._get_access_token()
        if not access_token:
            return TokenResult.failure("no vault credential available")
        try:
            accounts = await self.client.list_connected_accounts(access_token)
            account = self._find(accounts, provider_id)
            connection = str(account.get("connection")) if account else provider_id
            credentials = await self.client.get_credentials(connection, access_token)
        except SourceUnavailable as exc:
            return TokenResult.failure(f"failed to get token from {self.name}: {exc.message}")

        return TokenResult(
            success=True,
            token=credentials["access_token"],
            user=account.get("user") if account else None,
            provider_name=self.catalog.display_name(provider_id),
            metadata={
                "source": self.name,
                "oauthTokenType": credentials.get("token_type") or "",
                "expiresIn": credentials.get("expires_in") or 0,
                "scope": credentials.get("scope") or "",
                "accountId": account.get("id") if account else None,
                "scopes": account.get("scopes") if account else None,
                "storage": "stored-in-cloud",
            },
        )

    async def list_providers(self) -> List[str]:
        try:
            accounts = await self._accounts()
        except Exception:
            logger.info("Vault providers unavailable", exc_info=True)
            return []
        return [normalize(str(a.get("connection"))) for a in accounts if a.get("connection")]
