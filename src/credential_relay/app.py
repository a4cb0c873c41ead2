# PUBLIC_INTERFACE
"""
Process wiring: builds the token store, sources, registry and executor
connection from Settings and runs the startup sequence.
"""
from __future__ import annotations

from typing import List, Optional

from .core.logging import get_logger
from .core.settings import Settings, get_settings
from .credentials.providers import ProviderCatalog
from .credentials.refresh import OAuthRefresher, refresh_expired_on_startup
from .credentials.token_store import TokenStore
from .executor.connection import ExecutorConnection, aiohttp_connector
from .executor.discovery import CodespacesDiscovery
from .executor.encryption import CredentialEncryptionBridge
from .executor.handoff import CredentialHandoff
from .sources.environment import EnvironmentTokenSource
from .sources.local import LocalTokenSource
from .sources.registry import SourceRegistry
from .sources.vault import TokenVaultClient, VaultTokenSource

logger = get_logger(__name__)


class CredentialRelay:
    """All long-lived components of one running broker."""

    def __init__(
        self,
        settings: Settings,
        store: TokenStore,
        catalog: ProviderCatalog,
        refresher: OAuthRefresher,
        registry: SourceRegistry,
        handoff: CredentialHandoff,
        connection: ExecutorConnection,
    ):
        self.settings = settings
        self.store = store
        self.catalog = catalog
        self.refresher = refresher
        self.registry = registry
        self.handoff = handoff
        self.connection = connection

    # PUBLIC_INTERFACE
    async def start(self) -> List[str]:
        """Startup refresh pass, then connect if an executor credential is configured."""
        refreshed = await refresh_expired_on_startup(self.store, self.refresher)
        if refreshed:
            logger.info("Refreshed on startup: %s", ", ".join(refreshed))
        if self.connection.credential:
            await self.connection.auto_connect()
        else:
            logger.info("No executor credential configured; waiting for one")
        return refreshed

    # PUBLIC_INTERFACE
    async def stop(self) -> None:
        await self.connection.close()


# PUBLIC_INTERFACE
def build_relay(settings: Optional[Settings] = None) -> CredentialRelay:
    """Wire every component from settings."""
    settings = settings or get_settings()
    catalog = ProviderCatalog.from_env()
    store = TokenStore(settings.storage.TOKEN_STORE_DIR, settings.storage.ENCRYPTION_KEY)
    refresher = OAuthRefresher(catalog)

    registry = SourceRegistry(cache_ttl_seconds=settings.resolution.RESOLUTION_CACHE_TTL_SECONDS)
    registry.register(LocalTokenSource(store, refresher, catalog))
    if settings.vault.TOKEN_VAULT_URL:
        vault_token = settings.vault.VAULT_ACCESS_TOKEN

        async def _vault_credential() -> Optional[str]:
            return vault_token

        client = TokenVaultClient(settings.vault.TOKEN_VAULT_URL, timeout=settings.vault.VAULT_TIMEOUT_SECONDS)
        registry.register(VaultTokenSource(client, _vault_credential, catalog))
    registry.register(EnvironmentTokenSource())

    executor = settings.executor
    # the connection owns the credential; the bridge and discovery read it through getters
    holder: List[ExecutorConnection] = []

    def _credential() -> Optional[str]:
        return holder[0].credential if holder else executor.EXECUTOR_CREDENTIAL

    bridge = CredentialEncryptionBridge(timeout=executor.PUBLIC_KEY_TIMEOUT_SECONDS, get_credential=_credential)
    handoff = CredentialHandoff(registry, bridge, catalog)
    discovery = CodespacesDiscovery(executor.DISCOVERY_API_URL, get_credential=_credential, port=executor.EXECUTOR_WS_PORT)
    connection = ExecutorConnection(
        local_url=executor.EXECUTOR_LOCAL_URL,
        discovery=discovery,
        handoff=handoff,
        credential=executor.EXECUTOR_CREDENTIAL,
        reconnect_delay=executor.RECONNECT_DELAY_SECONDS,
        max_reconnect_attempts=executor.MAX_RECONNECT_ATTEMPTS,
        ws_connect=aiohttp_connector(heartbeat=executor.HEARTBEAT_SECONDS),
    )
    holder.append(connection)
    logger.info(
        "Credential relay wired",
        extra={"sources": [s.name for s in registry.sources()], "local_url": executor.EXECUTOR_LOCAL_URL},
    )
    return CredentialRelay(settings, store, catalog, refresher, registry, handoff, connection)
