import json

import httpx
import pytest

from credential_relay.core.models import ProviderToken
from credential_relay.core.security import now_ms
from credential_relay.credentials.providers import ProviderCatalog
from credential_relay.sources.environment import EnvironmentTokenSource
from credential_relay.sources.local import LocalTokenSource
from credential_relay.sources.registry import SourceRegistry
from credential_relay.sources.vault import TokenVaultClient, VaultTokenSource

VAULT = "https://vault.example.com"


@pytest.mark.asyncio
async def test_local_source_serves_stored_tokens(store):
    store.put(ProviderToken(provider_id="github", access_token="gho_1", user={"name": "Octo"}))
    source = LocalTokenSource(store, catalog=ProviderCatalog.from_env())

    assert await source.can_provide("github")
    assert not await source.can_provide("slack")

    result = await source.resolve("github")
    assert result.success
    assert result.token == "gho_1"
    assert result.provider_name == "GitHub"
    assert result.user == {"name": "Octo"}
    assert await source.list_providers() == ["github"]


@pytest.mark.asyncio
async def test_local_source_expired_without_refresh_fails_softly(store):
    store.put(ProviderToken(provider_id="github", access_token="old", expires_at=now_ms() - 1))
    source = LocalTokenSource(store)

    assert await source.can_provide("github")
    result = await source.resolve("github")
    assert not result.success
    assert "expired" in result.error


@pytest.mark.asyncio
async def test_environment_source():
    source = EnvironmentTokenSource({"PROVIDER_TOKEN_FOR_GOOGLE_DRIVE": "ya29", "PROVIDER_TOKEN_FOR_EMPTY": "", "HOME": "/root"})

    assert await source.can_provide("google-drive")
    assert not await source.can_provide("empty")
    assert (await source.resolve("google-drive")).token == "ya29"
    assert not (await source.resolve("github")).success
    assert await source.list_providers() == ["google-drive"]


def _vault_transport(seen, accounts_status=200):
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path == "/api/token-vault/connected-accounts":
            if accounts_status != 200:
                return httpx.Response(accounts_status, json={"success": False})
            return httpx.Response(
                200,
                json={"success": True, "accounts": [{"id": "acc-1", "connection": "google_stored_in_cloud", "scopes": ["drive"]}]},
            )
        if request.url.path == "/api/token-vault/connected-accounts/credentials":
            return httpx.Response(
                200,
                json={"success": True, "credentials": {"access_token": "vault-google", "token_type": "Bearer", "expires_in": 3600}},
            )
        return httpx.Response(404)

    return httpx.MockTransport(handler)


def _vault_source(seen, accounts_status=200, credential="vault-cred", catalog=None):
    async def get_credential():
        return credential

    client = TokenVaultClient(VAULT, transport=_vault_transport(seen, accounts_status))
    return VaultTokenSource(client, get_credential, catalog)


@pytest.mark.asyncio
async def test_vault_source_resolves_connected_account():
    seen = []
    source = _vault_source(seen)

    assert await source.can_provide("google")
    result = await source.resolve("google")

    assert result.success
    assert result.token == "vault-google"
    assert result.metadata["accountId"] == "acc-1"
    assert result.metadata["storage"] == "stored-in-cloud"
    assert result.provider_name == "google"
    assert all(r.headers["Authorization"] == "Bearer vault-cred" for r in seen)
    posted = [r for r in seen if r.method == "POST"]
    assert json.loads(posted[0].content) == {"connection": "google_stored_in_cloud"}
    assert await source.list_providers() == ["google"]


@pytest.mark.asyncio
async def test_vault_source_unavailable_maps_to_false_and_failure():
    source = _vault_source([], accounts_status=500)

    assert await source.can_provide("google") is False
    result = await source.resolve("google")
    assert not result.success
    assert "connected-accounts" in result.error
    assert await source.list_providers() == []


@pytest.mark.asyncio
async def test_vault_source_without_credential_is_skipped():
    seen = []
    source = _vault_source(seen, credential=None)
    assert await source.can_provide("google") is False
    assert seen == []


@pytest.mark.asyncio
async def test_store_first_then_vault(store):
    store.put(ProviderToken(provider_id="github", access_token="local-gh"))
    registry = SourceRegistry([LocalTokenSource(store), _vault_source([])])

    github = await registry.resolve("github")
    google = await registry.resolve("google")
    assert (github.token, github.source_name) == ("local-gh", "local-provider")
    assert (google.token, google.source_name) == ("vault-google", "connected-accounts")


@pytest.mark.asyncio
async def test_vault_source_reports_catalog_display_name():
    source = _vault_source([], catalog=ProviderCatalog.from_env())
    result = await source.resolve("google")
    assert result.provider_name == "Google"
