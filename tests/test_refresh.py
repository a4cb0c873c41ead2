from urllib.parse import parse_qs

import httpx
import pytest

from credential_relay.core.errors import RefreshFailed
from credential_relay.core.models import ProviderToken
from credential_relay.core.security import now_ms
from credential_relay.credentials.providers import ProviderCatalog, ProviderConfig
from credential_relay.credentials.refresh import OAuthRefresher, refresh_expired_on_startup


def _catalog():
    return ProviderCatalog(
        [ProviderConfig(id="github", name="GitHub", token_url="https://auth.example.com/token", client_id="cid", client_secret="sec")]
    )


@pytest.mark.asyncio
async def test_refresher_posts_refresh_grant():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"access_token": "new", "expires_in": 3600, "token_type": "bearer"})

    refresher = OAuthRefresher(_catalog(), transport=httpx.MockTransport(handler))
    token = await refresher("github", "r1")

    form = parse_qs(seen[0].content.decode())
    assert form["grant_type"] == ["refresh_token"]
    assert form["refresh_token"] == ["r1"]
    assert form["client_id"] == ["cid"]
    assert token.access_token == "new"
    assert token.refresh_token == "r1"
    assert now_ms() < token.expires_at <= now_ms() + 3600 * 1000


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(400, json={"error": "invalid_grant"}),
        httpx.Response(200, json={"error": "bad_refresh_token"}),
        httpx.Response(200, text="<html>"),
    ],
)
async def test_refresher_raises_refresh_failed(response):
    refresher = OAuthRefresher(_catalog(), transport=httpx.MockTransport(lambda request: response))
    with pytest.raises(RefreshFailed):
        await refresher("github", "r1")


@pytest.mark.asyncio
async def test_refresher_network_error_and_unknown_provider():
    def handler(request):
        raise httpx.ConnectError("down", request=request)

    refresher = OAuthRefresher(_catalog(), transport=httpx.MockTransport(handler))
    with pytest.raises(RefreshFailed) as excinfo:
        await refresher("github", "r1")
    assert isinstance(excinfo.value.cause, httpx.ConnectError)

    with pytest.raises(RefreshFailed):
        await refresher("unknown", "r1")


@pytest.mark.asyncio
async def test_startup_refresh_is_sequential_and_best_effort(store):
    expired = now_ms() - 1
    store.put(ProviderToken(provider_id="a", access_token="a0", refresh_token="ra", expires_at=expired))
    store.put(ProviderToken(provider_id="b", access_token="b0", refresh_token="rb", expires_at=expired))
    store.put(ProviderToken(provider_id="c", access_token="c0", refresh_token="rc", expires_at=now_ms() + 60_000))

    in_flight = []
    calls = []

    async def refresh(provider_id, refresh_token):
        in_flight.append(provider_id)
        assert len(in_flight) == 1
        calls.append(provider_id)
        try:
            if provider_id == "a":
                raise RefreshFailed("revoked")
            return ProviderToken(provider_id=provider_id, access_token=provider_id + "1", expires_at=now_ms() + 60_000)
        finally:
            in_flight.remove(provider_id)

    refreshed = await refresh_expired_on_startup(store, refresh)

    assert calls == ["a", "b"]
    assert refreshed == ["b"]
    assert store.get("b").access_token == "b1"
    assert store.status()["a"].last_error == "revoked"


@pytest.mark.asyncio
async def test_startup_refresh_with_nothing_expired(store):
    async def refresh(provider_id, refresh_token):
        raise AssertionError("nothing to refresh")

    assert await refresh_expired_on_startup(store, refresh) == []
