import httpx
import pytest

from credential_relay.executor.discovery import CodespacesDiscovery

CODESPACES = {
    "codespaces": [
        {"name": "stopped-one", "state": "Shutdown", "last_used_at": "2026-10-18T10:00:00Z", "web_url": "https://stopped-one.github.dev"},
        {"name": "older-fwd", "display_name": "Older", "state": "Available", "last_used_at": "2026-10-01T10:00:00Z", "web_url": "https://older-fwd.github.dev"},
        {"name": "newer-nofwd", "state": "Available", "last_used_at": "2026-10-17T10:00:00Z", "web_url": "https://newer-nofwd.github.dev"},
        {"name": "newest-nourl", "state": "Available", "last_used_at": "2026-10-18T12:00:00Z", "web_url": "https://example.com/x"},
    ]
}


def _transport(seen, status=200):
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if status != 200:
            return httpx.Response(status, json={"message": "Bad credentials"})
        path = request.url.path
        if path == "/user/codespaces":
            return httpx.Response(200, json=CODESPACES)
        if path == "/user/codespaces/older-fwd/ports":
            return httpx.Response(200, json={"ports": [{"port": 4002, "url": "https://older-fwd-4002.app.github.dev", "visibility": "private"}]})
        if path.endswith("/ports"):
            return httpx.Response(200, json={"ports": [{"port": 3000, "url": "https://x-3000.app.github.dev", "visibility": "private"}]})
        return httpx.Response(404)

    return httpx.MockTransport(handler)


@pytest.mark.asyncio
async def test_discover_ranks_forwarded_port_first_then_recency():
    seen = []
    discovery = CodespacesDiscovery(get_credential=lambda: "gh-token", transport=_transport(seen))

    targets = await discovery.discover()

    assert [(t.remote_id, t.url) for t in targets] == [
        ("older-fwd", "wss://older-fwd-4002.app.github.dev"),
        ("newer-nofwd", "wss://newer-nofwd-4002.app.github.dev"),
    ]
    assert targets[0].type == "remote"
    assert targets[0].name == "Older"
    assert seen[0].headers["Authorization"] == "Bearer gh-token"
    assert not any("stopped-one" in str(r.url) for r in seen)


@pytest.mark.asyncio
async def test_discover_without_credential_makes_no_calls():
    seen = []
    discovery = CodespacesDiscovery(get_credential=lambda: None, transport=_transport(seen))
    assert not discovery.available()
    assert await discovery.discover() == []
    assert seen == []


@pytest.mark.asyncio
async def test_discover_api_failure_returns_empty():
    discovery = CodespacesDiscovery(get_credential=lambda: "bad", transport=_transport([], status=401))
    assert await discovery.discover() == []
