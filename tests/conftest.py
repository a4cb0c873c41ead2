import asyncio
import json
from typing import Any, Dict, List, Optional, Set, Tuple

import aiohttp
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from credential_relay.credentials.token_store import TokenStore


@pytest.fixture
def store(tmp_path):
    return TokenStore(tmp_path / "tokens", "test-encryption-key")


@pytest.fixture(scope="session")
def rsa_keypair():
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    pem = private_key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")
    return private_key, pem


class FakeSocket:
    """Scripted duplex socket: tests push inbound frames, outbound JSON is recorded."""

    def __init__(self):
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.sent: List[Dict[str, Any]] = []
        self.closed = False

    async def receive(self) -> aiohttp.WSMessage:
        return await self.inbox.get()

    async def send_str(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.inbox.put_nowait(aiohttp.WSMessage(aiohttp.WSMsgType.CLOSED, None, None))

    def feed_text(self, text: str) -> None:
        self.inbox.put_nowait(aiohttp.WSMessage(aiohttp.WSMsgType.TEXT, text, None))

    def feed(self, payload: Dict[str, Any]) -> None:
        self.feed_text(json.dumps(payload))

    def peer_close(self) -> None:
        self.inbox.put_nowait(aiohttp.WSMessage(aiohttp.WSMsgType.CLOSE, 1000, "bye"))


class FakeConnector:
    """Stand-in for the aiohttp ws_connect factory."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.fail_urls: Set[str] = set()
        self.calls: List[Tuple[str, Dict[str, str]]] = []
        self.sockets: List[FakeSocket] = []
        self.gate: Optional[asyncio.Event] = None

    async def __call__(self, url: str, headers: Dict[str, str]) -> FakeSocket:
        self.calls.append((url, dict(headers)))
        if self.gate is not None:
            await self.gate.wait()
        if self.fail or url in self.fail_urls:
            raise aiohttp.ClientConnectionError(f"connection to {url} refused")
        sock = FakeSocket()
        self.sockets.append(sock)
        return sock


@pytest.fixture
def connector():
    return FakeConnector()


async def no_sleep(_delay: float) -> None:
    await asyncio.sleep(0)


async def settle(rounds: int = 50) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)
