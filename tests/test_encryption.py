import base64

import httpx
import pytest
from cryptography.hazmat.primitives.asymmetric import padding

from credential_relay.core.errors import EncryptionError
from credential_relay.core.models import ConnectionTarget
from credential_relay.executor.encryption import CredentialEncryptionBridge, encrypt_with_public_key

LOCAL = ConnectionTarget(type="localhost", url="ws://127.0.0.1:4002", name="localhost")
REMOTE = ConnectionTarget(type="remote", url="wss://sandbox-4002.app.github.dev", name="sandbox")


def _key_transport(pem, seen=None, body=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return httpx.Response(
            200,
            json=body if body is not None else {
                "success": True,
                "publicKey": pem,
                "algorithm": "RSA-2048",
                "createdAt": "2026-01-01T00:00:00Z",
                "fingerprint": "ab:cd",
            },
        )

    return httpx.MockTransport(handler)


def _decrypt(private_key, ciphertext_b64):
    return private_key.decrypt(base64.b64decode(ciphertext_b64), padding.PKCS1v15()).decode("utf-8")


@pytest.mark.asyncio
async def test_encrypt_for_target_fetches_key_with_credential(rsa_keypair):
    private_key, pem = rsa_keypair
    seen = []
    bridge = CredentialEncryptionBridge(get_credential=lambda: "exec-cred", transport=_key_transport(pem, seen))

    ciphertext = await bridge.encrypt_for_target("gho_secret", REMOTE)

    assert _decrypt(private_key, ciphertext) == "gho_secret"
    assert str(seen[0].url) == "https://sandbox-4002.app.github.dev/crypto/public-key"
    assert seen[0].headers["Authorization"] == "Bearer exec-cred"


@pytest.mark.asyncio
async def test_supplied_key_skips_fetch(rsa_keypair):
    private_key, pem = rsa_keypair

    def handler(request):
        raise AssertionError("no fetch expected")

    bridge = CredentialEncryptionBridge(transport=httpx.MockTransport(handler))
    ciphertext = await bridge.encrypt_for_target("tok", LOCAL, public_key=pem)
    assert _decrypt(private_key, ciphertext) == "tok"


@pytest.mark.asyncio
async def test_unreachable_target_raises_encryption_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    bridge = CredentialEncryptionBridge(transport=httpx.MockTransport(handler))
    with pytest.raises(EncryptionError) as excinfo:
        await bridge.encrypt_for_target("tok", LOCAL)
    assert isinstance(excinfo.value.cause, httpx.ConnectError)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        {"success": False, "publicKey": "x"},
        {"success": True, "publicKey": ""},
        {"success": True},
    ],
)
async def test_invalid_key_response_raises(body):
    bridge = CredentialEncryptionBridge(transport=_key_transport("unused", body=body))
    with pytest.raises(EncryptionError):
        await bridge.fetch_public_key(LOCAL)


def test_garbage_key_raises_encryption_error():
    with pytest.raises(EncryptionError):
        encrypt_with_public_key("tok", "-----BEGIN PUBLIC KEY-----\nnope\n-----END PUBLIC KEY-----\n")
