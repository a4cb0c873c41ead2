import base64

import httpx
import pytest
from cryptography.hazmat.primitives.asymmetric import padding

from credential_relay.core.models import ConnectionTarget, ExecutorEnvelope, TokenResult, TokenSourceDescriptor
from credential_relay.executor.encryption import CredentialEncryptionBridge
from credential_relay.executor.handoff import CredentialHandoff
from credential_relay.sources.base import TokenSource
from credential_relay.sources.registry import SourceRegistry

LOCAL = ConnectionTarget(type="localhost", url="ws://127.0.0.1:4002", name="localhost")
REMOTE = ConnectionTarget(type="remote", url="wss://sandbox-4002.app.github.dev", name="sandbox")


class StaticSource(TokenSource):
    def __init__(self, tokens):
        self.descriptor = TokenSourceDescriptor(name="static", priority=0)
        self.tokens = tokens

    async def can_provide(self, provider_id):
        return provider_id in self.tokens

    async def resolve(self, provider_id):
        return TokenResult(success=True, token=self.tokens[provider_id], user={"name": "Octo"})

    async def list_providers(self):
        return list(self.tokens)


def _handoff(pem, fetches=None, fail=False):
    def handler(request):
        if fetches is not None:
            fetches.append(request)
        if fail:
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200, json={"success": True, "publicKey": pem})

    registry = SourceRegistry([StaticSource({"github": "gho_secret", "google-drive": "ya29"})])
    bridge = CredentialEncryptionBridge(transport=httpx.MockTransport(handler))
    return CredentialHandoff(registry, bridge)


def _request(provider_id, request_id):
    return ExecutorEnvelope.model_validate({"type": "request-provider-token", "providerId": provider_id, "requestId": request_id})


@pytest.mark.asyncio
async def test_token_request_yields_encrypted_response(rsa_keypair):
    private_key, pem = rsa_keypair
    handoff = _handoff(pem)

    response = await handoff.handle(_request("PROVIDER_TOKEN_FOR_GITHUB", "req-1"), REMOTE)

    assert response["type"] == "provider-auth-token"
    assert response["requestId"] == "req-1"
    assert response["providerId"] == "PROVIDER_TOKEN_FOR_GITHUB"
    assert response["encrypted"] is True
    assert response["encryptionMethod"] == "rsa-remote"
    assert response["authenticated"] is True
    assert response["providerName"] == "github"
    assert response["source"] == "static"
    assert response["user"] == {"name": "Octo"}
    assert "error" not in response
    plain = private_key.decrypt(base64.b64decode(response["token"]), padding.PKCS1v15()).decode()
    assert plain == "gho_secret"


@pytest.mark.asyncio
async def test_public_key_is_reused_per_target(rsa_keypair):
    _, pem = rsa_keypair
    fetches = []
    handoff = _handoff(pem, fetches)

    await handoff.provider_token_response("github", "1", LOCAL)
    await handoff.provider_token_response("google-drive", "2", LOCAL)
    assert len(fetches) == 1

    handoff.forget_public_key(LOCAL)
    response = await handoff.provider_token_response("github", "3", LOCAL)
    assert len(fetches) == 2
    assert response["encryptionMethod"] == "rsa-localhost"


@pytest.mark.asyncio
async def test_unknown_provider_yields_error_envelope(rsa_keypair):
    _, pem = rsa_keypair
    response = await _handoff(pem).handle(_request("linear", "req-2"), LOCAL)

    assert response["type"] == "provider-auth-token"
    assert response["requestId"] == "req-2"
    assert "token" not in response
    assert response["errorCode"] == "NO_TOKEN_FOUND"
    assert "linear" in response["error"]


@pytest.mark.asyncio
async def test_unreachable_public_key_yields_error_not_token():
    response = await _handoff("unused", fail=True).handle(_request("github", "req-3"), LOCAL)

    assert response["requestId"] == "req-3"
    assert "token" not in response
    assert response["errorCode"] == "ENCRYPTION_FAILED"
    assert response["encrypted"] is False


@pytest.mark.asyncio
async def test_no_target_yields_error():
    response = await _handoff("unused").provider_token_response("github", "req-4", None)
    assert response["requestId"] == "req-4"
    assert "token" not in response


@pytest.mark.asyncio
async def test_status_request_lists_token_names():
    handoff = _handoff("unused")
    response = await handoff.handle(ExecutorEnvelope(type="request-provider-status", request_id="s-1"), LOCAL)
    assert response["type"] == "user-tokens-available"
    assert response["requestId"] == "s-1"
    assert response["tokensAvailable"] == ["PROVIDER_TOKEN_FOR_GITHUB", "PROVIDER_TOKEN_FOR_GOOGLE_DRIVE"]


@pytest.mark.asyncio
async def test_other_messages_are_not_answered():
    assert await _handoff("unused").handle(ExecutorEnvelope(type="task-progress"), LOCAL) is None
