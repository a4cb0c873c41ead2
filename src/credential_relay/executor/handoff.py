# PUBLIC_INTERFACE
"""
Answers credential requests from the executor.

Every inbound request-provider-token yields exactly one provider-auth-token
envelope echoing the requestId: the encrypted token on success, an error
otherwise. Plaintext tokens are never sent.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

from ..core.errors import CredentialRelayError, EncryptionError, ErrorCode, NoTokenFound
from ..core.logging import get_logger
from ..core.models import ConnectionTarget, ExecutorEnvelope
from ..core.observability import increment_metric, log_context
from ..core.security import now_ms
from ..credentials.providers import ProviderCatalog
from ..sources.registry import SourceRegistry
from .encryption import CredentialEncryptionBridge

logger = get_logger(__name__)

REQUEST_TOKEN = "request-provider-token"
REQUEST_STATUS = "request-provider-status"
TOKEN_RESPONSE = "provider-auth-token"
STATUS_RESPONSE = "user-tokens-available"


def encryption_method(target: ConnectionTarget) -> str:
    return f"rsa-{target.type}"


class CredentialHandoff:
    """Resolves, encrypts and packages credentials for the current executor target."""

    def __init__(
        self,
        registry: SourceRegistry,
        bridge: CredentialEncryptionBridge,
        catalog: Optional[ProviderCatalog] = None,
    ):
        self.registry = registry
        self.bridge = bridge
        self.catalog = catalog or ProviderCatalog()
        self._public_keys: Dict[str, str] = {}

    # PUBLIC_INTERFACE
    def forget_public_key(self, target: Optional[ConnectionTarget] = None) -> None:
        """Drop cached public keys (one target, or all)."""
        if target is None:
            self._public_keys.clear()
        else:
            self._public_keys.pop(target.url, None)

    async def _encrypt(self, token: str, target: ConnectionTarget) -> str:
        cached = self._public_keys.get(target.url)
        if cached:
            try:
                return await self.bridge.encrypt_for_target(token, target, public_key=cached)
            except EncryptionError:
                # key rotated on the executor side
                logger.info("Cached public key for %s rejected; refetching", target.label)
                self._public_keys.pop(target.url, None)
        public_key = await self.bridge.fetch_public_key(target)
        self._public_keys[target.url] = public_key
        return await self.bridge.encrypt_for_target(token, target, public_key=public_key)

    # PUBLIC_INTERFACE
    async def handle(self, envelope: ExecutorEnvelope, target: Optional[ConnectionTarget]) -> Optional[Dict[str, Any]]:
        """Return the response envelope for a request, or None if the type is not ours."""
        if envelope.type == REQUEST_TOKEN:
            return await self.provider_token_response(envelope.provider_id or "", envelope.request_id, target)
        if envelope.type == REQUEST_STATUS:
            return await self.status_response(envelope.request_id)
        return None

    # PUBLIC_INTERFACE
    async def provider_token_response(
        self,
        provider_id: str,
        request_id: Any,
        target: Optional[ConnectionTarget],
    ) -> Dict[str, Any]:
        """Build the single provider-auth-token answer for one request."""
        increment_metric("credential_requests_total", 1.0)
        with log_context(provider_id=provider_id, target=target.label if target else None):
            try:
                if target is None:
                    raise EncryptionError("no executor target to encrypt for")
                result = await self.registry.resolve(provider_id)
                if not result.success or not result.token:
                    raise NoTokenFound(result.error or f"no token for {provider_id}")
                ciphertext = await self._encrypt(result.token, target)
            except CredentialRelayError as exc:
                logger.warning("Credential request %s failed (%s)", request_id, exc.code)
                return self._error_response(provider_id, request_id, exc.message, exc.code)
            except Exception as exc:
                logger.exception("Credential request %s crashed", request_id)
                return self._error_response(provider_id, request_id, f"internal error: {type(exc).__name__}", ErrorCode.INTERNAL)
            logger.info("Delivered encrypted credential via %s", result.source_name, extra={"request": request_id})

        canonical = result.metadata.get("actualProviderId") or provider_id
        response: Dict[str, Any] = {
            "type": TOKEN_RESPONSE,
            "providerId": provider_id,
            "token": ciphertext,
            "encrypted": True,
            "encryptionMethod": encryption_method(target),
            "authenticated": True,
            "providerName": result.provider_name or self.catalog.display_name(canonical),
            "source": result.source_name,
            "requestId": request_id,
            "timestamp": now_ms(),
        }
        if result.user:
            response["user"] = result.user
        return response

    def _error_response(self, provider_id: str, request_id: Any, message: str, code: str) -> Dict[str, Any]:
        return {
            "type": TOKEN_RESPONSE,
            "providerId": provider_id,
            "error": message,
            "errorCode": code,
            "encrypted": False,
            "authenticated": False,
            "requestId": request_id,
            "timestamp": now_ms(),
        }

    # PUBLIC_INTERFACE
    async def status_response(self, request_id: Any) -> Dict[str, Any]:
        """Advertise which credentials could be supplied, without resolving them."""
        try:
            names = await self.registry.list_all_token_names()
        except Exception:
            logger.exception("Listing available tokens failed")
            names = []
        return {
            "type": STATUS_RESPONSE,
            "tokensAvailable": names,
            "requestId": request_id,
            "timestamp": now_ms(),
        }
