# PUBLIC_INTERFACE
"""
In-transit encryption of resolved credentials for the current executor target.

The executor publishes an RSA public key at {target}/crypto/public-key; tokens
are encrypted with PKCS#1 v1.5 padding and sent base64-encoded. There is no
plaintext fallback: any failure raises EncryptionError.
"""
from __future__ import annotations

import base64
from typing import Callable, Optional

import httpx
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from ..core.errors import EncryptionError
from ..core.logging import get_logger
from ..core.models import ConnectionTarget
from ..core.observability import increment_metric

logger = get_logger(__name__)

PUBLIC_KEY_PATH = "/crypto/public-key"


class CredentialEncryptionBridge:
    """Fetches a target's public key and encrypts tokens for it."""

    def __init__(
        self,
        timeout: float = 10.0,
        get_credential: Optional[Callable[[], Optional[str]]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout
        self._get_credential = get_credential or (lambda: None)
        self._transport = transport

    def _headers(self) -> dict:
        headers = {"Accept": "application/json"}
        credential = self._get_credential()
        if credential:
            headers["Authorization"] = f"Bearer {credential}"
        return headers

    # PUBLIC_INTERFACE
    async def fetch_public_key(self, target: ConnectionTarget) -> str:
        """Fetch the PEM public key published by the target."""
        url = target.http_url + PUBLIC_KEY_PATH
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.get(url, headers=self._headers())
        except httpx.HTTPError as exc:
            increment_metric("encryption_failures_total", 1.0)
            raise EncryptionError(f"public key fetch from {target.label} failed: {type(exc).__name__}", cause=exc) from exc

        if resp.status_code >= 400:
            increment_metric("encryption_failures_total", 1.0)
            raise EncryptionError(f"public key fetch from {target.label} returned HTTP {resp.status_code}")
        try:
            body = resp.json()
        except ValueError as exc:
            increment_metric("encryption_failures_total", 1.0)
            raise EncryptionError("public key response was not JSON", cause=exc) from exc

        public_key = body.get("publicKey") if isinstance(body, dict) else None
        if not (isinstance(body, dict) and body.get("success") is True and public_key):
            increment_metric("encryption_failures_total", 1.0)
            raise EncryptionError(f"target {target.label} did not return a public key")
        logger.info(
            "Fetched public key from %s",
            target.label,
            extra={"algorithm": body.get("algorithm"), "fingerprint": body.get("fingerprint")},
        )
        return str(public_key)

    # PUBLIC_INTERFACE
    async def encrypt_for_target(
        self,
        plain_token: str,
        target: ConnectionTarget,
        public_key: Optional[str] = None,
    ) -> str:
        """Encrypt plain_token for target and return base64 ciphertext.

        A previously fetched public_key skips the network round trip.
        """
        pem = public_key or await self.fetch_public_key(target)
        return encrypt_with_public_key(plain_token, pem)


# PUBLIC_INTERFACE
def encrypt_with_public_key(plain_token: str, public_key_pem: str) -> str:
    """RSA PKCS#1 v1.5 encrypt the UTF-8 token and base64-encode the ciphertext."""
    try:
        key = serialization.load_pem_public_key(public_key_pem.encode("utf-8"))
        if not isinstance(key, rsa.RSAPublicKey):
            raise TypeError(f"expected an RSA public key, got {type(key).__name__}")
        ciphertext = key.encrypt(plain_token.encode("utf-8"), padding.PKCS1v15())
    except (ValueError, TypeError) as exc:
        increment_metric("encryption_failures_total", 1.0)
        raise EncryptionError(f"encryption failed: {exc}", cause=exc) from exc
    return base64.b64encode(ciphertext).decode("ascii")
