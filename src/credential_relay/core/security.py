from __future__ import annotations

import base64
import hashlib
import time
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from .logging import get_logger

logger = get_logger(__name__)


# PUBLIC_INTERFACE
def get_fernet(raw_key: str) -> Fernet:
    """Return a Fernet instance for the configured ENCRYPTION_KEY.

    The key may be any string; 32 bytes are derived from it with SHA-256 and
    base64-url encoded as Fernet expects.
    """
    if not raw_key:
        raise ValueError("ENCRYPTION_KEY is not configured")
    digest = hashlib.sha256(raw_key.encode("utf-8")).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


# PUBLIC_INTERFACE
def encrypt_secret(fernet: Fernet, plaintext: str) -> str:
    """Encrypt a secret string with Fernet; returns token in urlsafe base64."""
    return fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")


# PUBLIC_INTERFACE
def decrypt_secret(fernet: Fernet, token: Optional[str]) -> Optional[str]:
    """Decrypt a token; returns plaintext or None if input is None or unreadable."""
    if token is None:
        return None
    try:
        return fernet.decrypt(token.encode("utf-8")).decode("utf-8")
    except (InvalidToken, ValueError):
        # Do not leak the token content in logs
        logger.warning("Failed to decrypt secret token; treating as missing.")
        return None


# PUBLIC_INTERFACE
def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


# PUBLIC_INTERFACE
def compute_expiry_ms(expires_in_seconds: int, skew_seconds: int = 30) -> int:
    """Return absolute expiry (epoch ms) with small safety skew."""
    return now_ms() + max(0, expires_in_seconds - skew_seconds) * 1000


# PUBLIC_INTERFACE
def is_expired(expires_at: Optional[int], at: Optional[int] = None) -> bool:
    """A token with no expiry never expires; otherwise expired once now >= expires_at."""
    if expires_at is None:
        return False
    return (now_ms() if at is None else at) >= expires_at
