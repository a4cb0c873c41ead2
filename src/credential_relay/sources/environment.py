from __future__ import annotations

import os
from typing import List, Mapping, Optional

from ..core.models import TokenResult, TokenSourceDescriptor
from .base import TokenSource
from .registry import TOKEN_NAME_PREFIX, normalize, token_wire_name


class EnvironmentTokenSource(TokenSource):
    """Tokens supplied as PROVIDER_TOKEN_FOR_<ID> variables (headless runs, CI, secret managers that inject env)."""

    def __init__(self, environ: Optional[Mapping[str, str]] = None, name: str = "environment", priority: int = 30):
        self.descriptor = TokenSourceDescriptor(name=name, priority=priority)
        self._environ = environ if environ is not None else os.environ

    async def can_provide(self, provider_id: str) -> bool:
        return bool(self._environ.get(token_wire_name(provider_id)))

    async def resolve(self, provider_id: str) -> TokenResult:
        value = self._environ.get(token_wire_name(provider_id))
        if not value:
            return TokenResult.failure(f"{token_wire_name(provider_id)} is not set")
        return TokenResult(success=True, token=value, provider_name=provider_id, metadata={"source": self.name})

    async def list_providers(self) -> List[str]:
        return [
            normalize(key[len(TOKEN_NAME_PREFIX):])
            for key, value in self._environ.items()
            if key.startswith(TOKEN_NAME_PREFIX) and value
        ]
