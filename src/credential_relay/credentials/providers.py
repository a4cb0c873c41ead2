from __future__ import annotations

import os
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class ProviderConfig(BaseModel):
    """OAuth endpoints and client credentials for a provider whose tokens we refresh locally."""

    id: str = Field(..., description="Canonical provider id")
    name: str = Field(..., description="Human readable name, echoed as providerName")
    token_url: str = Field(..., description="Token endpoint used for refresh_token grants")
    client_id: Optional[str] = Field(default=None, description="OAuth client id")
    client_secret: Optional[str] = Field(default=None, description="OAuth client secret (absent for PKCE-only clients)")


_BUILTIN: List[tuple[str, str, str]] = [
    ("github", "GitHub", "https://github.com/login/oauth/access_token"),
    ("google", "Google", "https://oauth2.googleapis.com/token"),
    ("slack", "Slack", "https://slack.com/api/oauth.v2.access"),
    ("microsoft", "Microsoft", "https://login.microsoftonline.com/common/oauth2/v2.0/token"),
    ("linear", "Linear", "https://api.linear.app/oauth/token"),
    ("notion", "Notion", "https://api.notion.com/v1/oauth/token"),
]


def _env_prefix(provider_id: str) -> str:
    return provider_id.upper().replace("-", "_")


class ProviderCatalog:
    """In-memory catalog of known providers, keyed by canonical id."""

    def __init__(self, providers: Optional[List[ProviderConfig]] = None):
        self._providers: Dict[str, ProviderConfig] = {}
        for provider in providers or []:
            self.register(provider)

    # PUBLIC_INTERFACE
    @classmethod
    def from_env(cls) -> "ProviderCatalog":
        """Built-in providers with client credentials read from <PROVIDER>_CLIENT_ID / _CLIENT_SECRET."""
        providers = []
        for provider_id, name, token_url in _BUILTIN:
            prefix = _env_prefix(provider_id)
            providers.append(
                ProviderConfig(
                    id=provider_id,
                    name=name,
                    token_url=os.getenv(f"{prefix}_TOKEN_URL", token_url),
                    client_id=os.getenv(f"{prefix}_CLIENT_ID") or None,
                    client_secret=os.getenv(f"{prefix}_CLIENT_SECRET") or None,
                )
            )
        return cls(providers)

    # PUBLIC_INTERFACE
    def register(self, provider: ProviderConfig) -> None:
        """Add or replace a provider."""
        self._providers[provider.id] = provider

    # PUBLIC_INTERFACE
    def get(self, provider_id: str) -> Optional[ProviderConfig]:
        """Return the provider config or None."""
        return self._providers.get(provider_id)

    # PUBLIC_INTERFACE
    def display_name(self, provider_id: str) -> str:
        """Provider display name, falling back to the id itself."""
        provider = self._providers.get(provider_id)
        return provider.name if provider else provider_id

    def ids(self) -> List[str]:
        return list(self._providers)
