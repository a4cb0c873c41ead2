# PUBLIC_INTERFACE
"""
Priority-ordered token source registry.

normalize() is the only place that knows the shape of provider ids: callers may
pass a canonical id ("github"), a wire-level token name
("PROVIDER_TOKEN_FOR_GITHUB") or a vault-hinted name
("github_stored_in_cloud"); all of them resolve to the same canonical id.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from ..core.errors import CredentialRelayError
from ..core.logging import get_logger
from ..core.models import TokenResult, WireModel
from ..core.observability import increment_metric, provider_id_ctx
from .base import TokenSource

logger = get_logger(__name__)

TOKEN_NAME_PREFIX = "PROVIDER_TOKEN_FOR_"

# Wire-level token name prefixes (already lower-cased and hyphenated)
_NAME_PREFIXES: Dict[str, str] = {
    "provider-token-for-": "provider-token",
    "provider-user-token-for-": "provider-token",
    "connected-account-token-for-": "connected-account",
}
# Suffixes that only hint at which source holds the token
_HINT_SUFFIXES: Dict[str, str] = {
    "-stored-in-cloud": "stored-in-cloud",
}


@dataclass(frozen=True)
class ProviderRef:
    """A canonical provider id plus the routing hints stripped from the raw name."""

    raw: str
    provider_id: str
    token_type: Optional[str] = None
    hints: Tuple[str, ...] = ()


# PUBLIC_INTERFACE
def parse_provider_id(raw_id: str) -> ProviderRef:
    """Canonicalize a raw provider id and keep the stripped hints as metadata."""
    value = (raw_id or "").strip().lower().replace("_", "-")
    token_type: Optional[str] = None
    hints: List[str] = []
    changed = True
    while changed:
        changed = False
        for prefix, kind in _NAME_PREFIXES.items():
            if value.startswith(prefix) and len(value) > len(prefix):
                value = value[len(prefix):].strip()
                token_type = token_type or kind
                changed = True
        for suffix, hint in _HINT_SUFFIXES.items():
            if value.endswith(suffix) and len(value) > len(suffix):
                value = value[: -len(suffix)].strip()
                if hint not in hints:
                    hints.append(hint)
                changed = True
    return ProviderRef(raw=raw_id, provider_id=value, token_type=token_type, hints=tuple(hints))


# PUBLIC_INTERFACE
def normalize(raw_id: str) -> str:
    """Canonical provider id: lower-case, hyphen-separated, without name prefixes or hint suffixes."""
    return parse_provider_id(raw_id).provider_id


# PUBLIC_INTERFACE
def token_wire_name(provider_id: str) -> str:
    """Name under which the executor advertises a credential, e.g. PROVIDER_TOKEN_FOR_GOOGLE_DRIVE."""
    return TOKEN_NAME_PREFIX + normalize(provider_id).upper().replace("-", "_")


class ProviderListing(WireModel):
    provider_id: str
    source_name: str


class SourceRegistry:
    """Resolves provider ids against registered sources in strict priority order.

    First success wins; partial results are never merged across sources. A
    source that raises is logged and skipped.
    """

    def __init__(
        self,
        sources: Optional[List[TokenSource]] = None,
        cache_ttl_seconds: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._sources: List[TokenSource] = []
        self._cache_ttl = max(0.0, float(cache_ttl_seconds))
        self._cache: Dict[str, Tuple[float, TokenResult]] = {}
        self._clock = clock
        for source in sources or []:
            self.register(source)

    normalize = staticmethod(normalize)

    # PUBLIC_INTERFACE
    def register(self, source: TokenSource) -> None:
        """Register a source; a source with the same name is replaced."""
        if any(s.name == source.name for s in self._sources):
            logger.info("Replacing token source %s", source.name)
            self.unregister(source.name)
        self._sources.append(source)
        # list.sort is stable: equal priorities keep registration order
        self._sources.sort(key=lambda s: s.priority)
        self._cache.clear()

    # PUBLIC_INTERFACE
    def unregister(self, name: str) -> bool:
        """Remove a source by name; returns False if it was not registered."""
        before = len(self._sources)
        self._sources = [s for s in self._sources if s.name != name]
        self._cache.clear()
        return len(self._sources) != before

    # PUBLIC_INTERFACE
    def sources(self) -> List[TokenSource]:
        """Registered sources in the order they are consulted."""
        return list(self._sources)

    # PUBLIC_INTERFACE
    def invalidate(self, provider_id: Optional[str] = None) -> None:
        """Drop cached resolutions (all, or for one provider)."""
        if provider_id is None:
            self._cache.clear()
        else:
            self._cache.pop(normalize(provider_id), None)

    def _cached(self, provider_id: str) -> Optional[TokenResult]:
        if not self._cache_ttl:
            return None
        entry = self._cache.get(provider_id)
        if entry is None:
            return None
        stored_at, result = entry
        if self._clock() - stored_at >= self._cache_ttl:
            self._cache.pop(provider_id, None)
            return None
        return result.model_copy(deep=True)

    # PUBLIC_INTERFACE
    async def resolve(self, raw_id: str) -> TokenResult:
        """Resolve a raw provider id to a token using the first source that succeeds."""
        ref = parse_provider_id(raw_id)
        provider_id = ref.provider_id
        if not provider_id:
            return TokenResult.failure("provider id is required")

        ctx = provider_id_ctx.set(provider_id)
        try:
            increment_metric("token_resolutions_total", 1.0)
            if ref.hints or ref.token_type:
                logger.debug("Resolving %s with hints %s", provider_id, ",".join(ref.hints) or ref.token_type)

            cached = self._cached(provider_id)
            if cached is not None:
                return cached

            for source in list(self._sources):
                try:
                    if not await source.can_provide(provider_id):
                        continue
                    result = await source.resolve(provider_id)
                except Exception as exc:
                    code = exc.code if isinstance(exc, CredentialRelayError) else type(exc).__name__
                    logger.warning("Token source %s failed for %s (%s)", source.name, provider_id, code)
                    continue

                if not isinstance(result, TokenResult):
                    logger.warning("Token source %s returned %s for %s", source.name, type(result).__name__, provider_id)
                    continue
                if not (result.success and result.token):
                    logger.info("Token source %s could not provide %s: %s", source.name, provider_id, result.error)
                    continue

                metadata = dict(result.metadata)
                if ref.token_type:
                    metadata["tokenType"] = ref.token_type
                if ref.hints:
                    metadata["hints"] = list(ref.hints)
                if provider_id != raw_id:
                    metadata["actualProviderId"] = provider_id
                resolved = result.model_copy(update={"source_name": source.name, "metadata": metadata})
                if self._cache_ttl:
                    self._cache[provider_id] = (self._clock(), resolved.model_copy(deep=True))
                return resolved

            increment_metric("token_resolution_failures_total", 1.0)
            return TokenResult.failure(
                f"no source provided a token for {provider_id}",
                metadata={"actualProviderId": provider_id, "hints": list(ref.hints)},
            )
        finally:
            provider_id_ctx.reset(ctx)

    # PUBLIC_INTERFACE
    async def list_all_providers(self) -> List[ProviderListing]:
        """Aggregate list_providers() across sources, tolerating individual failures."""
        listings: List[ProviderListing] = []
        for source in list(self._sources):
            try:
                providers = await source.list_providers()
            except Exception:
                logger.warning("Failed to list providers from %s", source.name, exc_info=True)
                continue
            for provider_id in providers:
                canonical = normalize(provider_id)
                if canonical:
                    listings.append(ProviderListing(provider_id=canonical, source_name=source.name))
        return listings

    # PUBLIC_INTERFACE
    async def list_all_token_names(self) -> List[str]:
        """Wire-level names of every credential that could be supplied, without resolving any."""
        names: List[str] = []
        for listing in await self.list_all_providers():
            name = token_wire_name(listing.provider_id)
            if name not in names:
                names.append(name)
        return names
