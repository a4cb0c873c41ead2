from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List

from ..core.models import TokenResult, TokenSourceDescriptor


# PUBLIC_INTERFACE
class TokenSource(ABC):
    """Abstract base class for all token sources.

    Subclasses set ``descriptor``; lower priority numbers are consulted first.
    """

    descriptor: TokenSourceDescriptor

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def priority(self) -> int:
        return self.descriptor.priority

    # PUBLIC_INTERFACE
    @abstractmethod
    async def can_provide(self, provider_id: str) -> bool:
        """Cheap existence check. Must not raise: internal errors map to False."""
        raise NotImplementedError

    # PUBLIC_INTERFACE
    @abstractmethod
    async def resolve(self, provider_id: str) -> TokenResult:
        """Fetch the token for a canonical provider id."""
        raise NotImplementedError

    # PUBLIC_INTERFACE
    @abstractmethod
    async def list_providers(self) -> List[str]:
        """Best-effort list of provider ids this source holds; empty on error."""
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__} name={self.name!r} priority={self.priority}>"
