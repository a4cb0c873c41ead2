"""Pluggable token sources and the priority-ordered registry that queries them."""

from .base import TokenSource
from .registry import SourceRegistry, normalize, token_wire_name

__all__ = ["TokenSource", "SourceRegistry", "normalize", "token_wire_name"]
