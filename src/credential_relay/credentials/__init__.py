"""Locally-owned provider credentials: encrypted store, refresh and provider catalog."""
