"""Shared building blocks: settings, logging, errors, models and crypto helpers."""
