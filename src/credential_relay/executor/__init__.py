"""Execution backend connection: target discovery, duplex channel and credential hand-off."""
