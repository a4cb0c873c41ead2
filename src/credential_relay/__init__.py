# PUBLIC_INTERFACE
"""
Credential Relay package.

Brokers access tokens for third-party accounts and relays them, encrypted, to a
local or remote task executor over a persistent duplex connection.
"""

__version__ = "0.1.0"
