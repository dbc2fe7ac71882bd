from __future__ import annotations


class ConfigurationError(Exception):
    """Invalid startup configuration or missing raw-socket privilege. Fatal."""


class DiscoveryFailed(Exception):
    """No public hop could be found within the configured hop limit."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class TransportError(Exception):
    """Socket-level failure while sending or receiving a single probe."""
