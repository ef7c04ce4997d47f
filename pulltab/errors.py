# pulltab/errors.py
"""
Exception hierarchy for pulltab.

Every failure that should end the process with a non-zero status derives
from PullTabError. Closure of either endpoint during the relay phase is not
an error and never raises.
"""


class PullTabError(Exception):
    """Base class for all fatal pulltab errors."""


class ConfigError(PullTabError):
    """Bad command line input, credential file or port range."""


class ProxyConnectError(PullTabError):
    """Could not resolve or connect to the proxy."""


class HandshakeError(PullTabError):
    """CONNECT negotiation failed (timeout, closed socket, bad status line)."""


class ProxyRejectedError(HandshakeError):
    """The proxy answered the CONNECT request with a non-2xx status."""

    def __init__(self, status, reason):
        self.status = status
        self.reason = reason
        super().__init__(f"error negotiating with proxy: {status} {reason}")
