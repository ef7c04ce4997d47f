# pulltab/__init__.py
"""
pulltab Package

Tunnels arbitrary byte streams (SSH, typically) through an HTTP forward
proxy:
- Sends a single CONNECT request, optionally with HTTP Basic credentials
- Validates the proxy's status line
- Relays raw bytes between the tunnel and stdin/stdout until either side
  closes

Main Components:
- client.py: Command line entry point and the PullTab tunnel driver
- config.py: Address parsing, credential file loading, TunnelConfig
- protocol.py: CONNECT request building and handshake negotiation
- relay.py: select() based bidirectional relay loop
- errors.py: Exception hierarchy

Usage:
    pulltab -x proxy.example:3128 -d internal.example:22
    python -m pulltab -a ~/.pulltab-auth -x proxy.example -d internal.example
"""

from .client import PullTab, main
from .config import Address, Credentials, TunnelConfig, build_config
from .errors import (
    PullTabError,
    ConfigError,
    ProxyConnectError,
    HandshakeError,
    ProxyRejectedError,
)

__version__ = "1.0.0"
__author__ = "pulltab developers"
__description__ = "Tunnel arbitrary streams through HTTP proxies"

# Export main classes for external use
__all__ = [
    'PullTab',
    'main',
    'Address',
    'Credentials',
    'TunnelConfig',
    'build_config',
    'PullTabError',
    'ConfigError',
    'ProxyConnectError',
    'HandshakeError',
    'ProxyRejectedError',
]
