# tabproxy/__init__.py
"""
tabproxy Package

A small threaded HTTP CONNECT proxy used to try pulltab out locally and to
drive its end-to-end tests:
- Accepts CONNECT requests only
- Optional HTTP Basic proxy authentication
- Pipes bytes between client and destination until either side closes

Usage:
    TABPROXY_PORT=3128 python -m tabproxy.server
"""

from .server import ConnectProxyServer

__version__ = "1.0.0"
__author__ = "pulltab developers"
__description__ = "Local CONNECT proxy for exercising pulltab"

# Export main class for external use
__all__ = ['ConnectProxyServer']
