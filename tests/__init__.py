# tests/__init__.py
"""
Test Suite for pulltab

Test Modules:
- test_config_parsing.py: host[:port] parsing, credential files, CLI handling
- test_connect_handshake.py: Basic credentials, CONNECT request building,
  status line parsing and the handshake state machine
- test_relay_loop.py: bidirectional relay over socket pairs and pipes
- test_tunnel_end_to_end.py: the pulltab command run as a subprocess through
  the bundled tabproxy CONNECT proxy to a local destination server

Usage:
    # Run all tests
    pytest tests/

    # Run specific test module
    pytest tests/test_connect_handshake.py -v

    # Run with coverage
    pytest tests/ --cov=pulltab --cov=tabproxy

Test Environment:
- Everything binds to 127.0.0.1 on ephemeral ports
- No external network access is needed
"""

import sys
import os

# Add project root to Python path for imports
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, PROJECT_ROOT)

__version__ = "1.0.0"
__author__ = "pulltab developers"
__description__ = "Test suite for pulltab"

# Test configuration constants
TEST_CONFIG = {
    'LOCALHOST': '127.0.0.1',
    'HANDSHAKE_TIMEOUT': 2.0,
    'RELAY_POLL_TIMEOUT': 0.1,
    'THREAD_JOIN_TIMEOUT': 5,
    'PROCESS_TIMEOUT': 20,
}

__all__ = ['PROJECT_ROOT', 'TEST_CONFIG']
