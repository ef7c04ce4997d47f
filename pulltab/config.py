# pulltab/config.py
"""
Tunnel configuration for pulltab.

Turns the external input (proxy/destination address strings and an optional
credential file) into an immutable TunnelConfig. All validation happens here,
before any network activity.

Credential file format:
    <username> NUL <password>

Only the first NUL byte is a separator, so the password may contain NUL bytes
of its own. No trailing newline is expected; whatever follows the separator
is the password verbatim.
"""

import logging
import math
from collections import namedtuple

from .errors import ConfigError

DEFAULT_PROXY_PORT = 8080
DEFAULT_DEST_PORT = 22
DEFAULT_TIMEOUT = 5.0

PORT_LOWER_LIM = 1
PORT_UPPER_LIM = 65535

AUTH_SEPARATOR = b'\x00'

logger = logging.getLogger(__name__)

Address = namedtuple('Address', ['host', 'port'])
Credentials = namedtuple('Credentials', ['username', 'password'])
TunnelConfig = namedtuple('TunnelConfig', ['proxy', 'dest', 'credentials', 'timeout'])


def parse_address(spec, default_port, kind='proxy'):
    """
    Parse a host[:port] specification.

    The first ':' separates host from port. Without a ':' the default port
    is used.

    Args:
        spec: Address string, e.g. "proxy.example:3128" or "internal.example"
        default_port: Port to use when the spec carries none
        kind: Label used in error messages ("proxy" or "dest")

    Returns:
        Address: Parsed (host, port)

    Raises:
        ConfigError: Empty host, non-numeric port or port out of range
    """
    host, sep, port_str = spec.partition(':')

    if not host:
        raise ConfigError(f"invalid {kind} specification: missing hostname")

    if sep:
        if not (port_str.isascii() and port_str.isdigit()):
            raise ConfigError(f"invalid {kind} specification: port '{port_str}' is not a number")
        port = int(port_str)
    else:
        port = default_port

    if port < PORT_LOWER_LIM or port > PORT_UPPER_LIM:
        raise ConfigError(f"invalid {kind} specification: {kind} port is not in valid range")

    return Address(host, port)


def parse_credentials(data):
    """
    Split raw credential file bytes into username and password.

    Args:
        data: File contents

    Returns:
        Credentials: (username, password) as bytes

    Raises:
        ConfigError: No NUL separator present
    """
    username, sep, password = data.partition(AUTH_SEPARATOR)
    if not sep:
        raise ConfigError("invalid authentication specification: no NUL separator")
    return Credentials(username, password)


def load_credentials(path):
    """Read a credential file fully into memory and parse it."""
    try:
        with open(path, 'rb') as auth_file:
            data = auth_file.read()
    except OSError as e:
        raise ConfigError(f"cannot read authentication file {path}: {e.strerror or e}") from e

    credentials = parse_credentials(data)
    logger.debug(f"Loaded HTTP basic authentication for user {credentials.username!r}")
    return credentials


def build_config(proxy, dest, auth_file=None, timeout=DEFAULT_TIMEOUT):
    """
    Assemble and validate a TunnelConfig from raw option values.

    Args:
        proxy: Proxy host[:port] string (None if not given)
        dest: Destination host[:port] string (None if not given)
        auth_file: Optional path to a credential file
        timeout: Bound in seconds for every handshake and relay wait

    Returns:
        TunnelConfig: Validated configuration

    Raises:
        ConfigError: Any missing or invalid option
    """
    if not proxy:
        raise ConfigError("missing proxy specification")
    if not dest:
        raise ConfigError("missing dest specification")
    try:
        timeout = float(timeout)
    except (TypeError, ValueError):
        raise ConfigError(f"invalid timeout: {timeout!r}") from None
    if not math.isfinite(timeout) or timeout <= 0:
        raise ConfigError(f"invalid timeout: {timeout}")

    proxy_addr = parse_address(proxy, DEFAULT_PROXY_PORT, kind='proxy')
    dest_addr = parse_address(dest, DEFAULT_DEST_PORT, kind='dest')
    credentials = load_credentials(auth_file) if auth_file else None

    return TunnelConfig(proxy_addr, dest_addr, credentials, timeout)
