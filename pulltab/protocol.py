# pulltab/protocol.py
"""
HTTP CONNECT handshake for tunnelling a TCP stream through a forward proxy.

Request format (CRLF line endings, built in full before it is written):

    CONNECT <dest-host>:<dest-port> HTTP/1.0
    [Proxy-Authorization: Basic <base64(username:password)>]
    <blank line>

Response: only the status line matters,

    HTTP/<major>.<minor> <code> <reason>

and the proxy is considered to have accepted the tunnel when the code is in
[200, 300) and the major version is at least 1. Everything after the response
header is tunnel data.
"""

import base64
import logging
import re
import select
import socket
from collections import namedtuple

from .errors import HandshakeError, ProxyConnectError

BUF_SIZE = 4096
HTTP_VERSION = "1.0"
DEFAULT_HANDSHAKE_TIMEOUT = 5.0

CRLF = b"\r\n"
HEADER_TERMINATORS = (b"\r\n\r\n", b"\n\n")

# Handshake states
STATE_IDLE = 'idle'
STATE_REQUEST_SENT = 'request-sent'
STATE_RESPONSE_RECEIVED = 'response-received'
STATE_ACCEPTED = 'accepted'
STATE_REJECTED = 'rejected'

STATUS_LINE_RE = re.compile(rb"^HTTP/(\d+)\.(\d+)[ \t]+(\d+)[ \t]+([^\r\n]+)")

logger = logging.getLogger(__name__)

HandshakeResponse = namedtuple(
    'HandshakeResponse', ['major', 'minor', 'status', 'reason', 'leftover']
)


def _to_bytes(value):
    if isinstance(value, str):
        return value.encode('utf-8')
    return value


def encode_basic_credentials(username, password):
    """
    Encode a username/password pair for HTTP Basic authentication.

    Args:
        username: User name (str or bytes)
        password: Password (str or bytes)

    Returns:
        str: Base64 of "username:password", padded, without line breaks
    """
    plain = _to_bytes(username) + b":" + _to_bytes(password)
    return base64.b64encode(plain).decode('ascii')


def build_connect_request(dest, credentials=None):
    """
    Build the complete CONNECT request.

    Args:
        dest: Address (host, port) of the tunnel destination
        credentials: Optional Credentials (username, password)

    Returns:
        bytes: Request ready to be written in a single call
    """
    host, port = dest
    request = bytearray(f"CONNECT {host}:{port} HTTP/{HTTP_VERSION}".encode('utf-8'))
    request += CRLF

    if credentials is not None:
        digest = encode_basic_credentials(credentials.username, credentials.password)
        request += f"Proxy-Authorization: Basic {digest}".encode('ascii')
        request += CRLF

    request += CRLF
    logger.debug(f"Generated proxy request for {host}:{port} (auth: {credentials is not None})")
    return bytes(request)


def find_header_end(data):
    """Return the offset just past the response header, or None if incomplete."""
    ends = []
    for terminator in HEADER_TERMINATORS:
        index = data.find(terminator)
        if index >= 0:
            ends.append(index + len(terminator))
    return min(ends) if ends else None


def parse_status_line(data):
    """
    Parse the status line at the start of a proxy response.

    Args:
        data: Response bytes; only the first line is inspected

    Returns:
        HandshakeResponse: Parsed fields with empty leftover

    Raises:
        HandshakeError: Status line missing any of version, code or reason
    """
    match = STATUS_LINE_RE.match(data)
    if not match:
        first_line = data.split(b"\n", 1)[0]
        raise HandshakeError(f"error parsing proxy response: {format_http_message(first_line)!r}")

    major, minor, status, reason = match.groups()
    return HandshakeResponse(
        int(major), int(minor), int(status), reason.decode('iso-8859-1'), b""
    )


class Handshake:
    """
    One CONNECT negotiation over an already connected proxy socket.

    States: idle -> request-sent -> response-received -> accepted | rejected.
    Every wait on the socket is bounded by ``timeout``; running out of time
    is fatal.
    """

    def __init__(self, sock, request, timeout=DEFAULT_HANDSHAKE_TIMEOUT, bufsize=BUF_SIZE):
        self.sock = sock
        self.request = request
        self.timeout = timeout
        self.bufsize = bufsize
        self.state = STATE_IDLE

    def _wait(self, readable=False, writable=False):
        rlist = [self.sock] if readable else []
        wlist = [self.sock] if writable else []
        try:
            ready_r, ready_w, _ = select.select(rlist, wlist, [], self.timeout)
        except (OSError, ValueError) as e:
            raise HandshakeError(f"error waiting on proxy socket: {e}") from e
        return bool(ready_r or ready_w)

    def send_request(self):
        """Write the CONNECT request once the socket is writable."""
        if not self._wait(writable=True):
            raise HandshakeError("timed out waiting to send request to proxy")

        try:
            sent = self.sock.send(self.request)
        except OSError as e:
            raise HandshakeError(f"could not negotiate stream with proxy: {e}") from e

        if sent != len(self.request):
            raise HandshakeError("could not negotiate stream with proxy: short write")

        self.state = STATE_REQUEST_SENT
        logger.debug(f"Sent request to proxy ({sent} bytes)")

    def receive_response(self):
        """
        Read the proxy response header.

        Returns:
            HandshakeResponse: Parsed status line; ``leftover`` holds any
            tunnel bytes that arrived after the header
        """
        data = b""
        while True:
            if not self._wait(readable=True):
                raise HandshakeError("timed out waiting for proxy response")

            try:
                chunk = self.sock.recv(self.bufsize - len(data))
            except OSError as e:
                raise HandshakeError(f"error reading proxy response: {e}") from e

            if not chunk:
                raise HandshakeError("proxy closed the connection during CONNECT handshake")

            data += chunk
            header_end = find_header_end(data)
            if header_end is not None:
                break
            if len(data) >= self.bufsize:
                raise HandshakeError("proxy response header too large")

        logger.debug(f"Received response from proxy: {format_http_message(data[:header_end])!r}")
        response = parse_status_line(data[:header_end])._replace(leftover=data[header_end:])
        self.state = STATE_RESPONSE_RECEIVED
        logger.debug(f"Parsed proxy response: {response.status} ({response.reason})")
        return response

    def negotiate(self):
        """
        Run the full negotiation.

        Returns:
            HandshakeResponse: The proxy's answer; ``state`` tells whether the
            tunnel was accepted
        """
        self.send_request()
        response = self.receive_response()

        if 200 <= response.status < 300 and response.major >= 1:
            self.state = STATE_ACCEPTED
        else:
            self.state = STATE_REJECTED

        return response

    @property
    def accepted(self):
        return self.state == STATE_ACCEPTED


def create_tcp_connection(host, port, timeout=30):
    """
    Create a TCP connection to the proxy.

    Args:
        host: Proxy hostname/IP
        port: Proxy port
        timeout: Connection timeout in seconds

    Returns:
        socket: Connected socket in blocking mode

    Raises:
        ProxyConnectError: Resolution or connection failure
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.settimeout(timeout)
        sock.connect((host, port))
    except socket.gaierror as e:
        close_connection(sock)
        logger.debug(f"DNS resolution failed for {host}: {e}")
        raise ProxyConnectError(f"could not resolve proxy {host}: {e}") from e
    except socket.timeout as e:
        close_connection(sock)
        logger.debug(f"Timeout connecting to {host}:{port}")
        raise ProxyConnectError(f"timed out connecting to proxy {host}:{port}") from e
    except ConnectionRefusedError as e:
        close_connection(sock)
        logger.debug(f"Connection refused by {host}:{port}")
        raise ProxyConnectError(f"connection refused by proxy {host}:{port}") from e
    except OSError as e:
        close_connection(sock)
        raise ProxyConnectError(f"could not connect to proxy {host}:{port}: {e}") from e

    # Readiness is handled with select from here on
    sock.settimeout(None)
    logger.info(f"Connected to proxy {host}:{port}")
    return sock


def close_connection(sock):
    """
    Safely close a socket connection.

    Args:
        sock: Socket to close
    """
    try:
        if sock:
            sock.close()
            logger.debug("Connection closed")
    except OSError as e:
        logger.error(f"Error closing connection: {e}")


def format_http_message(data, max_length=200):
    """
    Format HTTP message for logging (truncate if too long).

    Args:
        data: HTTP message bytes
        max_length: Maximum length to display

    Returns:
        str: Formatted message for logging
    """
    decoded = data.decode('iso-8859-1')
    if len(decoded) > max_length:
        return decoded[:max_length] + '...'
    return decoded
