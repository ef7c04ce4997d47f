#!/usr/bin/env python3
"""
Test CONNECT Handshake - request building, Basic credentials, status line
parsing and the negotiation state machine.

The negotiator is driven over socket.socketpair(): one end plays the proxy,
with its canned response written before negotiation starts.
"""

import base64
import socket

import pytest

from pulltab.client import PullTab
from pulltab.config import Address, Credentials, TunnelConfig
from pulltab.errors import HandshakeError, ProxyRejectedError
from pulltab.protocol import (
    STATE_ACCEPTED,
    STATE_IDLE,
    STATE_REJECTED,
    STATE_REQUEST_SENT,
    Handshake,
    build_connect_request,
    encode_basic_credentials,
    find_header_end,
    parse_status_line,
)

from tests import TEST_CONFIG

DEST = Address("internal.example", 22)
REQUEST = b"CONNECT internal.example:22 HTTP/1.0\r\n\r\n"


@pytest.fixture
def proxy_pair():
    """(client_end, proxy_end) connected socket pair."""
    client_end, proxy_end = socket.socketpair()
    yield client_end, proxy_end
    client_end.close()
    proxy_end.close()


def negotiate_with(proxy_pair, response, timeout=TEST_CONFIG['HANDSHAKE_TIMEOUT']):
    client_end, proxy_end = proxy_pair
    if response:
        proxy_end.sendall(response)
    handshake = Handshake(client_end, REQUEST, timeout=timeout)
    return handshake, handshake.negotiate()


class TestCredentialEncoder:
    """HTTP Basic credential encoding."""

    def test_known_value(self):
        assert encode_basic_credentials("user", "pass") == "dXNlcjpwYXNz"

    @pytest.mark.parametrize("username,password", [
        (b"alice", b"s3cret"),
        (b"", b""),
        (b"", b"password-only"),
        (b"user:with:colons", b"p@ss word"),
        (b"\xff\xfe", b"\x00\x01binary"),
        ("josé", "über"),
    ])
    def test_decodes_to_user_colon_pass(self, username, password):
        encoded = encode_basic_credentials(username, password)
        plain = base64.b64decode(encoded, validate=True)

        def as_bytes(value):
            return value.encode('utf-8') if isinstance(value, str) else value

        assert plain == as_bytes(username) + b":" + as_bytes(password)

    def test_no_line_wrapping(self):
        encoded = encode_basic_credentials(b"u" * 200, b"p" * 200)
        assert "\n" not in encoded
        assert len(encoded) % 4 == 0


class TestHandshakeBuilder:
    """CONNECT request text."""

    def test_request_without_credentials(self):
        assert build_connect_request(DEST) == REQUEST

    def test_request_with_credentials(self):
        request = build_connect_request(DEST, Credentials(b"user", b"pass"))
        assert request == (
            b"CONNECT internal.example:22 HTTP/1.0\r\n"
            b"Proxy-Authorization: Basic dXNlcjpwYXNz\r\n"
            b"\r\n"
        )

    def test_request_uses_destination_not_proxy(self):
        request = build_connect_request(Address("10.1.2.3", 2222))
        assert request.startswith(b"CONNECT 10.1.2.3:2222 HTTP/1.0\r\n")

    def test_exactly_one_blank_line(self):
        request = build_connect_request(DEST, Credentials(b"user", b"pass"))
        assert request.count(b"\r\n\r\n") == 1
        assert request.endswith(b"\r\n\r\n")


class TestStatusLineParsing:
    """HTTP/<major>.<minor> <code> <reason>"""

    def test_connection_established(self):
        response = parse_status_line(b"HTTP/1.1 200 Connection established\r\n\r\n")
        assert (response.major, response.minor) == (1, 1)
        assert response.status == 200
        assert response.reason == "Connection established"

    def test_reason_stops_at_line_end(self):
        response = parse_status_line(b"HTTP/1.0 407 Proxy Authentication Required\r\nProxy-Authenticate: Basic\r\n\r\n")
        assert response.status == 407
        assert response.reason == "Proxy Authentication Required"

    def test_bare_newline(self):
        response = parse_status_line(b"HTTP/1.0 200 OK\n\n")
        assert response.reason == "OK"

    @pytest.mark.parametrize("data", [
        b"",
        b"garbage\r\n\r\n",
        b"HTTP/1.1 200\r\n\r\n",
        b"HTTP/1.1 abc OK\r\n\r\n",
        b"HTTP/x.1 200 OK\r\n\r\n",
        b"SSH-2.0-OpenSSH_9.6\r\n",
    ])
    def test_malformed(self, data):
        with pytest.raises(HandshakeError, match="error parsing proxy response"):
            parse_status_line(data)

    def test_header_end(self):
        assert find_header_end(b"HTTP/1.1 200 OK\r\n\r\nrest") == 19
        assert find_header_end(b"HTTP/1.1 200 OK\n\nrest") == 17
        assert find_header_end(b"HTTP/1.1 200 OK\r\n") is None


class TestHandshakeNegotiator:
    """Handshake state machine over a socket pair."""

    def test_initial_state(self, proxy_pair):
        assert Handshake(proxy_pair[0], REQUEST).state == STATE_IDLE

    def test_accepted(self, proxy_pair):
        handshake, response = negotiate_with(
            proxy_pair, b"HTTP/1.1 200 Connection established\r\n\r\n"
        )
        assert handshake.state == STATE_ACCEPTED
        assert handshake.accepted
        assert response.status == 200
        assert response.leftover == b""

    def test_request_reaches_proxy(self, proxy_pair):
        negotiate_with(proxy_pair, b"HTTP/1.1 200 Connection established\r\n\r\n")
        assert proxy_pair[1].recv(4096) == REQUEST

    def test_rejected(self, proxy_pair):
        handshake, response = negotiate_with(proxy_pair, b"HTTP/1.1 403 Forbidden\r\n\r\n")
        assert handshake.state == STATE_REJECTED
        assert not handshake.accepted
        assert response.status == 403
        assert response.reason == "Forbidden"

    @pytest.mark.parametrize("status", [100, 199, 300, 302, 407, 502])
    def test_non_2xx_rejected(self, proxy_pair, status):
        handshake, _ = negotiate_with(proxy_pair, f"HTTP/1.1 {status} Nope\r\n\r\n".encode())
        assert handshake.state == STATE_REJECTED

    @pytest.mark.parametrize("status", [200, 201, 299])
    def test_any_2xx_accepted(self, proxy_pair, status):
        handshake, _ = negotiate_with(proxy_pair, f"HTTP/1.0 {status} Fine\r\n\r\n".encode())
        assert handshake.state == STATE_ACCEPTED

    def test_http_major_zero_rejected(self, proxy_pair):
        handshake, _ = negotiate_with(proxy_pair, b"HTTP/0.9 200 OK\r\n\r\n")
        assert handshake.state == STATE_REJECTED

    def test_trailing_tunnel_bytes_kept(self, proxy_pair):
        _, response = negotiate_with(
            proxy_pair, b"HTTP/1.1 200 Connection established\r\n\r\nSSH-2.0-OpenSSH\r\n"
        )
        assert response.leftover == b"SSH-2.0-OpenSSH\r\n"

    def test_timeout_waiting_for_response(self, proxy_pair):
        handshake = Handshake(proxy_pair[0], REQUEST, timeout=0.1)
        with pytest.raises(HandshakeError, match="timed out"):
            handshake.negotiate()
        assert handshake.state == STATE_REQUEST_SENT

    def test_proxy_closes_without_response(self, proxy_pair):
        proxy_pair[1].shutdown(socket.SHUT_WR)
        with pytest.raises(HandshakeError, match="closed the connection"):
            negotiate_with(proxy_pair, b"")

    def test_proxy_closes_mid_header(self, proxy_pair):
        proxy_pair[1].sendall(b"HTTP/1.1 200 Conn")
        proxy_pair[1].shutdown(socket.SHUT_WR)
        with pytest.raises(HandshakeError, match="closed the connection"):
            negotiate_with(proxy_pair, b"")

    def test_oversized_header(self, proxy_pair):
        proxy_pair[1].sendall(b"HTTP/1.1 200 OK\r\nX-Padding: " + b"a" * 5000)
        with pytest.raises(HandshakeError, match="too large"):
            negotiate_with(proxy_pair, b"")

    def test_malformed_response(self, proxy_pair):
        with pytest.raises(HandshakeError, match="error parsing proxy response"):
            negotiate_with(proxy_pair, b"SSH-2.0-OpenSSH_9.6\r\n\r\n")


class TestOpenTunnel:
    """PullTab.open_tunnel turns a rejected handshake into an error."""

    @pytest.fixture
    def tab(self):
        config = TunnelConfig(Address("proxy.example", 8080), DEST, None, TEST_CONFIG['HANDSHAKE_TIMEOUT'])
        return PullTab(config, stdin_fd=-1, stdout_fd=-1)

    def test_accepted_returns_leftover(self, tab, proxy_pair):
        proxy_pair[1].sendall(b"HTTP/1.1 200 Connection established\r\n\r\nhello")
        assert tab.open_tunnel(proxy_pair[0]) == b"hello"

    def test_rejected_carries_status_and_reason(self, tab, proxy_pair):
        proxy_pair[1].sendall(b"HTTP/1.1 403 Forbidden\r\n\r\n")
        with pytest.raises(ProxyRejectedError) as exc_info:
            tab.open_tunnel(proxy_pair[0])
        assert exc_info.value.status == 403
        assert exc_info.value.reason == "Forbidden"
        assert "403 Forbidden" in str(exc_info.value)

    def test_bad_version(self, tab, proxy_pair):
        proxy_pair[1].sendall(b"HTTP/0.9 200 OK\r\n\r\n")
        with pytest.raises(HandshakeError, match="invalid HTTP protocol version"):
            tab.open_tunnel(proxy_pair[0])

    def test_sends_credentials(self, proxy_pair):
        config = TunnelConfig(
            Address("proxy.example", 8080), DEST, Credentials(b"user", b"pass"), 1.0
        )
        tab = PullTab(config, stdin_fd=-1, stdout_fd=-1)
        proxy_pair[1].sendall(b"HTTP/1.1 200 OK\r\n\r\n")
        tab.open_tunnel(proxy_pair[0])
        assert b"Proxy-Authorization: Basic dXNlcjpwYXNz\r\n" in proxy_pair[1].recv(4096)


class ScriptedSendSocket:
    """
    Real socket for readiness waits, with a scripted send().

    ``send_result`` is either a byte count to report or an exception to raise.
    """

    def __init__(self, sock, send_result):
        self.sock = sock
        self.send_result = send_result

    def fileno(self):
        return self.sock.fileno()

    def send(self, data):
        if isinstance(self.send_result, Exception):
            raise self.send_result
        return self.send_result


class TestHandshakeSendFailures:
    """Failures while writing the request are fatal and leave the state idle."""

    def test_short_write(self, proxy_pair):
        sock = ScriptedSendSocket(proxy_pair[0], len(REQUEST) - 1)
        handshake = Handshake(sock, REQUEST, timeout=TEST_CONFIG['HANDSHAKE_TIMEOUT'])
        with pytest.raises(HandshakeError, match="short write"):
            handshake.negotiate()
        assert handshake.state == STATE_IDLE

    def test_send_error(self, proxy_pair):
        sock = ScriptedSendSocket(proxy_pair[0], BrokenPipeError(32, "Broken pipe"))
        handshake = Handshake(sock, REQUEST, timeout=TEST_CONFIG['HANDSHAKE_TIMEOUT'])
        with pytest.raises(HandshakeError, match="could not negotiate stream with proxy"):
            handshake.negotiate()
        assert handshake.state == STATE_IDLE

    def test_timeout_waiting_to_send(self, proxy_pair):
        client_end = proxy_pair[0]
        client_end.setblocking(False)
        # Fill the send buffer until the socket stops being writable
        chunk = b"x" * 65536
        while True:
            try:
                client_end.send(chunk)
            except BlockingIOError:
                break

        handshake = Handshake(client_end, REQUEST, timeout=0.1)
        with pytest.raises(HandshakeError, match="timed out waiting to send"):
            handshake.negotiate()
        assert handshake.state == STATE_IDLE
