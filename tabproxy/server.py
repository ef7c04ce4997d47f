#!/usr/bin/env python3
"""
tabproxy - minimal HTTP CONNECT proxy for exercising pulltab locally.

This server:
1. Listens on a TCP port (3128 by default) for proxy clients
2. Reads one CONNECT request header per connection
3. Optionally requires HTTP Basic credentials (407 otherwise)
4. Opens the upstream TCP connection to the requested host:port
5. Answers "200 Connection established" and pipes bytes both ways until
   either side closes, then closes both

Anything other than CONNECT is refused with 405. There is no caching, no
plain HTTP forwarding and no TLS.
"""

import logging
import os
import select
import signal
import socket
import sys
import threading

from pulltab.config import load_credentials, parse_address
from pulltab.errors import ConfigError
from pulltab.protocol import BUF_SIZE, close_connection, encode_basic_credentials, find_header_end

MAX_HEADER_SIZE = 8192
PIPE_POLL_TIMEOUT = 1.0

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class ConnectProxyServer:
    """
    Threaded CONNECT proxy: one thread per client connection.
    """

    def __init__(self, host='127.0.0.1', port=3128, credentials=None, timeout=30):
        self.host = host
        self.port = port
        self.credentials = credentials
        self.timeout = timeout
        self.server_socket = None
        self.running = False
        self.client_connections = []
        self.connections_lock = threading.Lock()

    @property
    def bound_port(self):
        """Port actually listened on (useful when constructed with port 0)."""
        if self.server_socket:
            return self.server_socket.getsockname()[1]
        return self.port

    def bind(self):
        """Create, bind and listen on the server socket."""
        self.server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.server_socket.bind((self.host, self.port))
        self.server_socket.listen(5)
        # Lets the accept loop notice stop()
        self.server_socket.settimeout(PIPE_POLL_TIMEOUT)
        self.running = True
        logger.info(f"CONNECT proxy listening on {self.host}:{self.bound_port}")

    def start(self):
        """Serve connections in the calling thread until stop() is called."""
        if not self.server_socket:
            self.bind()
        server_socket = self.server_socket

        try:
            while self.running:
                try:
                    client_socket, address = server_socket.accept()
                except socket.timeout:
                    continue
                except OSError as e:
                    if self.running:
                        logger.error(f"Error accepting connection: {e}")
                    break

                logger.info(f"Client connected from {address[0]}:{address[1]}")
                client_thread = threading.Thread(
                    target=self.handle_client_connection,
                    args=(client_socket, address),
                    daemon=True
                )
                with self.connections_lock:
                    self.client_connections.append(client_socket)
                client_thread.start()
        finally:
            self.stop()

    def serve_in_background(self):
        """
        Bind and serve from a daemon thread.

        Returns:
            threading.Thread: The serving thread
        """
        self.bind()
        thread = threading.Thread(target=self.start, daemon=True, name="ConnectProxy")
        thread.start()
        return thread

    def handle_client_connection(self, client_socket, address):
        """Handle one CONNECT request and the tunnel that follows it."""
        connection_id = f"{address[0]}:{address[1]}"
        upstream_socket = None

        try:
            client_socket.settimeout(self.timeout)
            header = self.read_request_header(client_socket)
            if header is None:
                logger.warning(f"[{connection_id}] Closed before sending a complete request")
                return

            error, target = self.process_connect_request(header, connection_id)
            if error:
                client_socket.sendall(error)
                return

            upstream_socket = self.open_upstream(target, connection_id)
            if upstream_socket is None:
                client_socket.sendall(self.create_error_response(
                    502, f"Bad Gateway - cannot reach {target.host}:{target.port}"
                ))
                return

            client_socket.sendall(b"HTTP/1.1 200 Connection established\r\n\r\n")
            logger.info(f"[{connection_id}] Tunnel open to {target.host}:{target.port}")

            client_socket.settimeout(None)
            upstream_socket.settimeout(None)
            self.pipe(client_socket, upstream_socket, connection_id)

        except OSError as e:
            logger.error(f"[{connection_id}] Connection error: {e}")
        finally:
            close_connection(upstream_socket)
            close_connection(client_socket)
            with self.connections_lock:
                if client_socket in self.client_connections:
                    self.client_connections.remove(client_socket)
            logger.info(f"[{connection_id}] Connection closed")

    def read_request_header(self, sock):
        """
        Read bytes until the end of the request header.

        Returns:
            bytes: Header including the terminating blank line, or None if the
            peer closed or the header grew too large
        """
        data = b""
        while find_header_end(data) is None:
            if len(data) > MAX_HEADER_SIZE:
                return None
            chunk = sock.recv(BUF_SIZE)
            if not chunk:
                return None
            data += chunk
        return data[:find_header_end(data)]

    def process_connect_request(self, header, connection_id):
        """
        Validate a request header.

        Returns:
            tuple: (error_response, None) on rejection, (None, Address) when
            the tunnel should be opened
        """
        lines = header.decode('iso-8859-1').splitlines()
        parts = lines[0].split(' ') if lines else []
        if len(parts) != 3:
            return self.create_error_response(400, "Bad Request"), None

        method, target, version = parts
        logger.info(f"[{connection_id}] {method} {target} {version}")

        if method.upper() != 'CONNECT':
            return self.create_error_response(405, "Method Not Allowed"), None

        if not self.is_authorized(lines[1:]):
            logger.warning(f"[{connection_id}] Rejected: missing or wrong proxy credentials")
            return self.create_error_response(
                407, "Proxy Authentication Required",
                extra_headers=['Proxy-Authenticate: Basic realm="tabproxy"']
            ), None

        try:
            address = parse_address(target, 443, kind='dest')
        except ConfigError as e:
            return self.create_error_response(400, f"Bad Request - {e}"), None

        return None, address

    def is_authorized(self, header_lines):
        """Check the Proxy-Authorization header against the configured credentials."""
        if self.credentials is None:
            return True

        expected = 'Basic ' + encode_basic_credentials(
            self.credentials.username, self.credentials.password
        )
        for line in header_lines:
            name, sep, value = line.partition(':')
            if sep and name.strip().lower() == 'proxy-authorization':
                return value.strip() == expected
        return False

    def open_upstream(self, target, connection_id):
        """Connect to the tunnel destination; None on failure."""
        try:
            return socket.create_connection((target.host, target.port), timeout=self.timeout)
        except socket.gaierror as e:
            logger.error(f"[{connection_id}] DNS resolution failed for {target.host}: {e}")
        except socket.timeout:
            logger.error(f"[{connection_id}] Timeout connecting to {target.host}:{target.port}")
        except ConnectionRefusedError:
            logger.error(f"[{connection_id}] Connection refused by {target.host}:{target.port}")
        except OSError as e:
            logger.error(f"[{connection_id}] Error connecting to {target.host}:{target.port}: {e}")
        return None

    def pipe(self, client_socket, upstream_socket, connection_id):
        """Copy bytes both ways until either side closes."""
        peers = {client_socket: upstream_socket, upstream_socket: client_socket}
        sent = {client_socket: 0, upstream_socket: 0}

        while self.running:
            try:
                readable, _, _ = select.select(list(peers), [], [], PIPE_POLL_TIMEOUT)
            except (OSError, ValueError) as e:
                # stop() closed one of the sockets under us
                logger.debug(f"[{connection_id}] Pipe wait failed: {e}")
                return
            for sock in readable:
                try:
                    data = sock.recv(BUF_SIZE)
                    if data:
                        peers[sock].sendall(data)
                except OSError as e:
                    logger.debug(f"[{connection_id}] Pipe error: {e}")
                    data = b""
                if not data:
                    logger.debug(
                        f"[{connection_id}] Tunnel finished: {sent[client_socket]} bytes up, "
                        f"{sent[upstream_socket]} bytes down"
                    )
                    return
                sent[sock] += len(data)

    def create_error_response(self, status_code, reason, extra_headers=None):
        """Create HTTP error response."""
        error_body = f"{status_code} {reason}\n"

        response = f"HTTP/1.1 {status_code} {reason}\r\n"
        for header in extra_headers or []:
            response += f"{header}\r\n"
        response += "Content-Type: text/plain\r\n"
        response += f"Content-Length: {len(error_body)}\r\n"
        response += "Connection: close\r\n"
        response += f"\r\n{error_body}"

        return response.encode('utf-8')

    def stop(self):
        """Stop the server and close all connections."""
        if not self.running and self.server_socket is None:
            return

        logger.info("Stopping CONNECT proxy...")
        self.running = False

        with self.connections_lock:
            connections = list(self.client_connections)
            self.client_connections = []
        for client_socket in connections:
            close_connection(client_socket)

        if self.server_socket:
            close_connection(self.server_socket)
            self.server_socket = None

        logger.info("CONNECT proxy stopped")


def signal_handler(signum, frame):
    """Handle shutdown signals."""
    logger.info(f"Received signal {signum}")
    global server_instance
    if server_instance:
        server_instance.stop()
    sys.exit(0)

# Global server instance for signal handling
server_instance = None


def main():
    """Main function."""
    global server_instance

    # Set up signal handlers
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    # Get configuration from environment variables
    host = os.getenv('TABPROXY_HOST', '127.0.0.1')
    port = int(os.getenv('TABPROXY_PORT', '3128'))
    auth_file = os.getenv('TABPROXY_AUTH_FILE')

    try:
        credentials = load_credentials(auth_file) if auth_file else None
    except ConfigError as e:
        logger.error(f"tabproxy: {e}")
        sys.exit(1)

    server_instance = ConnectProxyServer(host, port, credentials=credentials)

    try:
        logger.info("Starting CONNECT proxy...")
        server_instance.start()
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")
    except OSError as e:
        logger.error(f"Server error: {e}")
        sys.exit(1)
    finally:
        if server_instance:
            server_instance.stop()


if __name__ == "__main__":
    main()
