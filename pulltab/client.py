#!/usr/bin/env python3
"""
pulltab - tunnel arbitrary streams through HTTP proxies.

This client:
1. Connects to an HTTP forward proxy
2. Asks it to open a TCP tunnel with a single CONNECT request
   (optionally with HTTP Basic credentials read from a file)
3. Checks the proxy's status line and gives up on anything but 2xx
4. Relays raw bytes between the tunnel and stdin/stdout until either
   side closes

Typical use is as an SSH ProxyCommand:

    ssh -o ProxyCommand="pulltab -x proxy.example:3128 -d %h:%p" host

stdout carries tunnel data only; every diagnostic goes to stderr.
"""

import argparse
import logging
import os
import signal
import sys

from .config import DEFAULT_DEST_PORT, DEFAULT_PROXY_PORT, DEFAULT_TIMEOUT, build_config
from .errors import HandshakeError, PullTabError, ProxyRejectedError
from .protocol import Handshake, build_connect_request, close_connection, create_tcp_connection
from .relay import relay

# Configure logging
logging.basicConfig(
    level=logging.WARNING,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class PullTab:
    """
    Single-shot tunnel: connect, negotiate, relay, close.
    """

    def __init__(self, config, stdin_fd=None, stdout_fd=None):
        self.config = config
        self.stdin_fd = sys.stdin.fileno() if stdin_fd is None else stdin_fd
        self.stdout_fd = sys.stdout.fileno() if stdout_fd is None else stdout_fd
        self.proxy_socket = None
        self.relaying = False

    def start(self):
        """
        Run the tunnel to completion.

        Returns:
            RelayStats: Byte counts once the tunnel has closed

        Raises:
            PullTabError: Connection or handshake failure
        """
        proxy = self.config.proxy
        dest = self.config.dest
        logger.info(f"Tunnelling to {dest.host}:{dest.port} via proxy {proxy.host}:{proxy.port}")

        try:
            self.proxy_socket = create_tcp_connection(
                proxy.host, proxy.port, timeout=self.config.timeout
            )
            pending = self.open_tunnel(self.proxy_socket)
            self.relaying = True

            stats = relay(
                self.proxy_socket,
                self.stdin_fd,
                self.stdout_fd,
                timeout=self.config.timeout,
                pending=pending,
            )
            logger.info(
                f"Connection closed ({stats.closed_by} side): "
                f"{stats.sent} bytes sent, {stats.received} bytes received"
            )
            return stats
        finally:
            self.stop()

    def open_tunnel(self, sock):
        """
        Negotiate the CONNECT tunnel on a connected proxy socket.

        Returns:
            bytes: Tunnel data that arrived together with the proxy response

        Raises:
            ProxyRejectedError: Non-2xx status from the proxy
            HandshakeError: Any other negotiation failure
        """
        request = build_connect_request(self.config.dest, self.config.credentials)
        handshake = Handshake(sock, request, timeout=self.config.timeout)
        response = handshake.negotiate()

        if not handshake.accepted:
            if not 200 <= response.status < 300:
                raise ProxyRejectedError(response.status, response.reason)
            raise HandshakeError(
                f"invalid HTTP protocol version returned by proxy: {response.major}.{response.minor}"
            )

        logger.info(f"Proxy accepted tunnel: {response.status} {response.reason}")
        return response.leftover

    def stop(self):
        """Close the tunnel socket if it is still open."""
        if self.proxy_socket:
            close_connection(self.proxy_socket)
            self.proxy_socket = None


class TabArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that exits with status 1 on bad input."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def build_parser():
    parser = TabArgumentParser(
        prog='pulltab',
        usage='%(prog)s [-a <auth-file>] -x proxy[:port] -d dest[:port] [-h]',
        description='Tunnel arbitrary streams through HTTP proxies.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s -x proxy.example:3128 -d internal.example
  %(prog)s -a ~/.pulltab-auth -x proxy.example -d internal.example:2222

  ssh -o ProxyCommand="%(prog)s -x proxy.example:3128 -d %%h:%%p" internal.example
        """
    )

    parser.add_argument(
        '-a', '--auth-file',
        metavar='<auth-file>',
        default=os.getenv('PULLTAB_AUTH_FILE'),
        help="use HTTP Basic authentication, with the credentials in the given file "
             "(of the form 'user\\x00pass') (env: PULLTAB_AUTH_FILE)"
    )

    parser.add_argument(
        '-x', '--proxy',
        metavar='proxy[:port]',
        default=os.getenv('PULLTAB_PROXY'),
        help=f'tunnel through the given HTTP proxy (default port is {DEFAULT_PROXY_PORT}, env: PULLTAB_PROXY)'
    )

    parser.add_argument(
        '-d', '--dest',
        metavar='dest[:port]',
        default=os.getenv('PULLTAB_DEST'),
        help=f'tunnel through to the given destination address (default port is {DEFAULT_DEST_PORT}, env: PULLTAB_DEST)'
    )

    parser.add_argument(
        '-t', '--timeout',
        default=os.getenv('PULLTAB_TIMEOUT', str(DEFAULT_TIMEOUT)),
        help=f'seconds to wait on the proxy during the handshake and per relay poll '
             f'(default: {DEFAULT_TIMEOUT:g}, env: PULLTAB_TIMEOUT)'
    )

    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default=os.getenv('PULLTAB_LOG_LEVEL', 'WARNING'),
        help='Set logging level (default: WARNING, env: PULLTAB_LOG_LEVEL)'
    )

    return parser


def signal_handler(signum, frame):
    """Handle shutdown signals."""
    logger.info(f"Received signal {signum}")
    global client_instance
    # Only a tunnel that got as far as relaying counts as a graceful close
    status = 0 if client_instance and client_instance.relaying else 1
    if client_instance:
        client_instance.stop()
    sys.exit(status)

# Global client instance for signal handling
client_instance = None


def main(argv=None):
    """
    Main function with command line argument parsing.

    Returns:
        int: Process exit status
    """
    global client_instance

    args = build_parser().parse_args(argv)

    # Configure logging level
    logging.getLogger().setLevel(getattr(logging, args.log_level))

    try:
        config = build_config(args.proxy, args.dest, args.auth_file, args.timeout)
    except PullTabError as e:
        logger.error(f"pulltab: {e}")
        return 1

    # Set up signal handlers for graceful shutdown
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    client_instance = PullTab(config)

    try:
        client_instance.start()
    except PullTabError as e:
        logger.error(f"pulltab: {e}")
        return 1
    except Exception as e:
        logger.error(f"pulltab: unexpected error: {e}")
        return 1
    finally:
        client_instance.stop()
        client_instance = None

    return 0


if __name__ == "__main__":
    sys.exit(main())
