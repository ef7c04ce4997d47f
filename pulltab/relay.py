# pulltab/relay.py
"""
Bidirectional relay between the tunnel socket and the local standard streams.

A single select() loop watches both the socket and stdin. Each iteration
serves every endpoint that is ready, so neither direction can starve the
other. A poll timeout just means "nothing to do yet".

The loop ends on the first closure or I/O error from either side. That is
the normal way for a tunnel to finish, so it is reported through the return
value and the log, never raised.
"""

import logging
import os
import select
from collections import namedtuple

from .protocol import BUF_SIZE

DEFAULT_POLL_TIMEOUT = 5.0

logger = logging.getLogger(__name__)

RelayStats = namedtuple('RelayStats', ['sent', 'received', 'closed_by'])


def write_all(fd, data):
    """
    Write every byte of data to a file descriptor.

    Returns:
        bool: False if the descriptor stopped accepting data
    """
    view = memoryview(data)
    while view:
        try:
            written = os.write(fd, view)
        except OSError as e:
            logger.info(f"Write to fd {fd} failed: {e}")
            return False
        if written <= 0:
            return False
        view = view[written:]
    return True


def relay(sock, stdin_fd, stdout_fd, timeout=DEFAULT_POLL_TIMEOUT, bufsize=BUF_SIZE, pending=b""):
    """
    Copy bytes between the tunnel and the local streams until one side closes.

    Args:
        sock: Connected tunnel socket (blocking)
        stdin_fd: File descriptor read for data going into the tunnel
        stdout_fd: File descriptor written with data coming out of the tunnel
        timeout: Seconds per readiness wait
        bufsize: Maximum bytes moved per read
        pending: Tunnel bytes already received with the handshake response

    Returns:
        RelayStats: Bytes sent into the tunnel, bytes received from it, and
        which endpoint ended the loop ('tunnel' or 'local')
    """
    sent = 0
    received = 0

    if pending:
        if not write_all(stdout_fd, pending):
            return RelayStats(sent, received, 'local')
        received += len(pending)

    logger.debug("Starting main relay loop")

    while True:
        try:
            readable, _, _ = select.select([sock, stdin_fd], [], [], timeout)
        except (OSError, ValueError) as e:
            logger.info(f"Relay wait failed: {e}")
            return RelayStats(sent, received, 'tunnel')

        if not readable:
            continue

        if sock in readable:
            try:
                data = sock.recv(bufsize)
            except OSError as e:
                logger.info(f"Tunnel read failed: {e}")
                data = b""
            if not data:
                logger.info("Tunnel closed by proxy")
                return RelayStats(sent, received, 'tunnel')
            if not write_all(stdout_fd, data):
                return RelayStats(sent, received, 'local')
            received += len(data)

        if stdin_fd in readable:
            try:
                data = os.read(stdin_fd, bufsize)
            except OSError as e:
                logger.info(f"Local read failed: {e}")
                data = b""
            if not data:
                logger.info("Local input closed")
                return RelayStats(sent, received, 'local')
            try:
                sock.sendall(data)
            except OSError as e:
                logger.info(f"Tunnel write failed: {e}")
                return RelayStats(sent, received, 'tunnel')
            sent += len(data)
