"""Connection setup for the tcp-speedtest initiator."""

import logging
import socket

from common.connection import ConnectionFailedError
from common.protocol import CONNECT_TIMEOUT_S

logger = logging.getLogger(__name__)


def connect_to_listener(
    host: str, port: int, timeout_s: float = CONNECT_TIMEOUT_S
) -> socket.socket:
    """Open a TCP connection to a listener.

    No retry is attempted.

    Raises:
        ConnectionFailedError: If the connection is refused, reset or times out.
    """
    logger.info(f"Initiator: connecting to {host}:{port} (timeout={timeout_s}s)...")
    try:
        sock = socket.create_connection((host, port), timeout=timeout_s)
    except socket.timeout as e:
        raise ConnectionFailedError(
            f"Timeout ({timeout_s}s) connecting to {host}:{port}"
        ) from e
    except OSError as e:
        raise ConnectionFailedError(f"Failed to connect to {host}:{port}: {e}") from e

    sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
    logger.info(f"Initiator: connected to {host}:{port}")
    return sock
