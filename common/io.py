"""Stream I/O helpers for tcp-speedtest.

Contains:
- MarkerStream: Buffered reader/writer that separates marker lines from
  payload on one connected stream socket
"""

import logging
import socket

from common.connection import (
    IdleTimeoutError,
    PhaseTimeoutError,
    TransportClosedError,
    check_timeout,
)
from common.message import (
    MARKER_TERMINATOR,
    MAX_MARKER_LENGTH,
    Marker,
    MarkerError,
    decode_marker,
    encode_marker,
)
from common.protocol import DEFAULT_PHASE_TIMEOUT_S, RECV_CHUNK_SIZE, TRACE, Transport

logger = logging.getLogger(__name__)


class MarkerStream:
    """One connected stream carrying markers and raw payload.

    The phase timeout applies to every blocking send and receive, so a peer
    that stops sending (or stops reading) for longer than timeout_s aborts
    the session with PhaseTimeoutError. The wait for the first byte of an
    idle marker uses idle_timeout_s instead (None waits indefinitely) and
    expires with IdleTimeoutError.

    Bytes that arrive after a marker's terminator stay buffered and are
    returned by the next read.
    """

    def __init__(
        self,
        transport: Transport,
        timeout_s: float = DEFAULT_PHASE_TIMEOUT_S,
        recv_size: int = RECV_CHUNK_SIZE,
        idle_timeout_s: float | None = None,
    ) -> None:
        check_timeout("timeout_s", timeout_s)
        if idle_timeout_s is not None:
            check_timeout("idle_timeout_s", idle_timeout_s)
        self._transport = transport
        self._recv_size = recv_size
        self._buffer = bytearray()
        self.timeout_s = timeout_s
        self.idle_timeout_s = idle_timeout_s
        self.bytes_sent = 0
        self.bytes_received = 0
        transport.settimeout(timeout_s)

    def _recv(self, size: int) -> bytes:
        """Receive up to size bytes, mapping socket failures to session errors."""
        try:
            data = self._transport.recv(size)
        except socket.timeout:
            raise PhaseTimeoutError(f"No data received within {self.timeout_s}s")
        except OSError as e:
            raise TransportClosedError(f"Receive failed: {e}") from e

        if not data:
            raise TransportClosedError("Connection closed by peer")

        self.bytes_received += len(data)
        logger.log(TRACE, f"Received {len(data)} bytes")
        return data

    def _recv_idle(self, size: int) -> bytes:
        """Receive the first bytes of an idle marker under the idle timeout."""
        try:
            self._transport.settimeout(self.idle_timeout_s)
        except OSError as e:
            raise TransportClosedError(f"Receive failed: {e}") from e
        try:
            data = self._recv(size)
        except PhaseTimeoutError:
            raise IdleTimeoutError(f"No test requested within {self.idle_timeout_s}s") from None
        # A failed read ends the session, so the phase timeout is restored only on success
        self._transport.settimeout(self.timeout_s)
        return data

    def _send(self, data: bytes) -> int:
        try:
            self._transport.sendall(data)
        except socket.timeout:
            raise PhaseTimeoutError(f"Peer did not accept data within {self.timeout_s}s")
        except OSError as e:
            raise TransportClosedError(f"Send failed: {e}") from e

        self.bytes_sent += len(data)
        return len(data)

    @property
    def buffered(self) -> int:
        """Number of received bytes not yet handed to a caller."""
        return len(self._buffer)

    def read_marker(self, idle: bool = False) -> Marker:
        """Read one LF-terminated marker line.

        With idle=True the wait for the first byte uses idle_timeout_s;
        once any byte of the line has arrived the phase timeout applies.

        Raises:
            MarkerError: If the line is malformed or exceeds MAX_MARKER_LENGTH.
            PhaseTimeoutError: If the line does not complete in time.
            IdleTimeoutError: If idle and nothing arrives within idle_timeout_s.
            TransportClosedError: If the stream closes first.
        """
        while True:
            end = self._buffer.find(MARKER_TERMINATOR)
            if end >= 0:
                line = bytes(self._buffer[: end + 1])
                del self._buffer[: end + 1]
                marker = decode_marker(line)
                logger.debug(f"Received marker {marker}")
                return marker

            if len(self._buffer) >= MAX_MARKER_LENGTH:
                raise MarkerError(
                    f"No marker terminator within {MAX_MARKER_LENGTH} bytes: "
                    f"{bytes(self._buffer[:16])!r}"
                )

            if idle and not self._buffer:
                self._buffer += self._recv_idle(MAX_MARKER_LENGTH)
            else:
                self._buffer += self._recv(MAX_MARKER_LENGTH)

    def read_payload(self, max_bytes: int) -> bytes:
        """Read between 1 and max_bytes payload bytes.

        Never consumes bytes beyond max_bytes, so whatever follows a payload
        phase (normally a marker) is left on the stream.
        """
        if max_bytes < 1:
            raise ValueError(f"max_bytes must be >= 1, got {max_bytes}")

        if self._buffer:
            data = bytes(self._buffer[:max_bytes])
            del self._buffer[:max_bytes]
            return data

        return self._recv(min(max_bytes, self._recv_size))

    def send_marker(self, marker: Marker) -> int:
        """Send a marker line in a single write. Returns bytes written."""
        written = self._send(encode_marker(marker))
        logger.debug(f"Sent marker {marker}")
        return written

    def send_payload(self, data: bytes) -> int:
        """Send raw payload bytes. Returns bytes written."""
        return self._send(data)

    def close(self) -> None:
        """Shut down and close the underlying transport.

        The shutdown wakes any thread blocked in a read on this stream.
        """
        try:
            self._transport.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            logger.debug(f"Error shutting down transport: {e}")
        try:
            self._transport.close()
        except OSError as e:
            logger.debug(f"Error closing transport: {e}")
