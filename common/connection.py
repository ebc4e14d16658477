"""Connection-level errors and parameters for tcp-speedtest.

Contains:
- ConnectionFailedError: Initiator could not reach the listener
- ProtocolViolation: Peer broke the marker/payload contract
- PhaseTimeoutError: No progress within the phase timeout
- TransportClosedError: Stream closed or failed mid-session
- IdleTimeoutError: Connection sat idle past the idle timeout
- SessionNotFoundError: Registry lookup for an unknown session
- SessionParams: Fixed per-session test parameters
- check_timeout: Validate a timeout setting
"""

from dataclasses import dataclass

from common.protocol import DEFAULT_PAUSE_S, DEFAULT_PAYLOAD_SIZE


class ConnectionFailedError(Exception):
    """Raised when connecting to the listener fails (refused, reset, timeout)."""

    pass


class ProtocolViolation(Exception):
    """Raised when received bytes or markers break the test protocol."""

    pass


class PhaseTimeoutError(Exception):
    """Raised when no bytes or marker arrive within the phase timeout."""

    pass


class TransportClosedError(Exception):
    """Raised when the peer closes the stream or the socket fails."""

    pass


class IdleTimeoutError(TransportClosedError):
    """Raised when no test is requested within the idle timeout.

    Treated like the peer closing the connection before a test.
    """

    pass


class SessionNotFoundError(Exception):
    """Raised when a session id has no registered transport handle."""

    pass


@dataclass(frozen=True)
class SessionParams:
    """Parameters fixed for the lifetime of a session.

    payload_size is configuration on both ends; it is never sent on the wire.
    """

    payload_size: int = DEFAULT_PAYLOAD_SIZE
    pause_s: float = DEFAULT_PAUSE_S

    def __post_init__(self) -> None:
        """Validate invariants."""
        if self.payload_size < 1:
            raise ValueError(f"payload_size must be >= 1, got {self.payload_size}")
        if self.pause_s < 0:
            raise ValueError(f"pause_s must be >= 0, got {self.pause_s}")


def check_timeout(name: str, value: float) -> None:
    """Raise ValueError unless value is a usable socket timeout (> 0)."""
    if not value > 0:
        raise ValueError(f"{name} must be > 0, got {value}")
