"""Common modules for tcp-speedtest.

This package contains shared code used by both initiator and listener:
- protocol: Role/Phase/Direction enums, defaults, Transport Protocol
- connection: Errors and SessionParams
- message: Control marker encoding/decoding
- io: MarkerStream over a connected socket
- events: Control-plane bridge events and sinks
- report: Reporting abstractions
"""

from common.connection import (
    ConnectionFailedError,
    PhaseTimeoutError,
    ProtocolViolation,
    SessionNotFoundError,
    SessionParams,
    TransportClosedError,
)
from common.message import MarkerError
from common.protocol import (
    CONNECT_TIMEOUT_S,
    DEFAULT_ITERATIONS,
    DEFAULT_PAUSE_S,
    DEFAULT_PAYLOAD_SIZE,
    DEFAULT_PHASE_TIMEOUT_S,
    DEFAULT_PORT,
    Direction,
    Phase,
    Role,
    Transport,
)

__all__ = [
    # Protocol
    "Direction",
    "Phase",
    "Role",
    "Transport",
    "CONNECT_TIMEOUT_S",
    "DEFAULT_ITERATIONS",
    "DEFAULT_PAUSE_S",
    "DEFAULT_PAYLOAD_SIZE",
    "DEFAULT_PHASE_TIMEOUT_S",
    "DEFAULT_PORT",
    # Connection
    "SessionParams",
    # Exceptions
    "ConnectionFailedError",
    "MarkerError",
    "PhaseTimeoutError",
    "ProtocolViolation",
    "SessionNotFoundError",
    "TransportClosedError",
]
