"""Protocol definitions for tcp-speedtest.

Contains:
- Role, Phase and Direction enums
- Transport Protocol for type checking
- Default sizes, ports and timing constants (env-overridable)
- Logging configuration
"""

import logging
import os
from enum import Enum
from typing import Protocol

# TRACE logging level (below DEBUG)
TRACE = 5
logging.addLevelName(TRACE, "TRACE")

# Progress logging interval in payload chunks (configurable via envvar)
LOG_PROGRESS_INTERVAL = int(os.environ.get("SPEEDTEST_LOG_INTERVAL", "16"))


class Role(Enum):
    """Endpoint role in a throughput test."""

    LISTENER = "listener"
    INITIATOR = "initiator"


class Phase(Enum):
    """Session phases shared by both roles."""

    IDLE = "idle"
    UPLOAD_IN_FLIGHT = "upload_in_flight"
    AWAIT_DOWNLOAD_SIGNAL = "await_download_signal"
    DOWNLOAD_IN_FLIGHT = "download_in_flight"
    AWAIT_DOWNLOAD_ACK = "await_download_ack"
    COMPLETED = "completed"


class Direction(Enum):
    """Direction of payload flow. Upload is initiator to listener."""

    UPLOAD = "upload"
    DOWNLOAD = "download"


class Transport(Protocol):
    """Protocol for the connected stream socket operations we need."""

    def sendall(self, data: bytes, /) -> None: ...
    def recv(self, bufsize: int, /) -> bytes: ...
    def settimeout(self, value: float | None, /) -> None: ...
    def shutdown(self, how: int, /) -> None: ...
    def close(self) -> None: ...


BYTES_PER_MIB = 2**20

# Payload and schedule defaults
DEFAULT_PORT = int(os.environ.get("SPEEDTEST_PORT", "48001"))
DEFAULT_PAYLOAD_SIZE = int(os.environ.get("SPEEDTEST_PAYLOAD_SIZE", str(BYTES_PER_MIB)))
DEFAULT_ITERATIONS = int(os.environ.get("SPEEDTEST_ITERATIONS", "5"))
MAX_ITERATION_TARGET = 1000

# Default timing constants
DEFAULT_PHASE_TIMEOUT_S = float(os.environ.get("SPEEDTEST_PHASE_TIMEOUT_S", "30"))
# Listener wait for START_TEST on an open connection, unset means no limit
_idle_timeout = os.environ.get("SPEEDTEST_IDLE_TIMEOUT_S", "")
DEFAULT_IDLE_TIMEOUT_S = float(_idle_timeout) if _idle_timeout else None
DEFAULT_PAUSE_S = float(os.environ.get("SPEEDTEST_PAUSE_S", "1.0"))  # Between iterations
CONNECT_TIMEOUT_S = 10.0
ACCEPT_POLL_S = 1.0  # Accept loop checks for shutdown at this interval
MAX_KEPT_RESULTS = int(os.environ.get("SPEEDTEST_MAX_RESULTS", "1000"))  # Listener result history

# I/O sizes
SEND_CHUNK_SIZE = 64 * 1024
RECV_CHUNK_SIZE = 64 * 1024
