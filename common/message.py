"""Control marker encoding/decoding for tcp-speedtest.

Markers share the byte stream with raw payload. Each one is written
standalone and terminated by a single LF:
  START_TEST:<n>\\n
  SWITCH_TO_DOWNLOAD\\n
  DOWNLOAD_ACK\\n

Payload carries no header; its length is the configured payload size.
"""

import os
from dataclasses import dataclass
from enum import Enum

from common.connection import ProtocolViolation
from common.protocol import MAX_ITERATION_TARGET

ENCODING = "ascii"
MARKER_TERMINATOR = b"\n"

# Longest acceptable marker line including the terminator
MAX_MARKER_LENGTH = 32

BEGIN_TEST_PREFIX = "START_TEST:"


class MarkerError(ProtocolViolation):
    """Raised when a marker line is malformed or unknown."""

    pass


class MarkerType(Enum):
    """Control markers. Values are the canonical wire names."""

    BEGIN_TEST = "START_TEST"
    SWITCH_TO_DOWNLOAD = "SWITCH_TO_DOWNLOAD"
    DOWNLOAD_ACK = "DOWNLOAD_ACK"


# Names used by other deployment variants, accepted on decode only
MARKER_ALIASES = {
    "START_DOWNLOAD": MarkerType.SWITCH_TO_DOWNLOAD,
    "DOWNLOAD_REQUEST": MarkerType.SWITCH_TO_DOWNLOAD,
    "DOWNLOAD_COMPLETE": MarkerType.DOWNLOAD_ACK,
}


@dataclass(frozen=True)
class Marker:
    """A decoded control marker.

    iteration_target is set only for BEGIN_TEST.
    """

    type: MarkerType
    iteration_target: int | None = None

    def __post_init__(self) -> None:
        """Validate invariants."""
        if self.type is MarkerType.BEGIN_TEST:
            if self.iteration_target is None:
                raise ValueError("BEGIN_TEST requires iteration_target")
        elif self.iteration_target is not None:
            raise ValueError(f"{self.type.name} does not carry iteration_target")

    def __str__(self) -> str:
        if self.type is MarkerType.BEGIN_TEST:
            return f"{BEGIN_TEST_PREFIX}{self.iteration_target}"
        return self.type.value


def begin_test(iteration_target: int) -> Marker:
    """Create a BEGIN_TEST marker."""
    return Marker(MarkerType.BEGIN_TEST, iteration_target)


SWITCH_TO_DOWNLOAD = Marker(MarkerType.SWITCH_TO_DOWNLOAD)
DOWNLOAD_ACK = Marker(MarkerType.DOWNLOAD_ACK)


def encode_marker(marker: Marker) -> bytes:
    """Encode a marker as an LF-terminated ASCII line."""
    return str(marker).encode(ENCODING) + MARKER_TERMINATOR


def _parse_iteration_target(text: str) -> int:
    if not text.isascii() or not text.isdigit():
        raise MarkerError(f"Invalid iteration count in BEGIN_TEST: {text!r}")
    count = int(text)
    if count < 1 or count > MAX_ITERATION_TARGET:
        raise MarkerError(
            f"Iteration count {count} out of range 1..{MAX_ITERATION_TARGET}"
        )
    return count


def decode_marker(line: bytes) -> Marker:
    """Decode one marker line. A trailing LF (or CRLF) is optional.

    Raises:
        MarkerError: On unknown, malformed, or oversized markers.
    """
    if len(line) > MAX_MARKER_LENGTH:
        raise MarkerError(f"Marker too long: {len(line)} bytes, max {MAX_MARKER_LENGTH}")

    try:
        text = line.decode(ENCODING)
    except UnicodeDecodeError:
        raise MarkerError(f"Marker is not ASCII: {line[:16]!r}")

    text = text.rstrip("\r\n")

    if text.startswith(BEGIN_TEST_PREFIX):
        return begin_test(_parse_iteration_target(text[len(BEGIN_TEST_PREFIX) :]))

    if text in MARKER_ALIASES:
        return Marker(MARKER_ALIASES[text])

    try:
        marker_type = MarkerType(text)
    except ValueError:
        raise MarkerError(f"Unknown marker: {text!r}")

    if marker_type is MarkerType.BEGIN_TEST:
        raise MarkerError("BEGIN_TEST without iteration count")
    return Marker(marker_type)


def looks_like_marker(chunk: bytes) -> bool:
    """Return True if a received chunk is exactly one marker line."""
    if not chunk or len(chunk) > MAX_MARKER_LENGTH:
        return False
    try:
        decode_marker(chunk)
    except MarkerError:
        return False
    return True


def random_payload(size: int) -> bytes:
    """Generate size bytes of random payload."""
    return os.urandom(size)
