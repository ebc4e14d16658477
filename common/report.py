"""Reporting abstractions for tcp-speedtest.

Contains:
- Report ABC: Base class for all reports
- ConnectionReport: Report after the initiator connects (or fails to)
- format_bytes: Human-readable byte sizes
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass

from common.protocol import Role

_SIZE_UNITS = ["Bytes", "KB", "MB", "GB"]


def format_bytes(size: int) -> str:
    """Format a byte count with a binary unit, e.g. 1048576 -> '1 MB'."""
    if size <= 0:
        return "0 Bytes"
    exponent = 0
    while size >= 1024 ** (exponent + 1) and exponent < len(_SIZE_UNITS) - 1:
        exponent += 1
    value = round(size / 1024**exponent, 2)
    return f"{value:g} {_SIZE_UNITS[exponent]}"


class Report(ABC):
    """Abstract base class for test reports."""

    @abstractmethod
    def print(self) -> None:
        """Print the report to stdout."""
        pass

    @abstractmethod
    def success(self) -> bool:
        """Return True if the report indicates success."""
        pass


@dataclass
class ConnectionReport(Report):
    """Report after connecting to a listener.

    When connected=True, session_id and role are required.
    When connected=False, error should be set.
    """

    connected: bool
    session_id: str | None = None
    role: Role | None = None
    error: Exception | None = None

    def __post_init__(self) -> None:
        """Validate invariants."""
        if self.connected:
            if self.session_id is None:
                raise ValueError("session_id is required when connected=True")
            if self.role is None:
                raise ValueError("role is required when connected=True")

    def print(self) -> None:
        """Print the connection report."""
        if self.connected:
            assert self.role is not None
            print(f"Connection: SUCCESS (id={self.session_id}, role={self.role.value})")
        else:
            print(f"Connection: FAILED ({self.error})")

    def success(self) -> bool:
        """Return True if the connection succeeded."""
        return self.connected
