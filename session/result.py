"""Session result types for tcp-speedtest.

Contains:
- SessionError: Generic session failure
- Sample: One timed payload transfer
- compute_speed: MB/s from size and duration, guarded against zero time
- average_speed: Mean speed over samples, None when there is no data
- TestResult: Immutable snapshot of a completed test
- build_test_result: Aggregate a completed session state
- SessionResult: Outcome of one session exchange
"""

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from common.connection import PhaseTimeoutError, ProtocolViolation, TransportClosedError
from common.protocol import BYTES_PER_MIB, Phase, Role

if TYPE_CHECKING:
    from session.state import SessionState


class SessionError(Exception):
    """Raised when a session fails for a reason outside the protocol taxonomy."""

    pass


def compute_speed(data_size: int, transfer_time_ms: int) -> float | None:
    """Compute transfer speed in MB/s (MiB per second).

    Returns None for transfers that took no measurable time. The result is
    never infinite, NaN, or negative.
    """
    if transfer_time_ms <= 0 or data_size <= 0:
        return None
    return (data_size / BYTES_PER_MIB) / (transfer_time_ms / 1000)


@dataclass(frozen=True)
class Sample:
    """One timed payload transfer in one direction.

    Attributes:
        iteration: 1-based iteration index.
        data_size: Bytes transferred.
        transfer_time_ms: Phase duration in milliseconds.
        speed_mbs: MB/s, or None when the transfer was instantaneous.
    """

    iteration: int
    data_size: int
    transfer_time_ms: int
    speed_mbs: float | None

    @classmethod
    def measure(cls, iteration: int, data_size: int, start_ms: int, end_ms: int) -> "Sample":
        """Build a sample from phase start and end timestamps."""
        transfer_time_ms = max(0, end_ms - start_ms)
        return cls(
            iteration=iteration,
            data_size=data_size,
            transfer_time_ms=transfer_time_ms,
            speed_mbs=compute_speed(data_size, transfer_time_ms),
        )

    @property
    def instantaneous(self) -> bool:
        """True when the speed could not be measured."""
        return self.speed_mbs is None


def average_speed(samples: tuple[Sample, ...] | list[Sample]) -> float | None:
    """Mean speed over samples with a measurable speed.

    Returns None ("no data") for an empty sequence or one holding only
    instantaneous samples.
    """
    speeds = [s.speed_mbs for s in samples if s.speed_mbs is not None]
    if not speeds:
        return None
    return sum(speeds) / len(speeds)


@dataclass(frozen=True)
class TestResult:
    """Aggregated result of one completed test, keyed by session and time."""

    __test__ = False  # keep pytest from collecting it

    session_id: str
    completed_at: datetime
    upload_samples: tuple[Sample, ...]
    download_samples: tuple[Sample, ...]
    avg_upload_speed: float | None
    avg_download_speed: float | None

    @property
    def iterations(self) -> int:
        """Number of completed iterations."""
        return len(self.upload_samples)


def build_test_result(state: "SessionState", completed_at: datetime) -> TestResult:
    """Snapshot a completed session into a TestResult.

    Raises:
        ValueError: If the session has not completed.
    """
    if state.phase is not Phase.COMPLETED:
        raise ValueError(f"Session {state.session_id} not completed (phase={state.phase.value})")

    upload = tuple(state.upload_samples)
    download = tuple(state.download_samples)
    return TestResult(
        session_id=state.session_id,
        completed_at=completed_at,
        upload_samples=upload,
        download_samples=download,
        avg_upload_speed=average_speed(upload),
        avg_download_speed=average_speed(download),
    )


@dataclass
class SessionResult:
    """Outcome of one session exchange.

    Attributes:
        success: True if the session reached COMPLETED.
        session_id: Peer "ip:port".
        role: Which side produced this result.
        error: Cause of failure, if any.
        test_result: Aggregated samples (successful sessions only).
        started: True once a test was requested on this session.
        iterations_completed: Fully completed iterations (upload and download).
        bytes_sent: Total bytes written to the stream.
        bytes_received: Total bytes read from the stream.
        elapsed_s: Session duration in seconds.
    """

    success: bool
    session_id: str = ""
    role: Role | None = None
    error: Exception | None = None
    test_result: TestResult | None = None
    started: bool = False
    iterations_completed: int = 0
    bytes_sent: int = 0
    bytes_received: int = 0
    elapsed_s: float = 0.0

    @property
    def timed_out(self) -> bool:
        """True if the session was aborted by the phase timeout."""
        return isinstance(self.error, PhaseTimeoutError)

    @property
    def protocol_violation(self) -> bool:
        """True if the peer broke the protocol."""
        return isinstance(self.error, ProtocolViolation)

    @property
    def closed_while_idle(self) -> bool:
        """True if the peer disconnected (or idled out) before requesting a test."""
        return (
            not self.success
            and not self.started
            and isinstance(self.error, TransportClosedError)
        )
