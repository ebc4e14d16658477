"""Initiator runner for tcp-speedtest.

Contains:
- Initiator: one connection to a listener, able to run tests on demand
- ExitCode: Process exit codes for run_initiator
- run_initiator: Connect, run one test, report and map the outcome
"""

import logging
from enum import IntEnum
from pathlib import Path

from common.connection import ConnectionFailedError, SessionParams, check_timeout
from common.events import ConnectionStatus, EventSink, LoggingEventSink
from common.io import MarkerStream
from common.protocol import (
    CONNECT_TIMEOUT_S,
    DEFAULT_PAUSE_S,
    DEFAULT_PHASE_TIMEOUT_S,
    MAX_ITERATION_TARGET,
    Role,
)
from common.report import ConnectionReport
from initiator.connect import connect_to_listener
from session.exchange import TransitionObserver, initiator_exchange
from session.persist import write_result_csv
from session.report import SessionReport
from session.result import SessionResult

logger = logging.getLogger(__name__)


class ExitCode(IntEnum):
    """Exit codes for initiator operations."""

    SUCCESS = 0  # All iterations completed
    CONNECTION_FAILED = 1  # Connect refused/timed out, or peer closed mid-test
    PROTOCOL_ERROR = 2  # Peer sent something the protocol does not allow
    TIMEOUT = 3  # A phase saw no progress within the phase timeout


class Initiator:
    """Active endpoint holding one connection to a listener.

    Tests run one at a time; several tests may run back to back on the
    same connection.

    pause_s must stay below the phase timeout, which should match the
    listener's, since the listener waits out each pause under it.

    Usage:
        with Initiator("10.0.0.2", 48001) as initiator:
            result = initiator.start_test(1024 * 1024, 5)
    """

    def __init__(
        self,
        host: str,
        port: int,
        pause_s: float = DEFAULT_PAUSE_S,
        phase_timeout_s: float = DEFAULT_PHASE_TIMEOUT_S,
        connect_timeout_s: float = CONNECT_TIMEOUT_S,
        sink: EventSink | None = None,
        on_transition: TransitionObserver | None = None,
    ) -> None:
        check_timeout("phase_timeout_s", phase_timeout_s)
        check_timeout("connect_timeout_s", connect_timeout_s)
        if pause_s < 0:
            raise ValueError(f"pause_s must be >= 0, got {pause_s}")
        if pause_s >= phase_timeout_s:
            raise ValueError(
                f"pause_s ({pause_s}) must be less than phase_timeout_s ({phase_timeout_s})"
            )
        self.host = host
        self.port = port
        self.pause_s = pause_s
        self.phase_timeout_s = phase_timeout_s
        self.connect_timeout_s = connect_timeout_s
        self._sink = sink if sink is not None else LoggingEventSink()
        self._on_transition = on_transition
        self._stream: MarkerStream | None = None
        self._session_id = ""

    @property
    def connected(self) -> bool:
        return self._stream is not None

    @property
    def session_id(self) -> str:
        """Listener "ip:port" of the current connection, "" when not connected."""
        return self._session_id

    def connect(self) -> None:
        """Connect to the listener.

        Raises:
            ConnectionFailedError: If the connection cannot be established.
        """
        if self._stream is not None:
            return
        try:
            sock = connect_to_listener(self.host, self.port, self.connect_timeout_s)
        except ConnectionFailedError as e:
            self._sink.emit(ConnectionStatus("error", str(e)))
            raise

        peer = sock.getpeername()
        self._session_id = f"{peer[0]}:{peer[1]}"
        self._stream = MarkerStream(sock, timeout_s=self.phase_timeout_s)
        self._sink.emit(ConnectionStatus("connected"))

    def start_test(self, payload_size: int, iteration_count: int) -> SessionResult:
        """Run one throughput test over the current connection.

        Args:
            payload_size: Bytes per upload and per download. Must match the
                listener's configured payload size.
            iteration_count: Upload+download iterations (1..MAX_ITERATION_TARGET).

        Returns:
            SessionResult for the test. A failed test leaves the connection
            closed.

        Raises:
            ValueError: If an argument is out of range.
            ConnectionFailedError: If not connected.
        """
        if payload_size < 1:
            raise ValueError(f"payload_size must be >= 1, got {payload_size}")
        if not 1 <= iteration_count <= MAX_ITERATION_TARGET:
            raise ValueError(
                f"iteration_count must be 1..{MAX_ITERATION_TARGET}, got {iteration_count}"
            )
        if self._stream is None:
            raise ConnectionFailedError("Not connected to a listener")

        params = SessionParams(payload_size=payload_size, pause_s=self.pause_s)
        logger.info(
            f"Initiator: starting test (payload={payload_size} bytes, "
            f"iterations={iteration_count})"
        )
        result = initiator_exchange(
            self._stream,
            self._session_id,
            iteration_count,
            params,
            sink=self._sink,
            on_transition=self._on_transition,
        )
        if not result.success:
            # The stream position is unknown after a failure
            self.close()
        return result

    def close(self) -> None:
        """Close the connection if open."""
        if self._stream is None:
            return
        self._stream.close()
        self._stream = None
        logger.info(f"Initiator: disconnected from {self._session_id}")
        self._sink.emit(ConnectionStatus("disconnected"))

    def __enter__(self) -> "Initiator":
        self.connect()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def exit_code_for(result: SessionResult) -> ExitCode:
    """Map a session outcome to a process exit code."""
    if result.success:
        return ExitCode.SUCCESS
    if result.timed_out:
        return ExitCode.TIMEOUT
    if result.protocol_violation:
        return ExitCode.PROTOCOL_ERROR
    return ExitCode.CONNECTION_FAILED


def run_initiator(
    host: str,
    port: int,
    payload_size: int,
    iterations: int,
    pause_s: float = DEFAULT_PAUSE_S,
    phase_timeout_s: float = DEFAULT_PHASE_TIMEOUT_S,
    connect_timeout_s: float = CONNECT_TIMEOUT_S,
    results_dir: Path | None = None,
) -> int:
    """Run initiator: connect + one throughput test. Returns exit code.

    The initiator:
    - Connects to the listener (no retry)
    - Sends BEGIN_TEST and runs the upload/download iterations
    - Prints connection and session reports, optionally saves CSV
    - Returns exit code based on session result
    """
    initiator = Initiator(
        host,
        port,
        pause_s=pause_s,
        phase_timeout_s=phase_timeout_s,
        connect_timeout_s=connect_timeout_s,
    )

    try:
        initiator.connect()
    except ConnectionFailedError as e:
        logger.warning(f"Connection failed: {e}")
        ConnectionReport(connected=False, error=e).print()
        return ExitCode.CONNECTION_FAILED

    try:
        ConnectionReport(
            connected=True,
            session_id=initiator.session_id,
            role=Role.INITIATOR,
        ).print()

        result = initiator.start_test(payload_size, iterations)
        SessionReport(result=result).print()

        if result.success and results_dir is not None:
            assert result.test_result is not None
            peer_ip = initiator.session_id.rsplit(":", 1)[0]
            try:
                path = write_result_csv(result.test_result, peer_ip, results_dir)
                print(f"Results saved to {path}")
            except OSError as e:
                logger.error(f"Failed to save results: {e}")

        return exit_code_for(result)

    finally:
        initiator.close()
