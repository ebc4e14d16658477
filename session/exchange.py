"""Session data exchange for tcp-speedtest.

Contains:
- initiator_exchange: Run one test from the initiator side
- listener_exchange: Serve one test from the listener side

Both drive the pure state machine in session.state: commands are executed
from a FIFO queue and the events they produce are fed straight back, so
phase advancement never recurses across network round trips.
"""

import logging
import time
from collections import deque
from collections.abc import Callable
from datetime import datetime, timezone

from common.connection import (
    IdleTimeoutError,
    PhaseTimeoutError,
    ProtocolViolation,
    SessionParams,
    TransportClosedError,
)
from common.events import ConnectionStatus, EventSink
from common.io import MarkerStream
from common.message import random_payload
from common.protocol import (
    LOG_PROGRESS_INTERVAL,
    MAX_ITERATION_TARGET,
    SEND_CHUNK_SIZE,
    TRACE,
    Phase,
    Role,
)
from session.result import SessionError, SessionResult, build_test_result
from session.state import (
    Awaiting,
    Command,
    DataReceived,
    Emit,
    Event,
    MarkerReceived,
    Pause,
    PauseElapsed,
    PayloadSent,
    SendMarker,
    SendPayload,
    SessionState,
    StartTest,
    awaiting,
    monotonic_ms,
    new_session,
    transition,
)

logger = logging.getLogger(__name__)

TransitionObserver = Callable[[SessionState], None]


class _NullSink:
    def emit(self, event: object) -> None:
        pass


class _Driver:
    """Executes state machine commands against one stream."""

    def __init__(
        self,
        stream: MarkerStream,
        state: SessionState,
        sink: EventSink,
        on_transition: TransitionObserver | None,
        clock: Callable[[], int],
        sleep: Callable[[float], None],
    ) -> None:
        self.stream = stream
        self.state = state
        self._sink = sink
        self._on_transition = on_transition
        self._clock = clock
        self._sleep = sleep
        self._pending: deque[Command] = deque()
        self._chunks_sent = 0

    def dispatch(self, event: Event) -> None:
        result = transition(self.state, event, self._clock())
        phase_changed = result.state.phase is not self.state.phase
        self.state = result.state
        self._pending.extend(result.commands)
        if phase_changed:
            logger.debug(f"{self.state.session_id}: -> {self.state.phase.value}")
        if self._on_transition is not None:
            self._on_transition(self.state)

    def _send_payload(self, size: int) -> None:
        payload = random_payload(size)
        for offset in range(0, size, SEND_CHUNK_SIZE):
            chunk = payload[offset : offset + SEND_CHUNK_SIZE]
            self.stream.send_payload(chunk)
            self._chunks_sent += 1
            logger.log(TRACE, f"{self.state.session_id}: sent {offset + len(chunk)}/{size} bytes")
            if self._chunks_sent % LOG_PROGRESS_INTERVAL == 0:
                logger.debug(
                    f"{self.state.session_id}: progress {offset + len(chunk)}/{size} bytes "
                    f"(iteration {self.state.iteration_index}/{self.state.iteration_target})"
                )
            self.dispatch(PayloadSent(len(chunk)))

    def drain(self) -> None:
        """Execute queued commands until none are left."""
        while self._pending:
            command = self._pending.popleft()
            match command:
                case SendMarker(marker=marker):
                    self.stream.send_marker(marker)
                case SendPayload(size=size):
                    self._send_payload(size)
                case Pause(seconds=seconds):
                    if seconds > 0:
                        self._sleep(seconds)
                    self.dispatch(PauseElapsed())
                case Emit(event=event):
                    self._sink.emit(event)

    def run(self, first_event: Event | None = None) -> SessionState:
        """Run until COMPLETED. Session-level errors propagate to the caller."""
        if first_event is not None:
            self.dispatch(first_event)

        while True:
            self.drain()
            if self.state.phase is Phase.COMPLETED:
                return self.state

            match awaiting(self.state):
                case Awaiting.MARKER:
                    idle = self.state.phase is Phase.IDLE
                    self.dispatch(MarkerReceived(self.stream.read_marker(idle=idle)))
                case Awaiting.DATA:
                    chunk = self.stream.read_payload(self.state.bytes_remaining)
                    logger.log(TRACE, f"{self.state.session_id}: received {len(chunk)} bytes")
                    self.dispatch(DataReceived(chunk))
                case Awaiting.NOTHING:
                    raise SessionError(
                        f"{self.state.session_id}: stalled in phase {self.state.phase.value} "
                        "with no pending commands"
                    )


def _run(
    stream: MarkerStream,
    state: SessionState,
    first_event: Event | None,
    sink: EventSink | None,
    on_transition: TransitionObserver | None,
    clock: Callable[[], int],
    sleep: Callable[[float], None],
) -> SessionResult:
    """Drive one session and fold the outcome into a SessionResult."""
    sink = sink if sink is not None else _NullSink()
    driver = _Driver(stream, state, sink, on_transition, clock, sleep)
    start = time.monotonic()
    sent_before = stream.bytes_sent
    received_before = stream.bytes_received

    def _result(**kwargs) -> SessionResult:
        return SessionResult(
            session_id=state.session_id,
            role=state.role,
            started=driver.state.phase is not Phase.IDLE,
            iterations_completed=len(driver.state.download_samples),
            bytes_sent=stream.bytes_sent - sent_before,
            bytes_received=stream.bytes_received - received_before,
            elapsed_s=time.monotonic() - start,
            **kwargs,
        )

    try:
        final = driver.run(first_event)
    except (ProtocolViolation, PhaseTimeoutError, TransportClosedError) as e:
        result = _result(success=False, error=e)
        if isinstance(e, IdleTimeoutError):
            logger.info(f"{state.session_id}: {e}, closing connection")
        elif result.closed_while_idle:
            logger.info(f"{state.session_id}: peer closed connection")
        else:
            logger.error(
                f"{state.session_id}: session aborted in phase {driver.state.phase.value}: {e}"
            )
            sink.emit(ConnectionStatus("error", str(e)))
        return result

    test_result = build_test_result(final, completed_at=datetime.now(timezone.utc))
    logger.info(
        f"{state.session_id}: session complete ({test_result.iterations} iterations, "
        f"{stream.bytes_sent - sent_before} bytes sent, "
        f"{stream.bytes_received - received_before} bytes received)"
    )
    return _result(success=True, test_result=test_result)


def initiator_exchange(
    stream: MarkerStream,
    session_id: str,
    iteration_target: int,
    params: SessionParams,
    sink: EventSink | None = None,
    on_transition: TransitionObserver | None = None,
    clock: Callable[[], int] = monotonic_ms,
    sleep: Callable[[float], None] = time.sleep,
) -> SessionResult:
    """Initiator-side exchange.

    Sends BEGIN_TEST, then alternates upload and download for
    iteration_target iterations, pausing params.pause_s between iterations.

    Args:
        stream: Connected stream to the listener.
        session_id: Listener "ip:port".
        iteration_target: Number of upload+download iterations (>= 1).
        params: Payload size and pacing.
        sink: Receiver for bridge events.
        on_transition: Called with the new state after every transition.

    Returns:
        SessionResult with the aggregated TestResult on success.

    Raises:
        ValueError: If iteration_target is out of range.
    """
    if not 1 <= iteration_target <= MAX_ITERATION_TARGET:
        raise ValueError(
            f"iteration_target must be 1..{MAX_ITERATION_TARGET}, got {iteration_target}"
        )
    state = new_session(session_id, Role.INITIATOR, params)
    return _run(stream, state, StartTest(iteration_target), sink, on_transition, clock, sleep)


def listener_exchange(
    stream: MarkerStream,
    session_id: str,
    params: SessionParams,
    sink: EventSink | None = None,
    on_transition: TransitionObserver | None = None,
    clock: Callable[[], int] = monotonic_ms,
    sleep: Callable[[float], None] = time.sleep,
) -> SessionResult:
    """Listener-side exchange.

    Waits for BEGIN_TEST, then receives uploads and sends downloads until
    the requested number of iterations is done.

    Args:
        stream: Accepted stream from the initiator.
        session_id: Initiator "ip:port".
        params: Payload size (must match the initiator's configuration).
        sink: Receiver for bridge events.
        on_transition: Called with the new state after every transition.

    Returns:
        SessionResult with the aggregated TestResult on success.
    """
    state = new_session(session_id, Role.LISTENER, params)
    return _run(stream, state, None, sink, on_transition, clock, sleep)
