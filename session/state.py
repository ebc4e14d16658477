"""Session state machine for tcp-speedtest.

A session alternates upload (initiator -> listener) and download
(listener -> initiator) phases for iteration_target iterations. The whole
machine is one pure function:

    transition(state, event, now_ms) -> Transition(state, commands)

The caller executes the returned commands (send a marker, send payload,
pause, emit a bridge event) and feeds the resulting events back in. Nothing
here touches a socket or a clock.

Timing per phase:
- The receiver of a phase stops the clock on the last payload byte.
- The sender of a phase stops the clock when the peer's marker arrives.
- The listener starts its upload clock on the first payload chunk, since the
  initiator may pause between DOWNLOAD_ACK and the next upload.
"""

import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum, auto
from typing import Union

from common.connection import ProtocolViolation, SessionParams
from common.events import BridgeEvent, TestCompleted, TestProgress
from common.message import (
    DOWNLOAD_ACK,
    SWITCH_TO_DOWNLOAD,
    Marker,
    MarkerType,
    begin_test,
    looks_like_marker,
)
from common.protocol import MAX_ITERATION_TARGET, Direction, Phase, Role
from session.result import Sample

logger = logging.getLogger(__name__)


def monotonic_ms() -> int:
    """Millisecond timestamp from the monotonic clock."""
    return time.monotonic_ns() // 1_000_000


# -----------------------------------------------------------------------------
# State
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class SessionState:
    """Per-connection test state. Replaced, never mutated, on each transition."""

    session_id: str
    role: Role
    payload_size: int
    pause_s: float = 0.0
    phase: Phase = Phase.IDLE
    iteration_index: int = 0
    iteration_target: int = 0
    bytes_accumulated: int = 0
    phase_start_ms: int | None = None
    upload_samples: tuple[Sample, ...] = ()
    download_samples: tuple[Sample, ...] = ()

    @property
    def bytes_remaining(self) -> int:
        """Payload bytes still owed in the current phase."""
        return self.payload_size - self.bytes_accumulated

    @property
    def last_iteration(self) -> bool:
        return self.iteration_index >= self.iteration_target


def new_session(session_id: str, role: Role, params: SessionParams) -> SessionState:
    """Create an idle session."""
    return SessionState(
        session_id=session_id,
        role=role,
        payload_size=params.payload_size,
        pause_s=params.pause_s,
    )


# -----------------------------------------------------------------------------
# Events and commands
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class StartTest:
    """Control plane asked the initiator to start a test."""

    iteration_target: int


@dataclass(frozen=True)
class MarkerReceived:
    marker: Marker


@dataclass(frozen=True)
class DataReceived:
    chunk: bytes


@dataclass(frozen=True)
class PayloadSent:
    size: int


@dataclass(frozen=True)
class PauseElapsed:
    pass


Event = Union[StartTest, MarkerReceived, DataReceived, PayloadSent, PauseElapsed]


@dataclass(frozen=True)
class SendMarker:
    marker: Marker


@dataclass(frozen=True)
class SendPayload:
    size: int


@dataclass(frozen=True)
class Pause:
    seconds: float


@dataclass(frozen=True)
class Emit:
    event: BridgeEvent


Command = Union[SendMarker, SendPayload, Pause, Emit]


@dataclass(frozen=True)
class Transition:
    state: SessionState
    commands: list[Command] = field(default_factory=list)


class Awaiting(Enum):
    """What a session needs from the stream next."""

    MARKER = auto()
    DATA = auto()
    NOTHING = auto()  # Sending, pausing, or done


def awaiting(state: SessionState) -> Awaiting:
    """Return what the session is waiting to read."""
    match (state.role, state.phase):
        case (Role.LISTENER, Phase.IDLE | Phase.AWAIT_DOWNLOAD_ACK):
            return Awaiting.MARKER
        case (Role.LISTENER, Phase.UPLOAD_IN_FLIGHT):
            return Awaiting.DATA
        case (Role.INITIATOR, Phase.AWAIT_DOWNLOAD_SIGNAL):
            return Awaiting.MARKER
        case (Role.INITIATOR, Phase.DOWNLOAD_IN_FLIGHT):
            return Awaiting.DATA
        case _:
            return Awaiting.NOTHING


# -----------------------------------------------------------------------------
# Shared helpers
# -----------------------------------------------------------------------------


def _violation(state: SessionState, what: str) -> ProtocolViolation:
    return ProtocolViolation(
        f"{state.session_id}: {what} in phase {state.phase.value} "
        f"(iteration {state.iteration_index}/{state.iteration_target})"
    )


def _progress(state: SessionState, direction: Direction, sample: Sample) -> list[Command]:
    """Progress event, plus the direction's completion event on the last iteration."""
    percent = state.iteration_index / state.iteration_target * 100
    commands: list[Command] = [Emit(TestProgress(direction, percent, sample.speed_mbs))]
    if state.last_iteration:
        samples = state.upload_samples if direction is Direction.UPLOAD else state.download_samples
        commands.append(Emit(TestCompleted(direction, samples)))
    return commands


def _accept_chunk(state: SessionState, chunk: bytes, now_ms: int) -> SessionState:
    """Count a received payload chunk, enforcing the no-marker and no-overshoot rules."""
    if not chunk:
        raise _violation(state, "empty data chunk")
    if looks_like_marker(chunk):
        raise _violation(state, f"marker {chunk.strip()!r} received mid-payload")

    total = state.bytes_accumulated + len(chunk)
    if total > state.payload_size:
        raise _violation(
            state, f"payload overshoot ({total} bytes, expected {state.payload_size})"
        )

    start = state.phase_start_ms if state.phase_start_ms is not None else now_ms
    return replace(state, bytes_accumulated=total, phase_start_ms=start)


def _accept_sent(state: SessionState, size: int) -> SessionState:
    total = state.bytes_accumulated + size
    if total > state.payload_size:
        raise _violation(state, f"sent {total} bytes, payload is {state.payload_size}")
    return replace(state, bytes_accumulated=total)


def _expect_marker(state: SessionState, marker: Marker, expected: MarkerType) -> None:
    if marker.type is not expected:
        raise _violation(state, f"unexpected marker {marker} (expected {expected.value})")


def _sample(state: SessionState, now_ms: int) -> Sample:
    assert state.phase_start_ms is not None
    return Sample.measure(state.iteration_index, state.payload_size, state.phase_start_ms, now_ms)


# -----------------------------------------------------------------------------
# Initiator
# -----------------------------------------------------------------------------


def _initiator_transition(state: SessionState, event: Event, now_ms: int) -> Transition:
    match (state.phase, event):
        case (Phase.IDLE, StartTest(iteration_target=n)):
            if n < 1 or n > MAX_ITERATION_TARGET:
                raise ValueError(f"iteration_target must be 1..{MAX_ITERATION_TARGET}, got {n}")
            logger.info(f"{state.session_id}: starting test ({n} iterations, {state.payload_size} bytes)")
            nxt = replace(
                state,
                phase=Phase.UPLOAD_IN_FLIGHT,
                iteration_index=1,
                iteration_target=n,
                bytes_accumulated=0,
                phase_start_ms=now_ms,
            )
            return Transition(nxt, [SendMarker(begin_test(n)), SendPayload(state.payload_size)])

        case (Phase.UPLOAD_IN_FLIGHT, PauseElapsed()) if state.phase_start_ms is None:
            logger.debug(f"{state.session_id}: upload {state.iteration_index}/{state.iteration_target}")
            nxt = replace(state, phase_start_ms=now_ms)
            return Transition(nxt, [SendPayload(state.payload_size)])

        case (Phase.UPLOAD_IN_FLIGHT, PayloadSent(size=size)) if state.phase_start_ms is not None:
            nxt = _accept_sent(state, size)
            if nxt.bytes_remaining == 0:
                nxt = replace(nxt, phase=Phase.AWAIT_DOWNLOAD_SIGNAL)
            return Transition(nxt)

        case (Phase.AWAIT_DOWNLOAD_SIGNAL, MarkerReceived(marker=marker)):
            _expect_marker(state, marker, MarkerType.SWITCH_TO_DOWNLOAD)
            sample = _sample(state, now_ms)
            nxt = replace(
                state,
                phase=Phase.DOWNLOAD_IN_FLIGHT,
                bytes_accumulated=0,
                phase_start_ms=now_ms,
                upload_samples=state.upload_samples + (sample,),
            )
            return Transition(nxt, _progress(nxt, Direction.UPLOAD, sample))

        case (Phase.DOWNLOAD_IN_FLIGHT, DataReceived(chunk=chunk)):
            nxt = _accept_chunk(state, chunk, now_ms)
            if nxt.bytes_remaining > 0:
                return Transition(nxt)

            sample = _sample(nxt, now_ms)
            nxt = replace(nxt, download_samples=nxt.download_samples + (sample,))
            commands: list[Command] = [SendMarker(DOWNLOAD_ACK)]
            commands += _progress(nxt, Direction.DOWNLOAD, sample)

            if nxt.last_iteration:
                logger.info(f"{state.session_id}: all {nxt.iteration_target} iterations complete")
                return Transition(replace(nxt, phase=Phase.COMPLETED), commands)

            nxt = replace(
                nxt,
                phase=Phase.UPLOAD_IN_FLIGHT,
                iteration_index=nxt.iteration_index + 1,
                bytes_accumulated=0,
                phase_start_ms=None,
            )
            commands.append(Pause(state.pause_s))
            return Transition(nxt, commands)

        case (_, MarkerReceived(marker=marker)):
            raise _violation(state, f"unexpected marker {marker}")
        case (_, DataReceived()):
            raise _violation(state, "unexpected payload")
        case _:
            raise _violation(state, f"unexpected event {type(event).__name__}")


# -----------------------------------------------------------------------------
# Listener
# -----------------------------------------------------------------------------


def _listener_transition(state: SessionState, event: Event, now_ms: int) -> Transition:
    match (state.phase, event):
        case (Phase.IDLE, MarkerReceived(marker=marker)):
            _expect_marker(state, marker, MarkerType.BEGIN_TEST)
            assert marker.iteration_target is not None
            if marker.iteration_target < 1:
                raise _violation(state, f"invalid iteration count {marker.iteration_target}")
            logger.info(
                f"{state.session_id}: test requested ({marker.iteration_target} iterations)"
            )
            nxt = replace(
                state,
                phase=Phase.UPLOAD_IN_FLIGHT,
                iteration_index=1,
                iteration_target=marker.iteration_target,
                bytes_accumulated=0,
                phase_start_ms=None,
            )
            return Transition(nxt)

        case (Phase.UPLOAD_IN_FLIGHT, DataReceived(chunk=chunk)):
            nxt = _accept_chunk(state, chunk, now_ms)
            if nxt.bytes_remaining > 0:
                return Transition(nxt)

            sample = _sample(nxt, now_ms)
            nxt = replace(
                nxt,
                phase=Phase.DOWNLOAD_IN_FLIGHT,
                bytes_accumulated=0,
                phase_start_ms=now_ms,
                upload_samples=nxt.upload_samples + (sample,),
            )
            commands = _progress(nxt, Direction.UPLOAD, sample)
            commands += [SendMarker(SWITCH_TO_DOWNLOAD), SendPayload(state.payload_size)]
            return Transition(nxt, commands)

        case (Phase.DOWNLOAD_IN_FLIGHT, PayloadSent(size=size)):
            nxt = _accept_sent(state, size)
            if nxt.bytes_remaining == 0:
                nxt = replace(nxt, phase=Phase.AWAIT_DOWNLOAD_ACK)
            return Transition(nxt)

        case (Phase.AWAIT_DOWNLOAD_ACK, MarkerReceived(marker=marker)):
            _expect_marker(state, marker, MarkerType.DOWNLOAD_ACK)
            sample = _sample(state, now_ms)
            nxt = replace(state, download_samples=state.download_samples + (sample,))
            commands = _progress(nxt, Direction.DOWNLOAD, sample)

            if nxt.last_iteration:
                logger.info(f"{state.session_id}: all {nxt.iteration_target} iterations complete")
                return Transition(replace(nxt, phase=Phase.COMPLETED), commands)

            nxt = replace(
                nxt,
                phase=Phase.UPLOAD_IN_FLIGHT,
                iteration_index=nxt.iteration_index + 1,
                bytes_accumulated=0,
                phase_start_ms=None,
            )
            return Transition(nxt, commands)

        case (_, MarkerReceived(marker=marker)):
            raise _violation(state, f"unexpected marker {marker}")
        case (_, DataReceived()):
            raise _violation(state, "unexpected payload")
        case _:
            raise _violation(state, f"unexpected event {type(event).__name__}")


def transition(state: SessionState, event: Event, now_ms: int) -> Transition:
    """Advance a session by one event.

    Raises:
        ProtocolViolation: If the event is not legal in the current phase.
        ValueError: If StartTest carries an invalid iteration count.
    """
    if state.role is Role.INITIATOR:
        return _initiator_transition(state, event, now_ms)
    return _listener_transition(state, event, now_ms)
