"""Tests for the session exchange drivers over connected sockets."""

import socket
import threading
import time

import pytest

from common.connection import IdleTimeoutError, SessionParams, TransportClosedError
from common.events import ConnectionStatus, TestCompleted, TestProgress
from common.io import MarkerStream
from common.protocol import Direction, Phase, Role
from session.exchange import initiator_exchange, listener_exchange
from session.result import SessionResult
from session.state import SessionState

PAYLOAD = 100_000


def _run_pair(
    socket_pair: tuple[socket.socket, socket.socket],
    iterations: int,
    payload_size: int = PAYLOAD,
    pause_s: float = 0.0,
    **initiator_kwargs,
) -> tuple[SessionResult, SessionResult]:
    """Run initiator and listener exchanges on the two ends of a socket pair."""
    a, b = socket_pair
    results: dict[str, SessionResult] = {}

    def serve() -> None:
        results["listener"] = listener_exchange(
            MarkerStream(b, timeout_s=5.0), "initiator", SessionParams(payload_size, 0.0)
        )

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    initiator = initiator_exchange(
        MarkerStream(a, timeout_s=5.0),
        "listener",
        iterations,
        SessionParams(payload_size, pause_s),
        **initiator_kwargs,
    )
    thread.join(timeout=10.0)
    assert not thread.is_alive()
    return initiator, results["listener"]


@pytest.mark.unit
class TestExchange:
    """Tests for a full exchange between both drivers."""

    def test_three_iterations(self, socket_pair) -> None:
        initiator, listener = _run_pair(socket_pair, 3)

        for result, role in ((initiator, Role.INITIATOR), (listener, Role.LISTENER)):
            assert result.success, result.error
            assert result.role is role
            assert result.started
            assert result.iterations_completed == 3
            assert result.test_result is not None
            assert result.test_result.iterations == 3
            assert [s.iteration for s in result.test_result.upload_samples] == [1, 2, 3]
            assert [s.iteration for s in result.test_result.download_samples] == [1, 2, 3]
            assert all(s.data_size == PAYLOAD for s in result.test_result.download_samples)

    def test_byte_accounting(self, socket_pair) -> None:
        initiator, listener = _run_pair(socket_pair, 2)
        initiator_sent = len(b"START_TEST:2\n") + 2 * PAYLOAD + 2 * len(b"DOWNLOAD_ACK\n")
        listener_sent = 2 * PAYLOAD + 2 * len(b"SWITCH_TO_DOWNLOAD\n")
        assert initiator.bytes_sent == initiator_sent
        assert listener.bytes_received == initiator_sent
        assert listener.bytes_sent == listener_sent
        assert initiator.bytes_received == listener_sent

    def test_payload_not_multiple_of_chunk(self, socket_pair) -> None:
        initiator, listener = _run_pair(socket_pair, 2, payload_size=70_001)
        assert initiator.success and listener.success

    def test_pause_between_iterations(self, socket_pair) -> None:
        pauses: list[float] = []
        initiator, _ = _run_pair(socket_pair, 3, pause_s=0.25, sleep=pauses.append)
        assert initiator.success
        assert pauses == [0.25, 0.25]

    def test_events(self, socket_pair, sink) -> None:
        initiator, _ = _run_pair(socket_pair, 3, sink=sink)
        assert initiator.success

        progress = sink.of_type(TestProgress)
        assert len(progress) == 6
        uploads = [e.percent_complete for e in progress if e.direction is Direction.UPLOAD]
        assert uploads == pytest.approx([100 / 3, 200 / 3, 100.0])

        completed = sink.of_type(TestCompleted)
        assert [e.direction for e in completed] == [Direction.UPLOAD, Direction.DOWNLOAD]
        assert all(len(e.samples) == 3 for e in completed)
        assert sink.of_type(ConnectionStatus) == []

    def test_on_transition(self, socket_pair) -> None:
        seen: list[SessionState] = []
        initiator, _ = _run_pair(socket_pair, 2, on_transition=seen.append)
        assert initiator.success
        assert seen[0].phase is Phase.UPLOAD_IN_FLIGHT
        assert seen[-1].phase is Phase.COMPLETED
        assert Phase.AWAIT_DOWNLOAD_SIGNAL in {s.phase for s in seen}


@pytest.mark.unit
class TestExchangeFailures:
    """Tests for exchange failure handling."""

    def test_invalid_iterations_rejected_before_sending(self, scripted) -> None:
        transport = scripted()
        with pytest.raises(ValueError):
            initiator_exchange(MarkerStream(transport), "listener", 0, SessionParams(10, 0.0))
        assert transport.sent == b""

    def test_peer_closes_while_idle(self, socket_pair, sink) -> None:
        a, b = socket_pair
        a.close()
        result = listener_exchange(MarkerStream(b, timeout_s=2.0), "initiator", SessionParams(10, 0.0), sink=sink)
        assert not result.success
        assert result.closed_while_idle
        assert sink.of_type(ConnectionStatus) == []

    def test_peer_closes_mid_upload(self, socket_pair, sink) -> None:
        a, b = socket_pair
        a.sendall(b"START_TEST:1\n" + b"\x00" * 10)
        a.close()
        result = listener_exchange(MarkerStream(b, timeout_s=2.0), "initiator", SessionParams(100, 0.0), sink=sink)
        assert not result.success
        assert result.started
        assert not result.closed_while_idle
        assert isinstance(result.error, TransportClosedError)
        (status,) = sink.of_type(ConnectionStatus)
        assert status.state == "error"

    def test_garbage_marker(self, socket_pair) -> None:
        a, b = socket_pair
        a.sendall(b"HELLO\n")
        result = listener_exchange(MarkerStream(b, timeout_s=2.0), "initiator", SessionParams(100, 0.0))
        assert not result.success
        assert result.protocol_violation
        assert not result.started

    def test_marker_mid_payload(self, socket_pair) -> None:
        a, b = socket_pair
        a.sendall(b"START_TEST:1\nDOWNLOAD_ACK\n")
        result = listener_exchange(MarkerStream(b, timeout_s=2.0), "initiator", SessionParams(100, 0.0))
        assert not result.success
        assert result.protocol_violation
        assert "mid-payload" in str(result.error)

    def test_phase_timeout(self, socket_pair) -> None:
        a, b = socket_pair
        a.sendall(b"START_TEST:1\n")
        result = listener_exchange(MarkerStream(b, timeout_s=0.2), "initiator", SessionParams(100, 0.0))
        assert not result.success
        assert result.timed_out
        assert result.iterations_completed == 0
        assert result.test_result is None

    def test_initiator_unexpected_marker(self, socket_pair) -> None:
        a, b = socket_pair

        def peer() -> None:
            stream = MarkerStream(b, timeout_s=2.0)
            stream.read_marker()
            received = 0
            while received < 100:
                received += len(stream.read_payload(100 - received))
            b.sendall(b"DOWNLOAD_ACK\n")

        thread = threading.Thread(target=peer, daemon=True)
        thread.start()
        result = initiator_exchange(MarkerStream(a, timeout_s=2.0), "listener", 1, SessionParams(100, 0.0))
        thread.join(timeout=5.0)
        assert not result.success
        assert result.protocol_violation


@pytest.mark.unit
class TestIdleWait:
    """Tests for the listener waiting on an open connection before a test."""

    def test_wait_longer_than_phase_timeout(self, socket_pair, sink) -> None:
        a, b = socket_pair
        results: dict[str, SessionResult] = {}

        def serve() -> None:
            results["listener"] = listener_exchange(
                MarkerStream(b, timeout_s=0.2), "initiator", SessionParams(100, 0.0), sink=sink
            )

        thread = threading.Thread(target=serve, daemon=True)
        thread.start()
        time.sleep(0.5)
        initiator = initiator_exchange(
            MarkerStream(a, timeout_s=2.0), "listener", 1, SessionParams(100, 0.0)
        )
        thread.join(timeout=5.0)

        assert initiator.success, initiator.error
        assert results["listener"].success, results["listener"].error
        assert sink.of_type(ConnectionStatus) == []

    def test_idle_timeout_is_a_plain_close(self, socket_pair, sink) -> None:
        _, b = socket_pair
        stream = MarkerStream(b, timeout_s=2.0, idle_timeout_s=0.2)
        result = listener_exchange(stream, "initiator", SessionParams(100, 0.0), sink=sink)
        assert not result.success
        assert isinstance(result.error, IdleTimeoutError)
        assert result.closed_while_idle
        assert not result.timed_out
        assert sink.of_type(ConnectionStatus) == []
