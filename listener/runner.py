"""Listener runner for tcp-speedtest.

Contains SpeedTestListener, which accepts initiator connections and serves
each one in its own thread, and run_listener(), which runs it until SIGINT
or SIGTERM.
"""

import logging
import signal
import socket
import threading
from collections import deque
from pathlib import Path
from types import FrameType

from common.connection import SessionParams, check_timeout
from common.events import ConnectionStatus, EventSink, LoggingEventSink
from common.io import MarkerStream
from common.protocol import (
    ACCEPT_POLL_S,
    DEFAULT_IDLE_TIMEOUT_S,
    DEFAULT_PAYLOAD_SIZE,
    DEFAULT_PHASE_TIMEOUT_S,
    DEFAULT_PORT,
    MAX_KEPT_RESULTS,
)
from listener.board import print_board
from listener.registry import SessionEntry, SessionRegistry
from session.exchange import listener_exchange
from session.persist import write_result_csv
from session.report import SessionReport
from session.result import TestResult
from session.state import SessionState

logger = logging.getLogger(__name__)

LISTEN_BACKLOG = 16


class SpeedTestListener:
    """Passive endpoint: accepts connections and serves throughput tests.

    Each connection gets a daemon thread, so a running test never blocks
    acceptance of new connections. A connection may run several tests back
    to back; it ends when the peer closes while idle, the idle timeout
    expires or a session fails.

    The phase timeout only runs once a test has started. Waiting for
    START_TEST is bounded by idle_timeout_s, or not at all when it is None.
    """

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = DEFAULT_PORT,
        payload_size: int = DEFAULT_PAYLOAD_SIZE,
        phase_timeout_s: float = DEFAULT_PHASE_TIMEOUT_S,
        results_dir: Path | None = None,
        sink: EventSink | None = None,
        show_board: bool = False,
        idle_timeout_s: float | None = DEFAULT_IDLE_TIMEOUT_S,
        max_results: int = MAX_KEPT_RESULTS,
    ) -> None:
        check_timeout("phase_timeout_s", phase_timeout_s)
        if idle_timeout_s is not None:
            check_timeout("idle_timeout_s", idle_timeout_s)
        if max_results < 1:
            raise ValueError(f"max_results must be >= 1, got {max_results}")
        self.host = host
        self.port = port
        self.params = SessionParams(payload_size=payload_size, pause_s=0.0)
        self.phase_timeout_s = phase_timeout_s
        self.idle_timeout_s = idle_timeout_s
        self.results_dir = results_dir
        self.registry = SessionRegistry()
        self._sink = sink if sink is not None else LoggingEventSink()
        self._show_board = show_board
        self._sock: socket.socket | None = None
        self._running = threading.Event()
        self._threads: list[threading.Thread] = []
        # Oldest results drop off once max_results is reached
        self._results: deque[TestResult] = deque(maxlen=max_results)
        self._results_lock = threading.Lock()

    @property
    def server_address(self) -> tuple[str, int]:
        """Bound (host, port). Only valid after bind()."""
        if self._sock is None:
            raise RuntimeError("Listener is not bound")
        host, port = self._sock.getsockname()[:2]
        return host, port

    def bind(self) -> None:
        """Create, bind and listen on the TCP socket."""
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.host, self.port))
            sock.listen(LISTEN_BACKLOG)
        except OSError:
            sock.close()
            raise
        # Short accept timeout so shutdown() is noticed promptly
        sock.settimeout(ACCEPT_POLL_S)
        self._sock = sock
        logger.info(f"Listening on {self.server_address[0]}:{self.server_address[1]}")

    def results(self, session_id: str | None = None) -> tuple[TestResult, ...]:
        """Snapshots of completed tests, in completion order.

        Only the most recent max_results are kept. With session_id, only
        that connection's results are returned.
        """
        with self._results_lock:
            kept = tuple(self._results)
        if session_id is None:
            return kept
        return tuple(r for r in kept if r.session_id == session_id)

    def serve_forever(self) -> None:
        """Accept connections until shutdown() is called."""
        if self._sock is None:
            self.bind()
        assert self._sock is not None

        self._running.set()
        logger.info("Waiting for connections...")
        while self._running.is_set():
            try:
                conn, addr = self._sock.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if self._running.is_set():
                    logger.error(f"Accept failed: {e}")
                break

            thread = threading.Thread(
                target=self._handle_connection,
                args=(conn, addr),
                name=f"session-{addr[0]}:{addr[1]}",
                daemon=True,
            )
            self._threads = [t for t in self._threads if t.is_alive()]
            self._threads.append(thread)
            thread.start()

        logger.info("Accept loop stopped")

    def shutdown(self, join_timeout_s: float = 5.0) -> None:
        """Stop accepting, close the socket and wait briefly for sessions."""
        self._running.clear()
        if self._sock is not None:
            self._sock.close()
        for entry in self.registry.snapshot():
            entry.stream.close()
        for thread in self._threads:
            thread.join(timeout=join_timeout_s)

    def _board(self) -> None:
        if self._show_board:
            print_board(self.registry.snapshot())

    def _track(self, state: SessionState) -> None:
        self.registry.update(
            state.session_id,
            phase=state.phase,
            iteration_index=state.iteration_index,
            iteration_target=state.iteration_target,
        )

    def _record(self, result: TestResult, peer_ip: str) -> None:
        with self._results_lock:
            self._results.append(result)
        entry = self.registry.get(result.session_id)
        self.registry.update(result.session_id, tests_completed=entry.tests_completed + 1)
        if self.results_dir is not None:
            try:
                write_result_csv(result, peer_ip, self.results_dir)
            except OSError as e:
                logger.error(f"Failed to save results for {result.session_id}: {e}")

    def _handle_connection(self, conn: socket.socket, addr: tuple[str, int]) -> None:
        """Serve one connection: run sessions until the peer leaves or one fails."""
        peer_ip, peer_port = addr[0], addr[1]
        conn.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        session_id = f"{peer_ip}:{peer_port}"
        logger.info(f"Client connected: {session_id}")

        stream = MarkerStream(
            conn, timeout_s=self.phase_timeout_s, idle_timeout_s=self.idle_timeout_s
        )
        entry = SessionEntry(
            session_id=session_id, peer_ip=peer_ip, peer_port=peer_port, stream=stream
        )
        try:
            self.registry.add(entry)
        except ValueError as e:
            logger.error(f"Rejecting connection {session_id}: {e}")
            stream.close()
            return

        self._sink.emit(ConnectionStatus("connected"))
        self._board()

        try:
            while self._running.is_set():
                # Always send through the registered handle
                handle = self.registry.get(session_id).stream
                result = listener_exchange(
                    handle,
                    session_id,
                    self.params,
                    sink=self._sink,
                    on_transition=self._track,
                )
                if result.closed_while_idle:
                    break

                SessionReport(result=result).print()
                if not result.success:
                    logger.warning(f"Session {session_id} failed: {result.error}")
                    break

                assert result.test_result is not None
                self._record(result.test_result, peer_ip)
        finally:
            self.registry.remove(session_id)
            stream.close()
            logger.info(f"Client disconnected: {session_id}")
            self._sink.emit(ConnectionStatus("disconnected"))
            self._board()


def run_listener(
    host: str,
    port: int,
    payload_size: int,
    phase_timeout_s: float,
    results_dir: Path | None = None,
    idle_timeout_s: float | None = DEFAULT_IDLE_TIMEOUT_S,
) -> int:
    """Run the listener until SIGINT/SIGTERM. Returns 0 unless startup fails."""
    listener = SpeedTestListener(
        host=host,
        port=port,
        payload_size=payload_size,
        phase_timeout_s=phase_timeout_s,
        results_dir=results_dir,
        idle_timeout_s=idle_timeout_s,
        show_board=True,
    )

    def handle_signal(_sig: int, _frame: FrameType | None) -> None:
        if len(listener.registry) > 0:
            logger.warning("Signal received during active sessions - exiting early")
        else:
            logger.info("Signal received - shutting down")
        listener.shutdown(join_timeout_s=0)

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    try:
        listener.bind()
    except OSError as e:
        logger.error(f"Failed to listen on {host}:{port}: {e}")
        return 1

    try:
        listener.serve_forever()
    finally:
        listener.shutdown(join_timeout_s=1.0)

    completed = len(listener.results())
    logger.info(f"Listener shutdown complete ({completed} tests completed)")
    return 0
