"""pytest configuration and fixtures for tcp-speedtest tests.

Provides:
- ScriptedTransport: Fake socket replaying a scripted list of recv results
- CollectingSink: Event sink that records every bridge event
- Connected socket pair fixture for exchange tests
- Listener factory fixture running SpeedTestListener on a loopback port
- Markers for unit vs integration tests
"""

import socket
import threading
import time
from collections import deque
from collections.abc import Callable, Generator, Iterable
from pathlib import Path

import pytest

from common.events import BridgeEvent
from listener.runner import SpeedTestListener


class ScriptedTransport:
    """Fake stream socket for unit tests.

    recv() returns the scripted items in order, honouring bufsize by
    splitting long items. An exception item is raised instead of returned.
    Once the script is exhausted recv() returns b"" (peer closed).
    """

    def __init__(self, script: Iterable[bytes | BaseException] = ()) -> None:
        self._script: deque[bytes | BaseException] = deque(script)
        self.sent = bytearray()
        self.recv_sizes: list[int] = []
        self.recv_timeouts: list[float | None] = []
        self.timeout: float | None = None
        self.closed = False
        self.shut_down = False
        self.send_error: BaseException | None = None

    def recv(self, bufsize: int, /) -> bytes:
        self.recv_sizes.append(bufsize)
        self.recv_timeouts.append(self.timeout)
        if not self._script:
            return b""
        item = self._script.popleft()
        if isinstance(item, BaseException):
            raise item
        if len(item) > bufsize:
            self._script.appendleft(item[bufsize:])
            item = item[:bufsize]
        return item

    def sendall(self, data: bytes, /) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.sent += data

    def settimeout(self, value: float | None, /) -> None:
        self.timeout = value

    def shutdown(self, how: int, /) -> None:
        self.shut_down = True

    def close(self) -> None:
        self.closed = True


class CollectingSink:
    """Event sink that keeps every event it receives."""

    def __init__(self) -> None:
        self.events: list[BridgeEvent] = []
        self._lock = threading.Lock()

    def emit(self, event: BridgeEvent) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, cls: type) -> list[BridgeEvent]:
        with self._lock:
            return [e for e in self.events if isinstance(e, cls)]


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: mark test as unit test")
    config.addinivalue_line(
        "markers", "integration: mark test as integration test (uses real sockets)"
    )


@pytest.fixture
def scripted() -> type[ScriptedTransport]:
    """Return the ScriptedTransport class."""
    return ScriptedTransport


@pytest.fixture
def sink() -> CollectingSink:
    """Return an empty CollectingSink."""
    return CollectingSink()


@pytest.fixture
def socket_pair() -> Generator[tuple[socket.socket, socket.socket], None, None]:
    """Yield a connected pair of stream sockets, closed at teardown."""
    a, b = socket.socketpair()
    try:
        yield a, b
    finally:
        a.close()
        b.close()


@pytest.fixture
def wait_until() -> Callable[..., bool]:
    """Return a helper that polls a predicate until it holds or times out."""

    def _wait(predicate: Callable[[], bool], timeout_s: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout_s
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(0.01)
        return predicate()

    return _wait


@pytest.fixture
def start_listener() -> Generator[Callable[..., SpeedTestListener], None, None]:
    """Factory that starts SpeedTestListener instances on 127.0.0.1.

    Each listener binds an ephemeral port and serves from a daemon thread.
    All started listeners are shut down at teardown.
    """
    started: list[SpeedTestListener] = []

    def _start(**kwargs: object) -> SpeedTestListener:
        kwargs.setdefault("host", "127.0.0.1")
        kwargs.setdefault("port", 0)
        listener = SpeedTestListener(**kwargs)  # type: ignore[arg-type]
        listener.bind()
        thread = threading.Thread(target=listener.serve_forever, daemon=True)
        thread.start()
        started.append(listener)
        return listener

    yield _start

    for listener in started:
        listener.shutdown(join_timeout_s=2.0)


@pytest.fixture
def script_dir() -> Path:
    """Return path to the main script directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def speedtest_path(script_dir: Path) -> Path:
    """Return path to tcpspeedtest.py."""
    return script_dir / "tcpspeedtest.py"
