"""Unit tests for the listener session registry and board."""

import io
import threading
from contextlib import redirect_stdout
from datetime import datetime, timedelta

import pytest

from common.connection import SessionNotFoundError
from common.io import MarkerStream
from common.protocol import Phase
from listener.board import format_entry, print_board
from listener.registry import SessionEntry, SessionRegistry

T0 = datetime(2025, 1, 1, 12, 0, 0)


def _entry(scripted, port: int, connected_at: datetime = T0) -> SessionEntry:
    return SessionEntry(
        session_id=f"10.0.0.5:{port}",
        peer_ip="10.0.0.5",
        peer_port=port,
        stream=MarkerStream(scripted()),
        connected_at=connected_at,
    )


@pytest.mark.unit
class TestSessionRegistry:
    """Tests for SessionRegistry."""

    def test_add_and_get(self, scripted) -> None:
        registry = SessionRegistry()
        entry = _entry(scripted, 50000)
        registry.add(entry)
        assert registry.get("10.0.0.5:50000") is entry
        assert "10.0.0.5:50000" in registry
        assert len(registry) == 1

    def test_duplicate_rejected(self, scripted) -> None:
        registry = SessionRegistry()
        registry.add(_entry(scripted, 50000))
        with pytest.raises(ValueError, match="already registered"):
            registry.add(_entry(scripted, 50000))

    def test_get_unknown_fails_loudly(self) -> None:
        with pytest.raises(SessionNotFoundError):
            SessionRegistry().get("10.0.0.5:1")

    def test_update(self, scripted) -> None:
        registry = SessionRegistry()
        entry = _entry(scripted, 50000)
        registry.add(entry)
        updated = registry.update(
            entry.session_id, phase=Phase.DOWNLOAD_IN_FLIGHT, iteration_index=2
        )
        assert updated.phase is Phase.DOWNLOAD_IN_FLIGHT
        assert registry.get(entry.session_id).iteration_index == 2
        assert registry.get(entry.session_id).stream is entry.stream

    def test_update_unknown(self) -> None:
        with pytest.raises(SessionNotFoundError):
            SessionRegistry().update("10.0.0.5:1", phase=Phase.IDLE)

    def test_remove(self, scripted) -> None:
        registry = SessionRegistry()
        entry = _entry(scripted, 50000)
        registry.add(entry)
        assert registry.remove(entry.session_id) is entry
        assert registry.remove(entry.session_id) is None
        assert entry.session_id not in registry
        assert len(registry) == 0

    def test_snapshot_ordered_by_connect_time(self, scripted) -> None:
        registry = SessionRegistry()
        registry.add(_entry(scripted, 2, T0 + timedelta(seconds=5)))
        registry.add(_entry(scripted, 1, T0))
        assert [e.peer_port for e in registry.snapshot()] == [1, 2]

    def test_concurrent_adds(self, scripted) -> None:
        registry = SessionRegistry()
        entries = [_entry(scripted, port) for port in range(100)]
        threads = [threading.Thread(target=registry.add, args=(e,)) for e in entries]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(registry) == 100


@pytest.mark.unit
class TestBoard:
    """Tests for the console session board."""

    def test_format_idle_entry(self, scripted) -> None:
        entry = _entry(scripted, 50000)
        line = format_entry(entry, now=T0 + timedelta(seconds=42))
        assert line == "10.0.0.5:50000 (idle) - connected 42s"

    def test_format_running_entry(self, scripted) -> None:
        entry = _entry(scripted, 50000)
        registry = SessionRegistry()
        registry.add(entry)
        entry = registry.update(
            entry.session_id,
            phase=Phase.UPLOAD_IN_FLIGHT,
            iteration_index=2,
            iteration_target=5,
            tests_completed=1,
        )
        line = format_entry(entry, now=T0 + timedelta(seconds=3))
        assert "(upload_in_flight)" in line
        assert "iteration 2/5" in line
        assert "1 tests completed" in line

    def test_print_empty(self) -> None:
        output = io.StringIO()
        with redirect_stdout(output):
            print_board([])
        text = output.getvalue()
        assert "Connected sessions:" in text
        assert "(none)" in text

    def test_print_entries(self, scripted) -> None:
        output = io.StringIO()
        with redirect_stdout(output):
            print_board([_entry(scripted, 1), _entry(scripted, 2)])
        text = output.getvalue()
        assert "10.0.0.5:1 (idle)" in text
        assert "10.0.0.5:2 (idle)" in text
