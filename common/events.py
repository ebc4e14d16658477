"""Control-plane bridge events for tcp-speedtest.

The web dashboard and its push channel live outside this repository. The
core hands them progress through an EventSink; the event names match the
ones the dashboard listens for.
"""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, ClassVar, Protocol, Union

from common.protocol import Direction

if TYPE_CHECKING:
    from session.result import Sample

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TestProgress:
    """Emitted after every completed iteration in a direction."""

    __test__ = False  # keep pytest from collecting it
    name: ClassVar[str] = "testProgress"

    direction: Direction
    percent_complete: float
    current_speed_mbs: float | None


@dataclass(frozen=True)
class TestCompleted:
    """Emitted once all iterations for a direction are done."""

    __test__ = False
    name: ClassVar[str] = "testCompleted"

    direction: Direction
    samples: tuple["Sample", ...]


@dataclass(frozen=True)
class ConnectionStatus:
    """Emitted on connect, disconnect and error."""

    name: ClassVar[str] = "connectionStatus"

    state: str  # "connected", "disconnected" or "error"
    error: str | None = None


BridgeEvent = Union[TestProgress, TestCompleted, ConnectionStatus]


class EventSink(Protocol):
    """Protocol for receivers of bridge events."""

    def emit(self, event: BridgeEvent) -> None: ...


class LoggingEventSink:
    """Event sink that writes every event to the log."""

    def __init__(self, prefix: str = "") -> None:
        self._prefix = prefix

    def emit(self, event: BridgeEvent) -> None:
        match event:
            case TestProgress():
                speed = (
                    f"{event.current_speed_mbs:.2f} MB/s"
                    if event.current_speed_mbs is not None
                    else "instantaneous"
                )
                logger.info(
                    f"{self._prefix}{event.name}: {event.direction.value} "
                    f"{event.percent_complete:.0f}% ({speed})"
                )
            case TestCompleted():
                logger.info(
                    f"{self._prefix}{event.name}: {event.direction.value} "
                    f"({len(event.samples)} samples)"
                )
            case ConnectionStatus(error=None):
                logger.info(f"{self._prefix}{event.name}: {event.state}")
            case ConnectionStatus():
                logger.warning(f"{self._prefix}{event.name}: {event.state} ({event.error})")
