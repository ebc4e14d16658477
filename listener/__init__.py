"""Listener package for tcp-speedtest.

Contains listener-specific session bookkeeping:
- registry: SessionEntry, SessionRegistry
- board: format_entry, print_board

Note: SpeedTestListener and run_listener are not exported here to avoid
circular imports with session/. Import directly from listener.runner when
needed.
"""

from listener.board import format_entry, print_board
from listener.registry import SessionEntry, SessionRegistry

__all__ = [
    "SessionEntry",
    "SessionRegistry",
    "format_entry",
    "print_board",
]
