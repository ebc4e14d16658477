"""Initiator package for tcp-speedtest.

Contains initiator-specific connection setup:
- connect: connect_to_listener

Note: Initiator, run_initiator and ExitCode are not exported here to avoid
circular imports with session/. Import directly from initiator.runner when
needed.
"""

from initiator.connect import connect_to_listener

__all__ = [
    "connect_to_listener",
]
