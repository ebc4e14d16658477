"""Session package for tcp-speedtest.

This package handles one throughput test on an established stream:
- Pure state machine for the upload/download iteration loop
- Exchange drivers for the initiator and listener sides
- Speed samples, averages and immutable test results
- Reporting and CSV persistence
"""

from session.exchange import initiator_exchange, listener_exchange
from session.persist import write_result_csv
from session.report import SessionReport
from session.result import (
    Sample,
    SessionError,
    SessionResult,
    TestResult,
    average_speed,
    build_test_result,
    compute_speed,
)
from session.state import SessionState, new_session, transition

__all__ = [
    "Sample",
    "SessionError",
    "SessionReport",
    "SessionResult",
    "SessionState",
    "TestResult",
    "average_speed",
    "build_test_result",
    "compute_speed",
    "initiator_exchange",
    "listener_exchange",
    "new_session",
    "transition",
    "write_result_csv",
]
