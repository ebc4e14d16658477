"""Session reporting for tcp-speedtest.

Contains:
- SessionReport: Report after a throughput test completes or fails
"""

from dataclasses import dataclass

from common.report import Report, format_bytes
from session.result import Sample, SessionResult, TestResult


def _format_speed(speed_mbs: float | None) -> str:
    if speed_mbs is None:
        return "n/a"
    return f"{speed_mbs:.2f} MB/s"


def _print_direction(label: str, samples: tuple[Sample, ...], average: float | None) -> None:
    print(f"{label}: avg={_format_speed(average)} (n={len(samples)})")
    for s in samples:
        speed = "instantaneous" if s.instantaneous else _format_speed(s.speed_mbs)
        print(f"  #{s.iteration}: {format_bytes(s.data_size)} in {s.transfer_time_ms}ms ({speed})")


@dataclass
class SessionReport(Report):
    """Report after a throughput test."""

    result: SessionResult

    def print(self) -> None:
        """Print the session report."""
        r = self.result

        if not r.success:
            kind = "timeout" if r.timed_out else "protocol error" if r.protocol_violation else "error"
            print(f"Session: FAILED ({kind}: {r.error})")
            if r.iterations_completed > 0:
                print(f"         ({r.iterations_completed} iterations completed before failure, not counted)")
            return

        test: TestResult | None = r.test_result
        assert test is not None
        print(
            f"Session: SUCCESS (id={r.session_id}, {test.iterations} iterations, "
            f"{format_bytes(r.bytes_sent)} sent, {format_bytes(r.bytes_received)} received, "
            f"{r.elapsed_s:.1f}s)"
        )
        _print_direction("Upload", test.upload_samples, test.avg_upload_speed)
        _print_direction("Download", test.download_samples, test.avg_download_speed)

    def success(self) -> bool:
        """Return True if the session completed all iterations."""
        return self.result.success and self.result.test_result is not None
