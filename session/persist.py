"""CSV persistence of test results for tcp-speedtest.

One row per sample, uploads first, in iteration order:
  Timestamp,ClientIP,TestType,DataSize(Bytes),TransferTime(ms),Speed(MB/s),Status
"""

import csv
import logging
from pathlib import Path

from session.result import Sample, TestResult

logger = logging.getLogger(__name__)

CSV_HEADER = [
    "Timestamp",
    "ClientIP",
    "TestType",
    "DataSize(Bytes)",
    "TransferTime(ms)",
    "Speed(MB/s)",
    "Status",
]

STATUS_SUCCESS = "Success"
STATUS_INSTANTANEOUS = "Instantaneous"


def _row(result: TestResult, client_ip: str, label: str, sample: Sample) -> list[str]:
    speed = "" if sample.speed_mbs is None else f"{sample.speed_mbs:.2f}"
    status = STATUS_INSTANTANEOUS if sample.instantaneous else STATUS_SUCCESS
    return [
        result.completed_at.isoformat(),
        client_ip,
        f"{label} {sample.iteration}",
        str(sample.data_size),
        str(sample.transfer_time_ms),
        speed,
        status,
    ]


def result_rows(result: TestResult, client_ip: str) -> list[list[str]]:
    """Build CSV rows (without header) for a test result."""
    rows = [_row(result, client_ip, "Upload", s) for s in result.upload_samples]
    rows += [_row(result, client_ip, "Download", s) for s in result.download_samples]
    return rows


def result_filename(result: TestResult, client_ip: str) -> str:
    """File name for a result, e.g. speedtest_2025-01-01T10-00-00-000000_10-0-0-5.csv."""
    stamp = result.completed_at.strftime("%Y-%m-%dT%H-%M-%S-%f")
    safe_ip = client_ip.replace(".", "-").replace(":", "-")
    return f"speedtest_{stamp}_{safe_ip}.csv"


def write_result_csv(result: TestResult, client_ip: str, results_dir: Path) -> Path:
    """Write a result to its own CSV file in results_dir. Returns the file path."""
    results_dir.mkdir(parents=True, exist_ok=True)
    path = results_dir / result_filename(result, client_ip)

    with open(path, "w", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(CSV_HEADER)
        writer.writerows(result_rows(result, client_ip))

    logger.info(f"Saved test results: {path}")
    return path
