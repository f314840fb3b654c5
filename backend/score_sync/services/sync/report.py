"""
End-of-run error summary for per-record submissions.
"""

import csv
import io
from typing import Dict, Iterable, Optional

from score_sync.models.records import RetryRecord


SUMMARY_NOTE = (
    'Unless marked "UPDATE FAILED", the students score was successfully updated '
    'but took multiple attempts.'
)
SUMMARY_HEADERS = ['User ID', 'Average Score', 'Attempts', 'Status', 'Error']


def build_error_summary(
    retried: Iterable[RetryRecord],
    failures: Iterable[RetryRecord]
) -> Optional[str]:
    """
    Render retried and failed records as CSV.

    Returns None when there is nothing to report.
    """
    rows: Dict[str, RetryRecord] = {}
    for record in retried:
        rows[record.record_id] = record
    failed_ids = set()
    for record in failures:
        rows[record.record_id] = record
        failed_ids.add(record.record_id)

    if not rows:
        return None

    output = io.StringIO()
    output.write(SUMMARY_NOTE + "\n")
    writer = csv.writer(output, lineterminator="\n")
    writer.writerow(SUMMARY_HEADERS)

    for record_id, record in rows.items():
        failed = record_id in failed_ids
        writer.writerow([
            record_id,
            record.value if failed and record.value is not None else '',
            record.attempts or '',
            'UPDATE FAILED' if failed else '',
            (record.last_error or '') if failed else '',
        ])

    return output.getvalue()
