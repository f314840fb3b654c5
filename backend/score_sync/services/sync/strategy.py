"""
Submission Strategy Selector
"""

from score_sync.models.flow import SubmissionMode


def select_submission_mode(change_count: int, threshold: int) -> SubmissionMode:
    """PER_RECORD below ``threshold`` changed records, BATCH at or above it."""
    if threshold < 1:
        raise ValueError("threshold must be at least 1")
    if change_count < threshold:
        return SubmissionMode.PER_RECORD
    return SubmissionMode.BATCH
