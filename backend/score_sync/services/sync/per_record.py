"""
Per-Record Submitter

Writes each changed value individually. A record gets a bounded number of
attempts in the first pass; records that still fail are deferred to a
second pass after a short pause. Attempt counts carry over between passes.
"""

import logging
import time
from typing import Callable, Dict, List, Optional, Sequence

from score_sync.core.interfaces import PrimaryChannel, ProgressSink, SyncTarget
from score_sync.models.flow import PerRecordResult
from score_sync.models.records import ChangeEntry, Channel, RetryRecord
from score_sync.services.sync.cancellation import CancelToken
from score_sync.services.sync.overrides import OverrideChannelSynchronizer


logger = logging.getLogger(__name__)


class PerRecordSubmitter:
    """Sequential per-record writer with a deferred retry pass."""

    def __init__(
        self,
        primary: PrimaryChannel,
        target: SyncTarget,
        overrides: Optional[OverrideChannelSynchronizer] = None,
        progress: Optional[ProgressSink] = None,
        cancel_token: Optional[CancelToken] = None,
        max_attempts: int = 3,
        deferred_pass_delay: float = 1.0,
        override_max_attempts: int = 3,
        elapsed: Optional[Callable[[], float]] = None
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.primary = primary
        self.target = target
        self.overrides = overrides
        self.progress = progress
        self.cancel_token = cancel_token or CancelToken()
        self.max_attempts = max_attempts
        self.deferred_pass_delay = deferred_pass_delay
        self.override_max_attempts = override_max_attempts
        started = time.monotonic()
        self.elapsed = elapsed or (lambda: time.monotonic() - started)

    async def _attempt(self, entry: ChangeEntry, record: RetryRecord) -> bool:
        """Run one pass worth of attempts for a record."""
        for _ in range(self.max_attempts):
            record.attempts += 1
            try:
                await self.primary.write_value(self.target, entry.record_id, entry.value)
                record.succeeded = True
                record.last_error = None
                return True
            except Exception as e:
                record.last_error = str(e)
                logger.warning(
                    f"Attempt {record.attempts} failed for record {entry.record_id}: {e}"
                )
        return False

    async def _run_pass(
        self,
        entries: Sequence[ChangeEntry],
        records: Dict[str, RetryRecord],
        override_records: List[RetryRecord],
        label: str
    ) -> List[ChangeEntry]:
        failed = []
        total = len(entries)
        for index, entry in enumerate(entries, start=1):
            self.cancel_token.raise_if_cancelled()
            if self.progress:
                self.progress.notify(
                    f"Updating record {index} of {total} ({label}).",
                    self.elapsed()
                )

            record = records[entry.record_id]
            if not await self._attempt(entry, record):
                failed.append(entry)
                continue

            if self.overrides is not None and entry.override_changed:
                override_records.append(
                    await self.overrides.push(entry, max_attempts=self.override_max_attempts)
                )
        return failed

    async def submit(self, change_set: Sequence[ChangeEntry]) -> PerRecordResult:
        """
        Submit every entry in ``change_set``.

        Returns:
            PerRecordResult with per-record attempt counts, the records
            that failed both passes, and any override write records
        """
        records = {
            entry.record_id: RetryRecord(entry.record_id, Channel.PRIMARY, value=entry.value)
            for entry in change_set
        }
        override_records: List[RetryRecord] = []

        deferred = await self._run_pass(change_set, records, override_records, "first pass")

        if deferred:
            logger.info(
                f"Retrying {len(deferred)} failed records after {self.deferred_pass_delay}s"
            )
            await self.cancel_token.sleep(self.deferred_pass_delay)
            deferred = await self._run_pass(deferred, records, override_records, "retry pass")

        failures = tuple(records[entry.record_id] for entry in deferred)
        succeeded = tuple(r for r in records.values() if r.succeeded)
        result = PerRecordResult(
            succeeded=succeeded,
            failures=failures,
            override_records=tuple(override_records)
        )

        logger.info(
            f"Per-record submission: {len(succeeded)} succeeded, {len(failures)} failed, "
            f"{result.retried_count} needed more than one attempt"
        )
        if failures:
            logger.warning(f"Failed records: {[r.record_id for r in failures]}")
        return result
