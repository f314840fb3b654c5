"""
Batch Submitter and Progress Poller

Large change sets are written in a single request that returns a job
handle. The poller then watches the job until it reaches a terminal
state or the timeout elapses.
"""

import logging
import time
from enum import Enum
from typing import Callable, List, Optional, Sequence

from score_sync.core.errors import FatalRemoteError, SyncTimeoutError
from score_sync.core.interfaces import PrimaryChannel, ProgressSink, SyncTarget
from score_sync.models.flow import BatchSubmission
from score_sync.models.records import ChangeEntry, RetryRecord
from score_sync.services.sync.cancellation import CancelToken
from score_sync.services.sync.overrides import OverrideChannelSynchronizer


logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    """Remote batch job states."""
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class BatchSubmitter:
    """Submits a whole change set as one batch job."""

    def __init__(
        self,
        primary: PrimaryChannel,
        target: SyncTarget,
        overrides: Optional[OverrideChannelSynchronizer] = None,
        cancel_token: Optional[CancelToken] = None
    ):
        self.primary = primary
        self.target = target
        self.overrides = overrides
        self.cancel_token = cancel_token or CancelToken()

    async def submit_batch(self, change_set: Sequence[ChangeEntry]) -> BatchSubmission:
        """
        Push overrides inline and submit the primary values as one job.

        Override writes get a single attempt each and never fail the batch;
        the override verification step reports anything that did not land.
        """
        values = {}
        override_records: List[RetryRecord] = []

        for entry in change_set:
            self.cancel_token.raise_if_cancelled()
            values[entry.record_id] = entry.value
            if self.overrides is not None and entry.override_changed:
                override_records.append(await self.overrides.push(entry, max_attempts=1))

        job_handle = await self.primary.submit_batch(self.target, values)
        if not job_handle:
            raise FatalRemoteError("Batch submission returned no job handle")

        logger.info(f"Submitted batch of {len(values)} values, job handle {job_handle}")
        return BatchSubmission(
            job_handle=str(job_handle),
            record_count=len(values),
            override_records=tuple(override_records)
        )


class ProgressPoller:
    """Polls a batch job until it completes, fails or times out."""

    def __init__(
        self,
        primary: PrimaryChannel,
        progress: Optional[ProgressSink] = None,
        cancel_token: Optional[CancelToken] = None,
        elapsed: Optional[Callable[[], float]] = None
    ):
        self.primary = primary
        self.progress = progress
        self.cancel_token = cancel_token or CancelToken()
        started = time.monotonic()
        self.elapsed = elapsed or (lambda: time.monotonic() - started)

    async def poll_until_terminal(
        self,
        job_handle: str,
        timeout: float = 1200.0,
        interval: float = 2.0
    ) -> JobStatus:
        """
        Block until the job completes.

        Raises:
            FatalRemoteError: The job reported ``failed``
            SyncTimeoutError: No terminal state within ``timeout`` seconds
            FlowCancelledError: The cancel token was set while waiting
        """
        loop_start = time.monotonic()

        while time.monotonic() - loop_start < timeout:
            self.cancel_token.raise_if_cancelled()
            state = str(await self.primary.read_job_status(job_handle)).lower()
            elapsed = self.elapsed()
            logger.debug(f"Batch job {job_handle} status: {state} (elapsed: {elapsed:.0f}s)")

            if state == JobStatus.COMPLETED.value:
                logger.info(f"Batch job {job_handle} completed")
                return JobStatus.COMPLETED

            if self.progress:
                self.progress.notify(f"Bulk uploading status: {state.upper()}.", elapsed)

            if state == JobStatus.FAILED.value:
                logger.error(f"Batch job {job_handle} failed")
                raise FatalRemoteError("Bulk update failed.")

            await self.cancel_token.sleep(interval)

        raise SyncTimeoutError(
            "Bulk update is taking longer than expected. In a few minutes try updating again. "
            "If there are no changes to be made the update completed",
            timeout_seconds=timeout,
            elapsed_seconds=time.monotonic() - loop_start
        )
