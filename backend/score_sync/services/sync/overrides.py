"""
Override Channel Synchronizer

Re-expresses each changed value as an override on the secondary surface.
Correlation ids are fetched once per scope and then treated as read-only.
"""

import asyncio
import logging
from types import MappingProxyType
from typing import Callable, Iterable, List, Mapping, Optional, Sequence

from score_sync.core.errors import FatalRemoteError, TransientRemoteError
from score_sync.core.interfaces import OverrideChannel
from score_sync.models.flow import OverrideSyncResult
from score_sync.models.records import ChangeEntry, Channel, Mismatch, RetryRecord
from score_sync.services.sync.cancellation import CancelToken
from score_sync.services.sync.verification import VerificationEngine


logger = logging.getLogger(__name__)


class CorrelationIdCache:
    """Record id -> correlation id map for one scope, populated once."""

    def __init__(self, scope_id: str, channel: OverrideChannel):
        self.scope_id = scope_id
        self.channel = channel
        self._ids: Optional[Mapping[str, str]] = None
        self._lock = asyncio.Lock()

    @property
    def loaded(self) -> bool:
        return self._ids is not None

    async def load(self) -> Mapping[str, str]:
        if self._ids is not None:
            return self._ids

        async with self._lock:
            if self._ids is None:
                fetched = await self.channel.fetch_correlation_ids(self.scope_id)
                ids = {
                    str(record_id): str(correlation_id)
                    for record_id, correlation_id in fetched.items()
                    if record_id and correlation_id
                }
                self._ids = MappingProxyType(ids)
                logger.debug(f"Fetched {len(ids)} correlation ids for scope {self.scope_id}")

        return self._ids

    async def resolve(self, record_id: str) -> Optional[str]:
        ids = await self.load()
        return ids.get(str(record_id))


class OverrideChannelSynchronizer:
    """Submits and verifies override values for a change set."""

    def __init__(
        self,
        channel: OverrideChannel,
        cache: CorrelationIdCache,
        scale: Callable[[float], float],
        verifier: VerificationEngine,
        cancel_token: Optional[CancelToken] = None
    ):
        self.channel = channel
        self.cache = cache
        self.scale = scale
        self.verifier = verifier
        self.cancel_token = cancel_token

    def expected_value(self, entry: ChangeEntry) -> float:
        if entry.override_value is not None:
            return entry.override_value
        return self.scale(entry.value)

    async def push(self, entry: ChangeEntry, max_attempts: int = 1) -> RetryRecord:
        """
        Write one override, retrying up to ``max_attempts`` times.

        Failures are returned in the RetryRecord, never raised.
        """
        expected = self.expected_value(entry)
        record = RetryRecord(
            record_id=entry.record_id,
            channel=Channel.OVERRIDE,
            value=expected
        )

        try:
            correlation_id = await self.cache.resolve(entry.record_id)
        except Exception as e:
            record.last_error = f"Correlation id lookup failed: {e}"
            logger.warning(f"[override] lookup failed for record {entry.record_id}: {e}")
            return record

        if not correlation_id:
            record.last_error = "No correlation id"
            logger.warning(f"[override] no correlation id for record {entry.record_id}")
            return record

        for attempt in range(1, max_attempts + 1):
            record.attempts = attempt
            try:
                await self.channel.write_override(correlation_id, expected)
                record.succeeded = True
                record.last_error = None
                logger.debug(f"[override] record {entry.record_id} -> {correlation_id}: {expected}")
                return record
            except Exception as e:
                record.last_error = str(e)
                logger.warning(
                    f"[override] attempt {attempt} failed for record {entry.record_id}: {e}"
                )

        return record

    async def reconcile(
        self,
        change_set: Sequence[ChangeEntry],
        push_records: Iterable[RetryRecord],
        max_retries: int = 3,
        retry_delay: float = 2.0,
        tolerance: float = 0.01
    ) -> OverrideSyncResult:
        """Verify pushed overrides and fold everything into one report."""
        pushes = list(push_records)
        pending = [entry for entry in change_set if entry.override_changed]

        try:
            correlation_ids = await self.cache.load()
        except (TransientRemoteError, FatalRemoteError) as e:
            logger.warning(f"[override] correlation id lookup failed, skipping verification: {e}")
            mismatches = [
                Mismatch(
                    entry.record_id, self.expected_value(entry),
                    reason=f"Correlation id lookup failed: {e}"
                )
                for entry in pending
            ]
        else:
            mismatches = await self.verifier.verify_overrides(
                self.cache.scope_id,
                pending,
                correlation_ids,
                expected=self.expected_value,
                max_retries=max_retries,
                retry_delay=retry_delay,
                tolerance=tolerance
            )

        failures = tuple(r for r in pushes if not r.succeeded)
        result = OverrideSyncResult(
            succeeded=sum(1 for r in pushes if r.succeeded),
            failed=len(failures),
            mismatches=tuple(mismatches),
            failures=failures
        )
        logger.info(
            f"Override sync: {result.succeeded} succeeded, {result.failed} failed, "
            f"{len(result.mismatches)} mismatches"
        )
        return result

    async def sync_overrides(
        self,
        change_set: Sequence[ChangeEntry],
        max_attempts: int = 3,
        max_retries: int = 3,
        retry_delay: float = 2.0,
        tolerance: float = 0.01
    ) -> OverrideSyncResult:
        """Push every pending override one at a time, then verify them."""
        pushes: List[RetryRecord] = []
        for entry in change_set:
            if not entry.override_changed:
                continue
            if self.cancel_token:
                self.cancel_token.raise_if_cancelled()
            pushes.append(await self.push(entry, max_attempts=max_attempts))

        return await self.reconcile(
            change_set,
            pushes,
            max_retries=max_retries,
            retry_delay=retry_delay,
            tolerance=tolerance
        )
