"""
Verification Engine

Polls the remote read paths until submitted values are observed or the
attempt budget runs out. The primary channel is eventually consistent and
gets a long patience window; the override channel gets a short one.
"""

import logging
import time
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from score_sync.core.errors import TransientRemoteError
from score_sync.core.interfaces import OverrideChannel, PrimaryChannel, ProgressSink, SyncTarget
from score_sync.models.flow import VerificationResult
from score_sync.models.records import ChangeEntry, Mismatch
from score_sync.services.sync.cancellation import CancelToken


logger = logging.getLogger(__name__)


def values_match(expected: float, actual: Optional[float], tolerance: float) -> bool:
    if actual is None:
        return False
    return abs(actual - expected) < tolerance


class VerificationEngine:
    """Read-back verification for both channels."""

    def __init__(
        self,
        primary: PrimaryChannel,
        override_channel: Optional[OverrideChannel] = None,
        progress: Optional[ProgressSink] = None,
        cancel_token: Optional[CancelToken] = None,
        elapsed: Optional[Callable[[], float]] = None
    ):
        self.primary = primary
        self.override_channel = override_channel
        self.progress = progress
        self.cancel_token = cancel_token or CancelToken()
        started = time.monotonic()
        self.elapsed = elapsed or (lambda: time.monotonic() - started)

    def _compare_primary(
        self,
        change_set: Sequence[ChangeEntry],
        actual: Mapping[str, Optional[float]],
        tolerance: float
    ) -> List[Mismatch]:
        mismatches = []
        for entry in change_set:
            if entry.record_id not in actual:
                mismatches.append(Mismatch(entry.record_id, entry.value, reason="No value found."))
                continue
            value = actual[entry.record_id]
            if not values_match(entry.value, value, tolerance):
                mismatches.append(Mismatch(entry.record_id, entry.value, actual=value))
        return mismatches

    async def verify(
        self,
        target: SyncTarget,
        change_set: Sequence[ChangeEntry],
        tolerance: float = 1e-3,
        max_attempts: int = 50,
        wait_seconds: float = 5.0
    ) -> VerificationResult:
        """
        Re-read the primary value of every changed record until all match.

        Exhausting ``max_attempts`` is not an error: the result comes back
        with ``converged=False`` and the last mismatches.
        """
        record_ids = [entry.record_id for entry in change_set]
        mismatches: List[Mismatch] = []

        for attempt in range(1, max_attempts + 1):
            self.cancel_token.raise_if_cancelled()
            if self.progress:
                self.progress.notify("Status VERIFYING.", self.elapsed())

            try:
                actual = await self.primary.read_values(target, record_ids)
            except TransientRemoteError as e:
                logger.warning(f"Verification read failed on attempt {attempt}: {e}")
                mismatches = [
                    Mismatch(rid, entry.value, reason=f"Read failed: {e}")
                    for rid, entry in zip(record_ids, change_set)
                ]
            else:
                mismatches = self._compare_primary(change_set, actual, tolerance)

            if not mismatches:
                logger.info(f"All {len(record_ids)} values match backend scores.")
                return VerificationResult(converged=True, attempts=attempt)

            logger.warning(f"{len(mismatches)} mismatches found on attempt {attempt}/{max_attempts}")
            if attempt < max_attempts:
                logger.debug(f"Waiting {wait_seconds} seconds before retrying...")
                await self.cancel_token.sleep(wait_seconds)

        logger.warning(
            f"Verification incomplete after {max_attempts} attempts: "
            f"{len(mismatches)} records still differ"
        )
        return VerificationResult(
            converged=False,
            attempts=max_attempts,
            mismatches=tuple(mismatches)
        )

    async def verify_overrides(
        self,
        scope_id: str,
        change_set: Sequence[ChangeEntry],
        correlation_ids: Mapping[str, str],
        expected: Callable[[ChangeEntry], float],
        max_retries: int = 3,
        retry_delay: float = 2.0,
        tolerance: float = 0.01
    ) -> List[Mismatch]:
        """
        Re-read overrides until they match; return whatever still differs.

        Records without a correlation id are skipped, they were already
        counted as failed when the override was pushed.
        """
        if self.override_channel is None or not change_set:
            return []

        pending: Dict[str, ChangeEntry] = {}
        for entry in change_set:
            correlation_id = correlation_ids.get(entry.record_id)
            if not correlation_id:
                logger.warning(f"No correlation id found for record {entry.record_id}")
                continue
            pending[correlation_id] = entry

        mismatches: List[Mismatch] = []
        for attempt in range(1, max_retries + 1):
            self.cancel_token.raise_if_cancelled()
            if self.progress:
                self.progress.notify("Status VERIFYING OVERRIDES.", self.elapsed())

            try:
                overrides = await self.override_channel.read_overrides(scope_id)
            except TransientRemoteError as e:
                logger.warning(f"Override read failed on attempt {attempt}: {e}")
                mismatches = [
                    Mismatch(
                        entry.record_id, expected(entry), reason=f"Read failed: {e}",
                        correlation_id=correlation_id
                    )
                    for correlation_id, entry in pending.items()
                ]
                if attempt < max_retries:
                    await self.cancel_token.sleep(retry_delay)
                continue

            mismatches = []
            for correlation_id, entry in pending.items():
                want = expected(entry)
                actual = overrides.get(correlation_id)
                if actual is None:
                    mismatches.append(Mismatch(
                        entry.record_id, want, reason="No override grade found",
                        correlation_id=correlation_id
                    ))
                elif abs(actual - want) > tolerance:
                    mismatches.append(Mismatch(
                        entry.record_id, want, actual=actual, correlation_id=correlation_id
                    ))

            if not mismatches:
                logger.info("All override scores match expected values")
                return []

            logger.warning(
                f"Found {len(mismatches)} override mismatches (attempt {attempt}/{max_retries})"
            )
            if attempt < max_retries:
                await self.cancel_token.sleep(retry_delay)

        return mismatches
