"""
Persistence of finished score sync runs.
"""

import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from score_sync.models.flow import CompletionMetadata, FlowResult, FlowStatus
from score_sync.models.sync_run import SyncRun


logger = logging.getLogger(__name__)


class RunHistoryService:
    """Stores FlowResults and answers last-run queries per scope."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record_run(self, result: FlowResult) -> SyncRun:
        ctx = result.context
        per_record = ctx.per_record_result
        override_result = ctx.override_result
        error = result.error

        run = SyncRun(
            run_id=result.run_id,
            scope_id=result.scope_id,
            status=result.status,
            submission_mode=ctx.submission_mode,
            number_of_updates=ctx.number_of_updates,
            failed_count=len(per_record.failures) if per_record else 0,
            retried_count=ctx.retry_count,
            override_failed_count=override_result.failed if override_result else 0,
            override_mismatch_count=len(override_result.mismatches) if override_result else 0,
            started_at=ctx.started_at,
            completed_at=ctx.completed_at,
            duration_seconds=ctx.duration_seconds,
            verification_converged=result.verification_converged,
            error_type=type(error).__name__ if error else None,
            error_message=str(error) if error else None,
            state_path=[state.value for state in result.state_path],
            details={
                'failures': [r.to_dict() for r in result.failures],
                'mismatches': [
                    m.to_dict() for m in (ctx.verification.mismatches if ctx.verification else ())
                ],
                'override_mismatches': [
                    m.to_dict() for m in (override_result.mismatches if override_result else ())
                ],
            }
        )

        try:
            self.db.add(run)
            await self.db.commit()
            await self.db.refresh(run)
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Failed to record run {result.run_id}: {e}")
            raise

        logger.debug(f"Recorded run {result.run_id} for scope {result.scope_id}")
        return run

    async def get_last_completed(self, scope_id: str) -> Optional[CompletionMetadata]:
        """Completion metadata of the latest run that applied updates."""
        result = await self.db.execute(
            select(SyncRun)
            .where(
                SyncRun.scope_id == str(scope_id),
                SyncRun.status == FlowStatus.COMPLETED
            )
            .order_by(SyncRun.completed_at.desc(), SyncRun.id.desc())
            .limit(1)
        )
        run = result.scalar_one_or_none()
        if run is None:
            return None
        return CompletionMetadata(
            scope_id=run.scope_id,
            completed_at=run.completed_at,
            duration_seconds=run.duration_seconds,
            number_of_updates=run.number_of_updates
        )

    async def list_runs(self, scope_id: str, limit: int = 20) -> List[SyncRun]:
        result = await self.db.execute(
            select(SyncRun)
            .where(SyncRun.scope_id == str(scope_id))
            .order_by(SyncRun.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
