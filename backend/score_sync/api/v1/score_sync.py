"""
API endpoints for running score sync on a course
"""

from fastapi import APIRouter, HTTPException, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import AsyncGenerator, Optional, Set
import logging

from score_sync.core.config import FlowConfig, settings
from score_sync.core.database import get_db
from score_sync.core.errors import ScoreSyncError, get_user_friendly_message
from score_sync.core.interfaces import FlowDependencies, LoggingProgressSink, auto_confirm
from score_sync.integrations.canvas.client import CanvasClient
from score_sync.integrations.canvas.gateway import CanvasGateway
from score_sync.schemas.score_sync import LastRunResponse, ScoreSyncRequest, ScoreSyncResponse
from score_sync.services.run_history import RunHistoryService
from score_sync.services.sync.orchestrator import FlowOrchestrator
from score_sync.services.sync.report import build_error_summary

logger = logging.getLogger(__name__)
router = APIRouter()

# Courses with a run in progress in this process
active_runs: Set[str] = set()


async def get_canvas_gateway() -> AsyncGenerator[CanvasGateway, None]:
    async with CanvasClient() as client:
        yield CanvasGateway(client, include_overrides=settings.ENABLE_GRADE_OVERRIDE)


def build_flow_config(sync_request: Optional[ScoreSyncRequest]) -> FlowConfig:
    config = FlowConfig.from_settings(settings)
    if sync_request is None:
        return config
    updates = sync_request.model_dump(exclude_none=True)
    return config.model_copy(update=updates) if updates else config


@router.post("/courses/{course_id}/score-sync", response_model=ScoreSyncResponse)
async def run_score_sync(
    course_id: str,
    sync_request: Optional[ScoreSyncRequest] = None,
    gateway: CanvasGateway = Depends(get_canvas_gateway),
    db: AsyncSession = Depends(get_db)
):
    """Run one score sync flow for a course and record the result"""

    if course_id in active_runs:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"A score sync is already running for course {course_id}"
        )

    config = build_flow_config(sync_request)
    gateway.include_overrides = config.enable_override
    deps = FlowDependencies(
        record_source=gateway,
        provisioner=gateway,
        primary=gateway,
        override_channel=gateway if config.enable_override else None,
        progress=LoggingProgressSink(course_id),
        confirm=auto_confirm(config.auto_confirm_provisioning)
    )

    active_runs.add(course_id)
    try:
        result = await FlowOrchestrator(course_id, deps, config).run()
    except ScoreSyncError as e:
        logger.warning(f"Score sync rejected for course {course_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=get_user_friendly_message(e)
        )
    except Exception as e:
        logger.error(f"Score sync failed for course {course_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Score sync failed: {str(e)}"
        )
    finally:
        active_runs.discard(course_id)

    await RunHistoryService(db).record_run(result)

    error_message = get_user_friendly_message(result.error) if result.error else None
    return ScoreSyncResponse.from_result(
        result,
        error_message=error_message,
        error_summary_csv=build_error_summary(result.retried, result.failures)
    )


@router.get("/courses/{course_id}/score-sync/last-run", response_model=LastRunResponse)
async def get_last_run(
    course_id: str,
    db: AsyncSession = Depends(get_db)
):
    """Completion time and duration of the last run that applied updates"""

    completion = await RunHistoryService(db).get_last_completed(course_id)
    if completion is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No completed score sync for course {course_id}"
        )

    return LastRunResponse(
        course_id=completion.scope_id,
        completed_at=completion.completed_at,
        duration_seconds=completion.duration_seconds,
        number_of_updates=completion.number_of_updates
    )
