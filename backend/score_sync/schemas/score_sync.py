"""
Pydantic schemas for the score sync HTTP surface
"""

from pydantic import BaseModel, Field, ConfigDict
from datetime import datetime
from typing import List, Optional

from score_sync.models.flow import FlowResult, FlowStatus, SubmissionMode


class ScoreSyncRequest(BaseModel):
    """Optional per-run overrides of the configured budgets"""
    per_record_threshold: Optional[int] = Field(default=None, ge=1)
    enable_override: Optional[bool] = None
    auto_confirm_provisioning: Optional[bool] = None


class RecordFailure(BaseModel):
    record_id: str
    attempts: int
    last_error: Optional[str] = None
    value: Optional[float] = None


class MismatchResponse(BaseModel):
    record_id: str
    expected: Optional[float] = None
    actual: Optional[float] = None
    reason: Optional[str] = None


class OverrideSummary(BaseModel):
    succeeded: int = 0
    failed: int = 0
    mismatches: List[MismatchResponse] = Field(default_factory=list)


class ScoreSyncResponse(BaseModel):
    """Result of one score sync run"""
    run_id: str
    course_id: str
    status: FlowStatus
    submission_mode: Optional[SubmissionMode] = None
    number_of_updates: int = 0
    retried_count: int = 0
    failures: List[RecordFailure] = Field(default_factory=list)
    verification_converged: Optional[bool] = None
    unverified: List[MismatchResponse] = Field(default_factory=list)
    overrides: Optional[OverrideSummary] = None
    state_path: List[str] = Field(default_factory=list)
    duration_seconds: Optional[float] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    error_summary_csv: Optional[str] = None

    @classmethod
    def from_result(cls, result: FlowResult, error_message: Optional[str] = None,
                    error_summary_csv: Optional[str] = None) -> "ScoreSyncResponse":
        ctx = result.context
        overrides = None
        if ctx.override_result is not None:
            overrides = OverrideSummary(
                succeeded=ctx.override_result.succeeded,
                failed=ctx.override_result.failed,
                mismatches=[MismatchResponse(**m.to_dict()) for m in ctx.override_result.mismatches]
            )
        return cls(
            run_id=result.run_id,
            course_id=result.scope_id,
            status=result.status,
            submission_mode=ctx.submission_mode,
            number_of_updates=ctx.number_of_updates,
            retried_count=ctx.retry_count,
            failures=[
                RecordFailure(
                    record_id=r.record_id,
                    attempts=r.attempts,
                    last_error=r.last_error,
                    value=r.value
                )
                for r in result.failures
            ],
            verification_converged=result.verification_converged,
            unverified=[
                MismatchResponse(**m.to_dict())
                for m in (ctx.verification.mismatches if ctx.verification else ())
            ],
            overrides=overrides,
            state_path=[state.value for state in result.state_path],
            duration_seconds=ctx.duration_seconds,
            completed_at=ctx.completed_at,
            error=error_message,
            error_summary_csv=error_summary_csv
        )


class LastRunResponse(BaseModel):
    """Last completed run of a course"""
    model_config = ConfigDict(from_attributes=True)

    course_id: str
    completed_at: datetime
    duration_seconds: Optional[float] = None
    number_of_updates: int = 0
