"""
Flow state, context and result types owned by the orchestrator.
"""

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from score_sync.models.records import ChangeEntry, Mismatch, Record, RetryRecord


class FlowState(str, Enum):
    """All states of the update flow."""
    IDLE = "IDLE"
    CHECKING_SETUP = "CHECKING_SETUP"
    CREATING_OUTCOME = "CREATING_OUTCOME"
    CREATING_ASSIGNMENT = "CREATING_ASSIGNMENT"
    CREATING_RUBRIC = "CREATING_RUBRIC"
    CALCULATING = "CALCULATING"
    UPDATING_RECORDS = "UPDATING_RECORDS"
    POLLING_PROGRESS = "POLLING_PROGRESS"
    VERIFYING = "VERIFYING"
    VERIFYING_OVERRIDES = "VERIFYING_OVERRIDES"
    COMPLETE = "COMPLETE"
    ERROR = "ERROR"


TERMINAL_STATES = frozenset({FlowState.COMPLETE, FlowState.ERROR})


class SubmissionMode(str, Enum):
    """How changed values are written to the primary channel."""
    PER_RECORD = "per_record"
    BATCH = "batch"


class ResourceKind(str, Enum):
    """Supporting objects provisioned during setup."""
    OUTCOME = "outcome"
    ASSIGNMENT = "assignment"
    RUBRIC = "rubric"


CREATING_STATES = {
    ResourceKind.OUTCOME: FlowState.CREATING_OUTCOME,
    ResourceKind.ASSIGNMENT: FlowState.CREATING_ASSIGNMENT,
    ResourceKind.RUBRIC: FlowState.CREATING_RUBRIC,
}


class FlowStatus(str, Enum):
    """Outcome of a finished flow."""
    COMPLETED = "completed"
    NO_CHANGES = "no_changes"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass(frozen=True)
class PerRecordResult:
    """Outcome of the two-pass per-record submission."""
    succeeded: Tuple[RetryRecord, ...] = ()
    failures: Tuple[RetryRecord, ...] = ()
    override_records: Tuple[RetryRecord, ...] = ()

    @property
    def retried(self) -> List[RetryRecord]:
        """Records that needed more than one attempt."""
        return [r for r in self.succeeded + self.failures if r.attempts > 1]

    @property
    def retried_count(self) -> int:
        return len(self.retried)

    @property
    def attempt_histogram(self) -> Dict[int, int]:
        histogram: Dict[int, int] = {}
        for record in self.succeeded:
            histogram[record.attempts] = histogram.get(record.attempts, 0) + 1
        return dict(sorted(histogram.items()))


@dataclass(frozen=True)
class BatchSubmission:
    """A submitted batch job and the inline override writes made while building it."""
    job_handle: str
    record_count: int
    override_records: Tuple[RetryRecord, ...] = ()


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of polling the primary read path."""
    converged: bool
    attempts: int
    mismatches: Tuple[Mismatch, ...] = ()


@dataclass(frozen=True)
class OverrideSyncResult:
    """Structured report for the override channel."""
    succeeded: int = 0
    failed: int = 0
    mismatches: Tuple[Mismatch, ...] = ()
    failures: Tuple[RetryRecord, ...] = ()


@dataclass(frozen=True)
class CompletionMetadata:
    """Emitted on a successful COMPLETE for the host to persist."""
    scope_id: str
    completed_at: datetime
    duration_seconds: float
    number_of_updates: int


@dataclass(frozen=True)
class FlowContext:
    """
    Working state of one flow run.

    Instances are immutable; the orchestrator produces new instances
    through ``merge`` and is the only component that does so.
    """
    scope_id: str
    outcome_id: Optional[str] = None
    assignment_id: Optional[str] = None
    rubric_id: Optional[str] = None
    criterion_id: Optional[str] = None
    missing_resources: Tuple[ResourceKind, ...] = ()
    provisioning_rounds: Mapping[ResourceKind, int] = field(default_factory=dict)
    records: Tuple[Record, ...] = ()
    change_set: Tuple[ChangeEntry, ...] = ()
    number_of_updates: int = 0
    zero_updates: bool = False
    submission_mode: Optional[SubmissionMode] = None
    job_handle: Optional[str] = None
    per_record_result: Optional[PerRecordResult] = None
    override_records: Tuple[RetryRecord, ...] = ()
    verification: Optional[VerificationResult] = None
    override_result: Optional[OverrideSyncResult] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    retry_count: int = 0
    error: Optional[BaseException] = None

    def merge(self, updates: Optional[Mapping[str, Any]] = None, **kwargs) -> "FlowContext":
        """Return a copy with ``updates`` applied; unknown fields are rejected."""
        changes = dict(updates or {})
        changes.update(kwargs)
        known = {f.name for f in dataclasses.fields(self)}
        unknown = set(changes) - known
        if unknown:
            raise TypeError(f"Unknown FlowContext fields: {', '.join(sorted(unknown))}")
        if 'scope_id' in changes and changes['scope_id'] != self.scope_id:
            raise ValueError("scope_id cannot change during a flow")
        for name in ('records', 'change_set', 'missing_resources', 'override_records'):
            if name in changes and changes[name] is not None:
                changes[name] = tuple(changes[name])
        return dataclasses.replace(self, **changes)


@dataclass(frozen=True)
class StepResult:
    """What a state handler hands back: the next state and a context delta."""
    next_state: FlowState
    updates: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class FlowResult:
    """Summary of a finished flow for the host."""
    run_id: str
    scope_id: str
    status: FlowStatus
    state_path: Tuple[FlowState, ...]
    context: FlowContext
    completion: Optional[CompletionMetadata] = None

    @property
    def error(self) -> Optional[BaseException]:
        return self.context.error

    @property
    def number_of_updates(self) -> int:
        return self.context.number_of_updates

    @property
    def submission_mode(self) -> Optional[SubmissionMode]:
        return self.context.submission_mode

    @property
    def failures(self) -> Tuple[RetryRecord, ...]:
        if self.context.per_record_result is None:
            return ()
        return self.context.per_record_result.failures

    @property
    def retried(self) -> List[RetryRecord]:
        if self.context.per_record_result is None:
            return []
        return self.context.per_record_result.retried

    @property
    def verification_converged(self) -> Optional[bool]:
        if self.context.verification is None:
            return None
        return self.context.verification.converged

    @property
    def override_result(self) -> Optional[OverrideSyncResult]:
        return self.context.override_result
