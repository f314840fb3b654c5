"""
State handlers for the update flow.

Each handler reads the current FlowContext, performs the work of its state
and returns a StepResult naming the next state and the context delta. No
handler mutates the context; the orchestrator applies the delta.
"""

import logging
import time
from typing import Awaitable, Callable, Dict, Optional

from score_sync.core.config import FlowConfig
from score_sync.core.errors import FatalRemoteError, UserAbortError
from score_sync.core.interfaces import (
    FlowDependencies, LoggingProgressSink, ProgressSink, ResourceSpec, SyncTarget, auto_confirm
)
from score_sync.models.flow import (
    CREATING_STATES, FlowContext, FlowState, ResourceKind, StepResult, SubmissionMode
)
from score_sync.models.records import ExclusionSet
from score_sync.services.sync.batch import BatchSubmitter, ProgressPoller
from score_sync.services.sync.calculator import calculate_changes
from score_sync.services.sync.cancellation import CancelToken
from score_sync.services.sync.overrides import CorrelationIdCache, OverrideChannelSynchronizer
from score_sync.services.sync.per_record import PerRecordSubmitter
from score_sync.services.sync.strategy import select_submission_mode
from score_sync.services.sync.verification import VerificationEngine


logger = logging.getLogger(__name__)


class FlowRuntime:
    """
    Per-run services shared by the handlers.

    Holds the collaborators, the config and the cancel token, and builds
    the verification engine and override synchronizer once per run so the
    correlation-id cache is populated at most once.
    """

    def __init__(
        self,
        deps: FlowDependencies,
        config: FlowConfig,
        cancel_token: Optional[CancelToken] = None,
        scope_id: Optional[str] = None
    ):
        self.deps = deps
        self.config = config
        self.cancel_token = cancel_token or CancelToken()
        self.progress: ProgressSink = deps.progress or LoggingProgressSink(scope_id)
        self.confirm = deps.confirm or auto_confirm(config.auto_confirm_provisioning)
        self._started = time.monotonic()
        self._verifier: Optional[VerificationEngine] = None
        self._overrides: Optional[OverrideChannelSynchronizer] = None

    def elapsed(self) -> float:
        return time.monotonic() - self._started

    def notify(self, message: str) -> None:
        self.progress.notify(message, self.elapsed())

    @property
    def overrides_enabled(self) -> bool:
        return self.config.enable_override and self.deps.override_channel is not None

    @property
    def verifier(self) -> VerificationEngine:
        if self._verifier is None:
            self._verifier = VerificationEngine(
                self.deps.primary,
                override_channel=self.deps.override_channel,
                progress=self.progress,
                cancel_token=self.cancel_token,
                elapsed=self.elapsed
            )
        return self._verifier

    def overrides(self, scope_id: str) -> Optional[OverrideChannelSynchronizer]:
        if not self.overrides_enabled:
            return None
        if self._overrides is None:
            channel = self.deps.override_channel
            self._overrides = OverrideChannelSynchronizer(
                channel,
                CorrelationIdCache(scope_id, channel),
                self.config.override_scale,
                self.verifier,
                cancel_token=self.cancel_token
            )
        return self._overrides


def build_target(ctx: FlowContext) -> SyncTarget:
    if not ctx.outcome_id or not ctx.assignment_id:
        raise FatalRemoteError("Setup incomplete: outcome or assignment id missing")
    return SyncTarget(
        scope_id=ctx.scope_id,
        outcome_id=ctx.outcome_id,
        assignment_id=ctx.assignment_id,
        criterion_id=ctx.criterion_id
    )


def _resource_name(kind: ResourceKind, config: FlowConfig) -> str:
    return {
        ResourceKind.OUTCOME: config.outcome_name,
        ResourceKind.ASSIGNMENT: config.assignment_name,
        ResourceKind.RUBRIC: config.rubric_name,
    }[kind]


def _resource_spec(kind: ResourceKind, ctx: FlowContext, config: FlowConfig) -> ResourceSpec:
    return ResourceSpec(
        kind=kind,
        scope_id=ctx.scope_id,
        name=_resource_name(kind, config),
        outcome_id=ctx.outcome_id,
        assignment_id=ctx.assignment_id
    )


async def _request_creation(
    kind: ResourceKind,
    ctx: FlowContext,
    runtime: FlowRuntime,
    updates: Dict
) -> StepResult:
    """Ask before provisioning a missing resource and route to its CREATING state."""
    name = _resource_name(kind, runtime.config)
    rounds = ctx.provisioning_rounds.get(kind, 0)
    if rounds >= runtime.config.max_provisioning_rounds:
        raise FatalRemoteError(
            f"{kind.value.capitalize()} \"{name}\" still missing after {rounds} creation attempts"
        )

    prompt = f"{kind.value.capitalize()} \"{name}\" not found.\nWould you like to create it?"
    if not await runtime.confirm(prompt):
        raise UserAbortError(
            f"User declined to create missing {kind.value}.", scope_id=ctx.scope_id
        )

    updates['missing_resources'] = (kind,)
    return StepResult(CREATING_STATES[kind], updates)


async def handle_checking_setup(ctx: FlowContext, runtime: FlowRuntime) -> StepResult:
    """Validate outcome, assignment and rubric in dependency order."""
    config = runtime.config
    provisioner = runtime.deps.provisioner
    runtime.notify(f"Checking setup for \"{config.outcome_name}\"...")
    updates: Dict = {}

    outcome = await provisioner.find_resource(_resource_spec(ResourceKind.OUTCOME, ctx, config))
    if outcome is None:
        return await _request_creation(ResourceKind.OUTCOME, ctx, runtime, updates)
    updates['outcome_id'] = outcome.resource_id
    ctx = ctx.merge(updates)

    assignment = await provisioner.find_resource(
        _resource_spec(ResourceKind.ASSIGNMENT, ctx, config)
    )
    if assignment is None:
        return await _request_creation(ResourceKind.ASSIGNMENT, ctx, runtime, updates)
    updates['assignment_id'] = assignment.resource_id
    ctx = ctx.merge(updates)

    rubric = await provisioner.find_resource(_resource_spec(ResourceKind.RUBRIC, ctx, config))
    if rubric is None:
        return await _request_creation(ResourceKind.RUBRIC, ctx, runtime, updates)
    updates['rubric_id'] = rubric.resource_id
    updates['criterion_id'] = rubric.criterion_id

    if runtime.overrides_enabled:
        await runtime.deps.override_channel.ensure_overrides_enabled(ctx.scope_id)

    updates['missing_resources'] = ()
    logger.debug(f"Setup complete for scope {ctx.scope_id}: {updates}")
    return StepResult(FlowState.CALCULATING, updates)


def _make_creating_handler(kind: ResourceKind, id_field: str):
    async def handle_creating(ctx: FlowContext, runtime: FlowRuntime) -> StepResult:
        name = _resource_name(kind, runtime.config)
        runtime.notify(f"Creating \"{name}\" {kind.value.capitalize()}...")

        resource_id = await runtime.deps.provisioner.create_resource(
            _resource_spec(kind, ctx, runtime.config)
        )
        logger.info(f"Created {kind.value} \"{name}\" ({resource_id}) in scope {ctx.scope_id}")

        rounds = dict(ctx.provisioning_rounds)
        rounds[kind] = rounds.get(kind, 0) + 1
        updates = {'provisioning_rounds': rounds, 'missing_resources': ()}
        if resource_id is not None:
            updates[id_field] = str(resource_id)
        return StepResult(FlowState.CHECKING_SETUP, updates)

    handle_creating.__name__ = f"handle_creating_{kind.value}"
    return handle_creating


handle_creating_outcome = _make_creating_handler(ResourceKind.OUTCOME, 'outcome_id')
handle_creating_assignment = _make_creating_handler(ResourceKind.ASSIGNMENT, 'assignment_id')
handle_creating_rubric = _make_creating_handler(ResourceKind.RUBRIC, 'rubric_id')


async def handle_calculating(ctx: FlowContext, runtime: FlowRuntime) -> StepResult:
    config = runtime.config
    runtime.notify(f"Calculating \"{config.outcome_name}\" scores...")

    correlation_ids = None
    overrides = runtime.overrides(ctx.scope_id)
    if overrides is not None:
        correlation_ids = await overrides.cache.load()

    records = await runtime.deps.record_source.fetch_records(
        ctx.scope_id,
        target_measurement_id=ctx.outcome_id,
        correlation_ids=correlation_ids
    )
    # the target outcome never counts towards its own mean
    exclusions = ExclusionSet.build(
        measurement_ids=[ctx.outcome_id] if ctx.outcome_id else [],
        label_substrings=config.excluded_keywords
    )
    change_set = calculate_changes(
        records,
        exclusions,
        override_scale=config.override_scale if runtime.overrides_enabled else None,
        override_tolerance=config.override_tolerance
    )

    updates = {
        'records': records,
        'change_set': change_set,
        'number_of_updates': len(change_set),
    }
    if not change_set:
        logger.info(f"No changes to {config.outcome_name} found for scope {ctx.scope_id}")
        updates['zero_updates'] = True
        return StepResult(FlowState.COMPLETE, updates)

    return StepResult(FlowState.UPDATING_RECORDS, updates)


async def handle_updating_records(ctx: FlowContext, runtime: FlowRuntime) -> StepResult:
    config = runtime.config
    target = build_target(ctx)
    count = len(ctx.change_set)
    mode = select_submission_mode(count, config.per_record_threshold)
    overrides = runtime.overrides(ctx.scope_id)

    if mode == SubmissionMode.PER_RECORD:
        runtime.notify(
            f"Detected {count} changes - updating scores one at a time for quicker processing."
        )
        submitter = PerRecordSubmitter(
            runtime.deps.primary,
            target,
            overrides=overrides,
            progress=runtime.progress,
            cancel_token=runtime.cancel_token,
            max_attempts=config.per_record_max_attempts,
            deferred_pass_delay=config.deferred_pass_delay,
            override_max_attempts=config.per_record_max_attempts,
            elapsed=runtime.elapsed
        )
        result = await submitter.submit(ctx.change_set)
        return StepResult(FlowState.VERIFYING, {
            'submission_mode': mode,
            'per_record_result': result,
            'override_records': result.override_records,
            'retry_count': result.retried_count,
        })

    runtime.notify(f"Detected {count} changes - using bulk update for error prevention")
    submission = await BatchSubmitter(
        runtime.deps.primary,
        target,
        overrides=overrides,
        cancel_token=runtime.cancel_token
    ).submit_batch(ctx.change_set)
    return StepResult(FlowState.POLLING_PROGRESS, {
        'submission_mode': mode,
        'job_handle': submission.job_handle,
        'override_records': submission.override_records,
    })


async def handle_polling_progress(ctx: FlowContext, runtime: FlowRuntime) -> StepResult:
    poller = ProgressPoller(
        runtime.deps.primary,
        progress=runtime.progress,
        cancel_token=runtime.cancel_token,
        elapsed=runtime.elapsed
    )
    await poller.poll_until_terminal(
        ctx.job_handle,
        timeout=runtime.config.poll_timeout,
        interval=runtime.config.poll_interval
    )
    return StepResult(FlowState.VERIFYING)


def _submitted_entries(ctx: FlowContext):
    """Change set minus records whose primary write failed both passes."""
    if ctx.per_record_result is None or not ctx.per_record_result.failures:
        return ctx.change_set
    failed = {r.record_id for r in ctx.per_record_result.failures}
    return tuple(entry for entry in ctx.change_set if entry.record_id not in failed)


async def handle_verifying(ctx: FlowContext, runtime: FlowRuntime) -> StepResult:
    config = runtime.config
    result = await runtime.verifier.verify(
        build_target(ctx),
        _submitted_entries(ctx),
        tolerance=config.verify_tolerance,
        max_attempts=config.verify_max_attempts,
        wait_seconds=config.verify_wait
    )
    if not result.converged:
        logger.warning(
            f"Scores for scope {ctx.scope_id} did not all verify; "
            f"{len(result.mismatches)} still differ"
        )
    return StepResult(FlowState.VERIFYING_OVERRIDES, {'verification': result})


async def handle_verifying_overrides(ctx: FlowContext, runtime: FlowRuntime) -> StepResult:
    overrides = runtime.overrides(ctx.scope_id)
    if overrides is None:
        return StepResult(FlowState.COMPLETE)

    config = runtime.config
    result = await overrides.reconcile(
        _submitted_entries(ctx),
        ctx.override_records,
        max_retries=config.override_verify_max_retries,
        retry_delay=config.override_verify_retry_delay,
        tolerance=config.override_tolerance
    )
    if result.mismatches:
        logger.warning(f"{len(result.mismatches)} override scores did not verify")
    return StepResult(FlowState.COMPLETE, {'override_result': result})


StateHandler = Callable[[FlowContext, FlowRuntime], Awaitable[StepResult]]

STATE_HANDLERS: Dict[FlowState, StateHandler] = {
    FlowState.CHECKING_SETUP: handle_checking_setup,
    FlowState.CREATING_OUTCOME: handle_creating_outcome,
    FlowState.CREATING_ASSIGNMENT: handle_creating_assignment,
    FlowState.CREATING_RUBRIC: handle_creating_rubric,
    FlowState.CALCULATING: handle_calculating,
    FlowState.UPDATING_RECORDS: handle_updating_records,
    FlowState.POLLING_PROGRESS: handle_polling_progress,
    FlowState.VERIFYING: handle_verifying,
    FlowState.VERIFYING_OVERRIDES: handle_verifying_overrides,
}
