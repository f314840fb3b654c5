"""
Flow Orchestrator

Drives one update flow from IDLE through setup, calculation, submission
and verification to COMPLETE, or to ERROR on a flow-level failure. The
orchestrator owns the FlowContext; handlers only return deltas.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from score_sync.core.config import FlowConfig, settings
from score_sync.core.errors import (
    FlowCancelledError, IllegalTransitionError, ScoreSyncError, ScoreSyncErrorHandler,
    SyncValidationError, UserAbortError
)
from score_sync.core.interfaces import FlowDependencies
from score_sync.models.flow import (
    CompletionMetadata, FlowContext, FlowResult, FlowState, FlowStatus, StepResult
)
from score_sync.services.sync.cancellation import CancelToken
from score_sync.services.sync.handlers import STATE_HANDLERS, FlowRuntime
from score_sync.services.sync.state_machine import FlowStateMachine, TransitionListener


logger = logging.getLogger(__name__)


class FlowOrchestrator:
    """Runs a single flow for one scope. Build a new instance per run."""

    def __init__(
        self,
        scope_id: Optional[str],
        deps: FlowDependencies,
        config: Optional[FlowConfig] = None,
        cancel_token: Optional[CancelToken] = None,
        error_handler: Optional[ScoreSyncErrorHandler] = None,
        run_id: Optional[str] = None
    ):
        self.scope_id = scope_id
        self.deps = deps
        self.config = config or FlowConfig.from_settings(settings)
        self.cancel_token = cancel_token or CancelToken()
        self.error_handler = error_handler or ScoreSyncErrorHandler()
        self.run_id = run_id or str(uuid.uuid4())
        self.machine = FlowStateMachine()
        self.context: Optional[FlowContext] = None

    def add_listener(self, listener: TransitionListener) -> None:
        self.machine.add_listener(listener)

    def cancel(self, reason: str = "Flow cancelled by host") -> None:
        self.cancel_token.cancel(reason)

    def _advance(self, step: StepResult) -> None:
        self.context = self.context.merge(step.updates)
        self.machine.transition(step.next_state, self.context)

    async def run(self) -> FlowResult:
        """
        Execute the flow to completion.

        Returns:
            FlowResult describing the finished run. Flow-level failures of
            the ScoreSyncError family are reported in the result rather
            than raised.

        Raises:
            SyncValidationError: No scope id was given; raised before any
                state transition
            IllegalTransitionError: A handler asked for a transition outside
                the transition table
        """
        if not self.scope_id:
            raise SyncValidationError("No scope id provided for score sync", field='scope_id')
        if self.machine.finished or self.context is not None:
            raise RuntimeError("FlowOrchestrator instances run once; build a new one")

        scope_id = str(self.scope_id)
        runtime = FlowRuntime(self.deps, self.config, self.cancel_token, scope_id=scope_id)
        self.context = FlowContext(scope_id=scope_id, started_at=datetime.now(timezone.utc))
        logger.info(f"Starting score sync run {self.run_id} for scope {scope_id}")

        self.machine.transition(FlowState.CHECKING_SETUP, self.context)

        try:
            while self.machine.current_state not in (FlowState.COMPLETE, FlowState.ERROR):
                self.cancel_token.raise_if_cancelled()
                handler = STATE_HANDLERS[self.machine.current_state]
                step = await handler(self.context, runtime)
                self._advance(step)
        except IllegalTransitionError:
            raise
        except ScoreSyncError as e:
            return self._fail(e)
        except Exception as e:
            self._fail(e)
            raise

        return await self._complete(runtime)

    async def _complete(self, runtime: FlowRuntime) -> FlowResult:
        completed_at = datetime.now(timezone.utc)
        duration = round(runtime.elapsed(), 2)
        self.context = self.context.merge(completed_at=completed_at, duration_seconds=duration)
        ctx = self.context

        completion = None
        if ctx.zero_updates:
            status = FlowStatus.NO_CHANGES
            runtime.notify(f"No changes to {self.config.outcome_name} found.")
        else:
            status = FlowStatus.COMPLETED
            runtime.notify(
                f"{ctx.number_of_updates} scores updated successfully! "
                f"(elapsed time: {duration:.0f}s)"
            )
            completion = CompletionMetadata(
                scope_id=ctx.scope_id,
                completed_at=completed_at,
                duration_seconds=duration,
                number_of_updates=ctx.number_of_updates
            )
            if self.deps.on_complete:
                try:
                    await self.deps.on_complete(completion)
                except Exception as e:
                    logger.error(f"Completion hook failed for scope {ctx.scope_id}: {e}")

        logger.info(
            f"Score sync run {self.run_id} finished: {status.value}, "
            f"{ctx.number_of_updates} updates in {duration}s"
        )
        self.machine.transition(FlowState.IDLE, ctx)
        return self._result(status, completion)

    def _fail(self, error: BaseException) -> FlowResult:
        self.context = self.context.merge(
            error=error,
            completed_at=datetime.now(timezone.utc)
        )
        if self.machine.current_state != FlowState.ERROR:
            self.machine.transition(FlowState.ERROR, self.context)

        if isinstance(error, ScoreSyncError):
            if error.scope_id is None:
                error.scope_id = self.context.scope_id
            self.error_handler.log_error(error, {'run_id': self.run_id})
        else:
            logger.error(f"Update flow error in run {self.run_id}: {error}", exc_info=error)

        self.machine.transition(FlowState.IDLE, self.context)

        if isinstance(error, (UserAbortError, FlowCancelledError)):
            status = FlowStatus.ABORTED
        else:
            status = FlowStatus.FAILED
        return self._result(status)

    def _result(self, status: FlowStatus, completion: Optional[CompletionMetadata] = None) -> FlowResult:
        return FlowResult(
            run_id=self.run_id,
            scope_id=self.context.scope_id,
            status=status,
            state_path=tuple(self.machine.state_path),
            context=self.context,
            completion=completion
        )
