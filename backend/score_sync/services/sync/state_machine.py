"""
Update flow state machine.

Every transition is checked against a static table. An illegal transition
is a programming error and raises IllegalTransitionError.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, FrozenSet, List, Optional

from score_sync.core.errors import IllegalTransitionError
from score_sync.models.flow import TERMINAL_STATES, FlowContext, FlowState


logger = logging.getLogger(__name__)


VALID_TRANSITIONS: Dict[FlowState, FrozenSet[FlowState]] = {
    FlowState.IDLE: frozenset({FlowState.CHECKING_SETUP}),
    FlowState.CHECKING_SETUP: frozenset({
        FlowState.CREATING_OUTCOME,
        FlowState.CREATING_ASSIGNMENT,
        FlowState.CREATING_RUBRIC,
        FlowState.CALCULATING,
        FlowState.ERROR,
    }),
    FlowState.CREATING_OUTCOME: frozenset({FlowState.CHECKING_SETUP, FlowState.ERROR}),
    FlowState.CREATING_ASSIGNMENT: frozenset({FlowState.CHECKING_SETUP, FlowState.ERROR}),
    FlowState.CREATING_RUBRIC: frozenset({FlowState.CHECKING_SETUP, FlowState.ERROR}),
    FlowState.CALCULATING: frozenset({
        FlowState.UPDATING_RECORDS, FlowState.COMPLETE, FlowState.ERROR
    }),
    FlowState.UPDATING_RECORDS: frozenset({
        FlowState.POLLING_PROGRESS, FlowState.VERIFYING, FlowState.ERROR
    }),
    FlowState.POLLING_PROGRESS: frozenset({FlowState.VERIFYING, FlowState.ERROR}),
    FlowState.VERIFYING: frozenset({FlowState.VERIFYING_OVERRIDES, FlowState.ERROR}),
    FlowState.VERIFYING_OVERRIDES: frozenset({FlowState.COMPLETE, FlowState.ERROR}),
    FlowState.COMPLETE: frozenset({FlowState.IDLE}),
    FlowState.ERROR: frozenset({FlowState.IDLE}),
}


def allowed_transitions(from_state: FlowState) -> FrozenSet[FlowState]:
    return VALID_TRANSITIONS.get(from_state, frozenset())


def is_legal_transition(
    from_state: FlowState,
    to_state: FlowState,
    context: Optional[FlowContext] = None
) -> bool:
    """
    Table lookup plus guards.

    CHECKING_SETUP -> CALCULATING is only legal while no resource is
    waiting to be created.
    """
    if to_state not in allowed_transitions(from_state):
        return False
    if (
        from_state == FlowState.CHECKING_SETUP
        and to_state == FlowState.CALCULATING
        and context is not None
        and context.missing_resources
    ):
        return False
    return True


@dataclass(frozen=True)
class TransitionRecord:
    from_state: FlowState
    to_state: FlowState
    at: datetime


TransitionListener = Callable[[TransitionRecord, FlowContext], None]


class FlowStateMachine:
    """
    Tracks the current state of one flow run.

    A machine is single-use: once a terminal state has resolved back to
    IDLE the run is over and any further transition is rejected.
    """

    def __init__(self, initial_state: FlowState = FlowState.IDLE):
        self.current_state = initial_state
        self.history: List[TransitionRecord] = []
        self._listeners: List[TransitionListener] = []
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def state_path(self) -> List[FlowState]:
        path = [self.history[0].from_state] if self.history else [self.current_state]
        path.extend(record.to_state for record in self.history)
        return path

    def add_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    def can_transition(self, to_state: FlowState, context: Optional[FlowContext] = None) -> bool:
        if self._finished:
            return False
        return is_legal_transition(self.current_state, to_state, context)

    def transition(self, to_state: FlowState, context: FlowContext) -> TransitionRecord:
        if not self.can_transition(to_state, context):
            allowed = [] if self._finished else sorted(
                s.value for s in allowed_transitions(self.current_state)
            )
            raise IllegalTransitionError(self.current_state.value, to_state.value, allowed)

        record = TransitionRecord(self.current_state, to_state, datetime.now(timezone.utc))
        if self.current_state in TERMINAL_STATES and to_state == FlowState.IDLE:
            self._finished = True
        self.current_state = to_state
        self.history.append(record)

        logger.debug(f"State transition: {record.from_state.value} -> {record.to_state.value}")
        self._emit(record, context)
        return record

    def _emit(self, record: TransitionRecord, context: FlowContext) -> None:
        for listener in self._listeners:
            try:
                listener(record, context)
            except Exception as e:
                logger.error(f"Error in state change listener: {e}")
