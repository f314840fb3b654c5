"""
Score Synchronization Engine

Computes each student's average outcome score and keeps the remote
copies of that value in sync.

Components:
- Value calculator and submission strategy selector
- Per-record submitter with a deferred retry pass
- Batch submitter and progress poller
- Verification of the primary and override channels
- Override channel synchronizer with a per-course correlation-id cache
- Flow state machine, state handlers and orchestrator
"""

from .orchestrator import FlowOrchestrator
from .cancellation import CancelToken
from .state_machine import FlowStateMachine, VALID_TRANSITIONS

__all__ = [
    "FlowOrchestrator",
    "CancelToken",
    "FlowStateMachine",
    "VALID_TRANSITIONS"
]
