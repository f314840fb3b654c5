"""
Collaborator contracts consumed by the synchronization engine.

The engine never talks to a remote system directly; it is handed objects
satisfying these protocols. ``score_sync.integrations.canvas.gateway``
provides the Canvas implementation, tests provide in-memory fakes.
"""

import logging
from dataclasses import dataclass
from typing import (
    Awaitable, Callable, Dict, List, Mapping, Optional, Protocol, Sequence,
    runtime_checkable
)

from score_sync.models.flow import CompletionMetadata, ResourceKind
from score_sync.models.records import Record


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncTarget:
    """Resolved identifiers of the primary-channel target inside one scope."""
    scope_id: str
    outcome_id: str
    assignment_id: str
    criterion_id: Optional[str] = None


@dataclass(frozen=True)
class ResourceSpec:
    """Description of a supporting resource to look up or create."""
    kind: ResourceKind
    scope_id: str
    name: str
    outcome_id: Optional[str] = None
    assignment_id: Optional[str] = None


@dataclass(frozen=True)
class ResourceRef:
    """A resource found on the remote."""
    resource_id: str
    criterion_id: Optional[str] = None


@runtime_checkable
class RecordSource(Protocol):
    """Read-only snapshot of source records."""

    async def fetch_records(
        self,
        scope_id: str,
        target_measurement_id: Optional[str] = None,
        correlation_ids: Optional[Mapping[str, str]] = None
    ) -> List[Record]:
        """
        Fetch every record in the scope with its measurements and current values.

        ``correlation_ids`` is the run's record id -> correlation id map; when
        given, current override values are keyed through it instead of a
        fresh lookup.
        """
        ...


@runtime_checkable
class ResourceProvisioner(Protocol):
    """Finds and creates the supporting resources checked during setup."""

    async def find_resource(self, spec: ResourceSpec) -> Optional[ResourceRef]:
        ...

    async def create_resource(self, spec: ResourceSpec) -> Optional[str]:
        """Create the resource; None when its id is only known after re-validation."""
        ...


@runtime_checkable
class PrimaryChannel(Protocol):
    """Write/read path of the primary target value."""

    async def write_value(self, target: SyncTarget, record_id: str, value: float) -> None:
        ...

    async def read_values(
        self,
        target: SyncTarget,
        record_ids: Sequence[str]
    ) -> Dict[str, Optional[float]]:
        ...

    async def submit_batch(self, target: SyncTarget, values: Mapping[str, float]) -> str:
        """Submit all values in one request and return an asynchronous job handle."""
        ...

    async def read_job_status(self, job_handle: str) -> str:
        ...


@runtime_checkable
class OverrideChannel(Protocol):
    """Second remote surface holding an override of the same values."""

    async def ensure_overrides_enabled(self, scope_id: str) -> None:
        ...

    async def fetch_correlation_ids(self, scope_id: str) -> Mapping[str, str]:
        """Map every record id in the scope to its correlation id."""
        ...

    async def write_override(self, correlation_id: str, value: float) -> None:
        ...

    async def read_overrides(self, scope_id: str) -> Mapping[str, float]:
        """Current override values keyed by correlation id."""
        ...


@runtime_checkable
class ProgressSink(Protocol):
    """One-way notification of phase text and elapsed seconds."""

    def notify(self, message: str, elapsed_seconds: Optional[float] = None) -> None:
        ...


class LoggingProgressSink:
    """Progress sink writing to the module logger."""

    def __init__(self, scope_id: Optional[str] = None):
        self.scope_id = scope_id

    def notify(self, message: str, elapsed_seconds: Optional[float] = None) -> None:
        prefix = f"[{self.scope_id}] " if self.scope_id else ""
        if elapsed_seconds is None:
            logger.info(f"{prefix}{message}")
        else:
            logger.info(f"{prefix}{message} (elapsed time: {elapsed_seconds:.0f}s)")


ConfirmPrompt = Callable[[str], Awaitable[bool]]
CompletionHook = Callable[[CompletionMetadata], Awaitable[None]]


def auto_confirm(answer: bool) -> ConfirmPrompt:
    """Build a prompt that always gives the same answer."""
    async def confirm(message: str) -> bool:
        logger.debug(f"Auto-answering provisioning prompt with {answer}: {message}")
        return answer
    return confirm


@dataclass
class FlowDependencies:
    """Collaborators handed to one flow run."""
    record_source: RecordSource
    provisioner: ResourceProvisioner
    primary: PrimaryChannel
    override_channel: Optional[OverrideChannel] = None
    progress: Optional[ProgressSink] = None
    confirm: Optional[ConfirmPrompt] = None
    on_complete: Optional[CompletionHook] = None
