"""
Shared fixtures: an in-memory Canvas double implementing every collaborator
contract, a recording progress sink and a flow config without delays.
"""

import pytest
from typing import Dict, List, Optional

from score_sync.core.config import FlowConfig, round_half_up
from score_sync.core.errors import FatalRemoteError, TransientRemoteError
from score_sync.core.interfaces import FlowDependencies, ResourceRef, ResourceSpec
from score_sync.models.flow import ResourceKind
from score_sync.models.records import Record, SourceMeasurement


TARGET_OUTCOME = "avg-1"


class RecordingSink:
    """Progress sink that keeps every notification."""

    def __init__(self):
        self.messages: List[str] = []
        self.elapsed: List[Optional[float]] = []

    def notify(self, message, elapsed_seconds=None):
        self.messages.append(message)
        self.elapsed.append(elapsed_seconds)


class FakeCanvas:
    """
    In-memory remote.

    ``scores`` maps a user to ``{outcome_id: score}``; the target outcome's
    current value lives in ``primary``. Writes land in ``primary`` at once
    unless a batch job is pending.
    """

    def __init__(self, scores: Dict[str, Dict[str, float]], titles: Optional[Dict[str, str]] = None,
                 with_resources: bool = True, scale: float = 25.0):
        self.scores = scores
        self.titles = titles or {}
        self.primary: Dict[str, Optional[float]] = {}
        self.overrides: Dict[str, float] = {}
        self.correlation_ids = {user: f"enr-{user}" for user in scores}
        self.scale = scale

        self.resources: Dict[ResourceKind, Optional[ResourceRef]] = {
            ResourceKind.OUTCOME: ResourceRef(TARGET_OUTCOME) if with_resources else None,
            ResourceKind.ASSIGNMENT: ResourceRef("asg-1") if with_resources else None,
            ResourceKind.RUBRIC: ResourceRef("rub-1", criterion_id="crit-1") if with_resources else None,
        }
        self.created: List[ResourceKind] = []
        self.create_succeeds = True

        self.write_failures: Dict[str, int] = {}
        self.write_errors: Dict[str, Exception] = {}
        self.writes: List[tuple] = []
        self.override_writes: List[tuple] = []
        self.override_failures: Dict[str, int] = {}

        self.job_states: List[str] = ["queued", "running", "completed"]
        self.batches: List[Dict[str, float]] = []
        self._pending_batch: Optional[Dict[str, float]] = None
        self.status_reads = 0

        self.correlation_fetches = 0
        self.overrides_enabled = False
        self.fetch_calls = 0

    def sync_all(self):
        """Make the remote match the current scores exactly."""
        for user, by_outcome in self.scores.items():
            values = [v for k, v in by_outcome.items() if k != TARGET_OUTCOME]
            if values:
                mean = round_half_up(sum(values) / len(values), 2)
                self.primary[user] = mean
                self.overrides[self.correlation_ids[user]] = round_half_up(mean * self.scale, 2)

    # Record source
    async def fetch_records(self, scope_id, target_measurement_id=None, correlation_ids=None):
        self.fetch_calls += 1
        if correlation_ids is None:
            correlation_ids = self.correlation_ids
        records = []
        for user, by_outcome in self.scores.items():
            measurements = tuple(
                SourceMeasurement(outcome_id, user, value, self.titles.get(outcome_id, ""))
                for outcome_id, value in by_outcome.items()
            )
            records.append(Record(
                record_id=user,
                target_value=self.primary.get(user),
                measurements=measurements,
                override_value=self.overrides.get(correlation_ids.get(user))
            ))
        return records

    # Resource provisioner
    async def find_resource(self, spec: ResourceSpec):
        return self.resources[spec.kind]

    async def create_resource(self, spec: ResourceSpec):
        self.created.append(spec.kind)
        if not self.create_succeeds:
            return None
        ids = {
            ResourceKind.OUTCOME: ResourceRef(TARGET_OUTCOME),
            ResourceKind.ASSIGNMENT: ResourceRef("asg-new"),
            ResourceKind.RUBRIC: ResourceRef("rub-new", criterion_id="crit-new"),
        }
        self.resources[spec.kind] = ids[spec.kind]
        return ids[spec.kind].resource_id

    # Primary channel
    async def write_value(self, target, record_id, value):
        self.writes.append((record_id, value))
        if record_id in self.write_errors:
            raise self.write_errors[record_id]
        remaining = self.write_failures.get(record_id, 0)
        if remaining:
            self.write_failures[record_id] = remaining - 1
            raise TransientRemoteError(f"503 for {record_id}", status_code=503)
        self.primary[record_id] = value

    async def read_values(self, target, record_ids):
        return {r: self.primary[r] for r in record_ids if r in self.primary}

    async def submit_batch(self, target, values):
        self.batches.append(dict(values))
        self._pending_batch = dict(values)
        return f"job-{len(self.batches)}"

    async def read_job_status(self, job_handle):
        index = min(self.status_reads, len(self.job_states) - 1)
        self.status_reads += 1
        state = self.job_states[index]
        if state == "completed" and self._pending_batch is not None:
            self.primary.update(self._pending_batch)
            self._pending_batch = None
        return state

    # Override channel
    async def ensure_overrides_enabled(self, scope_id):
        self.overrides_enabled = True

    async def fetch_correlation_ids(self, scope_id):
        self.correlation_fetches += 1
        return dict(self.correlation_ids)

    async def write_override(self, correlation_id, value):
        self.override_writes.append((correlation_id, value))
        remaining = self.override_failures.get(correlation_id, 0)
        if remaining:
            self.override_failures[correlation_id] = remaining - 1
            raise FatalRemoteError("GraphQL error: override rejected")
        self.overrides[correlation_id] = value

    async def read_overrides(self, scope_id):
        return dict(self.overrides)


def make_scores(count: int) -> Dict[str, Dict[str, float]]:
    """``count`` students with two outcome scores each."""
    return {
        str(100 + i): {"o-1": 3.0, "o-2": 2.0 + (i % 3) * 0.5}
        for i in range(count)
    }


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def fast_config():
    return FlowConfig(
        per_record_threshold=25,
        deferred_pass_delay=0,
        poll_interval=0,
        poll_timeout=5,
        verify_max_attempts=3,
        verify_wait=0,
        override_verify_max_retries=2,
        override_verify_retry_delay=0,
    )


@pytest.fixture
def fake_canvas():
    return FakeCanvas(make_scores(5))


def make_deps(canvas: FakeCanvas, sink=None, confirm=None, on_complete=None,
              with_overrides: bool = True) -> FlowDependencies:
    return FlowDependencies(
        record_source=canvas,
        provisioner=canvas,
        primary=canvas,
        override_channel=canvas if with_overrides else None,
        progress=sink,
        confirm=confirm,
        on_complete=on_complete
    )
