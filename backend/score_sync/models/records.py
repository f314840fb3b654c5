"""
Value objects for the records being synchronized.
"""

from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Optional, Tuple


class Channel(str, Enum):
    """Remote surface a value is written to."""
    PRIMARY = "primary"
    OVERRIDE = "override"


@dataclass(frozen=True)
class SourceMeasurement:
    """One raw input contributing to a record's derived value."""
    measurement_id: str
    record_id: str
    value: Optional[float]
    label: str = ""


@dataclass(frozen=True)
class Record:
    """A unit being synchronized, with its current remote state."""
    record_id: str
    target_value: Optional[float] = None
    measurements: Tuple[SourceMeasurement, ...] = ()
    override_value: Optional[float] = None


@dataclass(frozen=True)
class ExclusionSet:
    """Measurements ignored for every record in one run."""
    measurement_ids: FrozenSet[str] = frozenset()
    label_substrings: Tuple[str, ...] = ()

    @classmethod
    def build(cls, measurement_ids=(), label_substrings=()) -> "ExclusionSet":
        return cls(
            measurement_ids=frozenset(str(m) for m in measurement_ids),
            label_substrings=tuple(s.strip() for s in label_substrings if s and s.strip()),
        )

    def excludes(self, measurement: SourceMeasurement) -> bool:
        if str(measurement.measurement_id) in self.measurement_ids:
            return True
        label = (measurement.label or "").lower()
        return any(substring.lower() in label for substring in self.label_substrings)


@dataclass(frozen=True)
class ChangeEntry:
    """A record whose derived or override value differs from the remote."""
    record_id: str
    value: float
    previous_value: Optional[float] = None
    override_value: Optional[float] = None
    previous_override: Optional[float] = None
    primary_changed: bool = True
    override_changed: bool = False


@dataclass
class RetryRecord:
    """Attempt bookkeeping for one record on one channel."""
    record_id: str
    channel: Channel = Channel.PRIMARY
    attempts: int = 0
    last_error: Optional[str] = None
    succeeded: bool = False
    value: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            'record_id': self.record_id,
            'channel': self.channel.value,
            'attempts': self.attempts,
            'last_error': self.last_error,
            'succeeded': self.succeeded,
            'value': self.value,
        }


@dataclass(frozen=True)
class Mismatch:
    """A record whose read-back value did not match the expected value."""
    record_id: str
    expected: Optional[float]
    actual: Optional[float] = None
    reason: Optional[str] = None
    correlation_id: Optional[str] = None

    @property
    def difference(self) -> Optional[float]:
        if self.expected is None or self.actual is None:
            return None
        return abs(self.actual - self.expected)

    def to_dict(self) -> dict:
        return {
            'record_id': self.record_id,
            'expected': self.expected,
            'actual': self.actual,
            'reason': self.reason,
            'correlation_id': self.correlation_id,
        }


ChangeSet = Tuple[ChangeEntry, ...]
