"""
Value Calculator

Computes each record's derived value as the mean of its eligible source
measurements and keeps only the records that differ from the remote.
"""

import logging
from typing import Callable, Iterable, List, Optional

from score_sync.core.config import round_half_up
from score_sync.models.records import ChangeEntry, ExclusionSet, Record


logger = logging.getLogger(__name__)


def eligible_values(record: Record, exclusions: ExclusionSet) -> List[float]:
    """Numeric, non-excluded measurement values of a record."""
    values = []
    for measurement in record.measurements:
        value = measurement.value
        # bool is an int subclass but never a score
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            continue
        if exclusions.excludes(measurement):
            continue
        values.append(float(value))
    return values


def compute_derived_value(record: Record, exclusions: ExclusionSet) -> Optional[float]:
    """
    Mean of the eligible measurements rounded to two decimals.

    Returns None when the record has no eligible measurement, which is
    different from a mean of zero.
    """
    values = eligible_values(record, exclusions)
    if not values:
        return None
    return round_half_up(sum(values) / len(values), 2)


def _override_differs(
    expected: float,
    current: Optional[float],
    tolerance: float
) -> bool:
    if current is None:
        return True
    return abs(current - expected) > tolerance


def calculate_changes(
    records: Iterable[Record],
    exclusions: ExclusionSet,
    override_scale: Optional[Callable[[float], float]] = None,
    override_tolerance: float = 0.01
) -> List[ChangeEntry]:
    """
    Build the change set for one run.

    Args:
        records: Snapshot of source records
        exclusions: Measurements to ignore for every record
        override_scale: Transform onto the override scale; None disables the
            override channel comparison
        override_tolerance: Absolute tolerance for override comparison

    Returns:
        One entry per record whose derived value differs from its target
        value, or whose override differs from the scaled derived value
    """
    changes = []
    skipped = 0

    for record in records:
        new_value = compute_derived_value(record, exclusions)
        if new_value is None:
            skipped += 1
            continue

        primary_changed = record.target_value != new_value

        override_value = None
        override_changed = False
        if override_scale is not None:
            override_value = override_scale(new_value)
            override_changed = _override_differs(
                override_value, record.override_value, override_tolerance
            )

        if not primary_changed and not override_changed:
            continue

        logger.debug(
            f"Record {record.record_id}: {record.target_value} -> {new_value} "
            f"(override {record.override_value} -> {override_value})"
        )
        changes.append(ChangeEntry(
            record_id=record.record_id,
            value=new_value,
            previous_value=record.target_value,
            override_value=override_value,
            previous_override=record.override_value,
            primary_changed=primary_changed,
            override_changed=override_changed,
        ))

    if skipped:
        logger.debug(f"Skipped {skipped} records with no eligible measurements")
    logger.info(f"Calculated {len(changes)} changed records")
    return changes
