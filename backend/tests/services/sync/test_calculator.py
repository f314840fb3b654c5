"""
Tests for the value calculator and submission strategy selector.
"""

import pytest

from score_sync.core.config import make_override_scale, round_half_up
from score_sync.models.flow import SubmissionMode
from score_sync.models.records import ExclusionSet, Record, SourceMeasurement
from score_sync.services.sync.calculator import (
    calculate_changes, compute_derived_value, eligible_values
)
from score_sync.services.sync.strategy import select_submission_mode


def make_record(record_id, values, target=None, override=None, labels=None):
    labels = labels or {}
    measurements = tuple(
        SourceMeasurement(mid, record_id, value, labels.get(mid, ""))
        for mid, value in values.items()
    )
    return Record(record_id, target_value=target, measurements=measurements, override_value=override)


class TestRounding:
    """Half-up rounding on the exact binary value."""

    def test_rounds_half_up(self):
        assert round_half_up(2.125, 2) == 2.13
        assert round_half_up(0.125, 2) == 0.13

    def test_binary_representation_wins(self):
        # 2.675 is stored just below the midpoint
        assert round_half_up(2.675, 2) == 2.67

    def test_override_scale(self):
        scale = make_override_scale(25)
        assert scale(3.0) == 75.0
        assert scale(2.67) == 66.75


class TestDerivedValue:
    """Test mean computation over eligible measurements."""

    def test_mean_of_eligible_values(self):
        record = make_record("1", {"a": 3.0, "b": 2.0, "c": 4.0})
        assert compute_derived_value(record, ExclusionSet()) == 3.0

    def test_non_numeric_values_are_ignored(self):
        record = make_record("1", {"a": 3.0, "b": None, "c": "n/a", "d": True})
        assert eligible_values(record, ExclusionSet()) == [3.0]

    def test_excluded_ids_and_labels(self):
        record = make_record(
            "1",
            {"avg": 1.0, "hw": 0.0, "a": 4.0, "b": 3.0},
            labels={"hw": "Unit 1 homework completion"}
        )
        exclusions = ExclusionSet.build(["avg"], ["Homework Completion"])
        assert compute_derived_value(record, exclusions) == 3.5

    def test_blank_label_substrings_are_dropped(self):
        record = make_record("1", {"a": 4.0, "b": 2.0}, labels={"a": "Reading", "b": "Writing"})
        exclusions = ExclusionSet.build(label_substrings=["", "   ", " reading "])

        assert exclusions.label_substrings == ("reading",)
        assert compute_derived_value(record, exclusions) == 2.0

    def test_no_eligible_measurement_is_none(self):
        record = make_record("1", {"avg": 2.0})
        assert compute_derived_value(record, ExclusionSet.build(["avg"])) is None

    def test_mean_is_rounded(self):
        record = make_record("1", {"a": 3.0, "b": 2.0, "c": 2.0})
        assert compute_derived_value(record, ExclusionSet()) == 2.33


class TestCalculateChanges:
    """Test change-set construction."""

    def test_unchanged_records_are_dropped(self):
        records = [
            make_record("1", {"a": 3.0, "b": 2.0}, target=2.5),
            make_record("2", {"a": 4.0}, target=3.0),
        ]
        changes = calculate_changes(records, ExclusionSet())

        assert len(changes) == 1
        assert changes[0].record_id == "2"
        assert changes[0].value == 4.0
        assert changes[0].previous_value == 3.0
        assert changes[0].primary_changed is True

    def test_missing_target_value_counts_as_change(self):
        changes = calculate_changes([make_record("1", {"a": 3.0})], ExclusionSet())
        assert [c.record_id for c in changes] == ["1"]

    def test_records_without_eligible_values_are_skipped(self):
        changes = calculate_changes([make_record("1", {})], ExclusionSet())
        assert changes == []

    def test_primary_comparison_is_exact(self):
        records = [make_record("1", {"a": 3.0}, target=3.0001)]
        assert len(calculate_changes(records, ExclusionSet())) == 1

    def test_override_within_tolerance_is_unchanged(self):
        records = [make_record("1", {"a": 3.0}, target=3.0, override=75.005)]
        changes = calculate_changes(records, ExclusionSet(), override_scale=make_override_scale(25))
        assert changes == []

    def test_override_difference_alone_produces_entry(self):
        records = [make_record("1", {"a": 3.0}, target=3.0, override=70.0)]
        changes = calculate_changes(records, ExclusionSet(), override_scale=make_override_scale(25))

        assert len(changes) == 1
        entry = changes[0]
        assert entry.primary_changed is False
        assert entry.override_changed is True
        assert entry.override_value == 75.0
        assert entry.previous_override == 70.0

    def test_missing_override_is_a_change(self):
        records = [make_record("1", {"a": 2.0}, target=1.0)]
        changes = calculate_changes(records, ExclusionSet(), override_scale=make_override_scale(25))
        assert changes[0].override_changed is True
        assert changes[0].override_value == 50.0

    def test_overrides_ignored_without_scale(self):
        records = [make_record("1", {"a": 3.0}, target=3.0, override=10.0)]
        assert calculate_changes(records, ExclusionSet()) == []


class TestSubmissionStrategy:
    """Test per-record versus batch selection."""

    @pytest.mark.parametrize("count,expected", [
        (1, SubmissionMode.PER_RECORD),
        (24, SubmissionMode.PER_RECORD),
        (25, SubmissionMode.BATCH),
        (300, SubmissionMode.BATCH),
    ])
    def test_threshold_boundary(self, count, expected):
        assert select_submission_mode(count, 25) == expected

    def test_threshold_of_one_always_batches(self):
        assert select_submission_mode(1, 1) == SubmissionMode.BATCH

    def test_invalid_threshold(self):
        with pytest.raises(ValueError):
            select_submission_mode(5, 0)
