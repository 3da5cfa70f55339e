"""Unit tests for rollout data model."""

import pytest

from stackset_rollout.stackset.engine import ToleranceExceededError
from stackset_rollout.stackset.models import (
    InvalidPreferencesError,
    OperationPreferences,
    OperationStatus,
    RegionConcurrencyType,
    RolloutOperation,
    RolloutResult,
    Target,
    TargetStatus,
    Template,
)


class TestOperationPreferences:
    """Test cases for OperationPreferences."""

    def test_default_is_valid(self):
        preferences = OperationPreferences.default()

        preferences.validate()
        assert preferences.failure_tolerance_count == 0
        assert preferences.max_concurrent_count == 1

    @pytest.mark.parametrize("kwargs", [
        {"max_concurrent_count": 1},
        {"failure_tolerance_count": 0, "failure_tolerance_percentage": 10, "max_concurrent_count": 1},
        {"failure_tolerance_count": 0},
        {"failure_tolerance_count": 0, "max_concurrent_count": 2, "max_concurrent_percentage": 50},
    ])
    def test_exactly_one_of_count_or_percentage(self, kwargs):
        with pytest.raises(InvalidPreferencesError, match="Exactly one of"):
            OperationPreferences(**kwargs).validate()

    def test_negative_values_rejected(self):
        preferences = OperationPreferences(failure_tolerance_count=-1, max_concurrent_count=1)

        with pytest.raises(InvalidPreferencesError, match=">= 0"):
            preferences.validate()

    def test_percentage_above_100_rejected(self):
        preferences = OperationPreferences(
            failure_tolerance_count=0, max_concurrent_percentage=150
        )

        with pytest.raises(InvalidPreferencesError, match="between 0 and 100"):
            preferences.validate()

    def test_failure_threshold_count(self):
        preferences = OperationPreferences(failure_tolerance_count=3, max_concurrent_count=1)

        assert preferences.failure_threshold(100) == 3

    def test_failure_threshold_percentage_rounds_down(self):
        preferences = OperationPreferences(
            failure_tolerance_percentage=25, max_concurrent_count=1
        )

        assert preferences.failure_threshold(10) == 2
        assert preferences.failure_threshold(3) == 0

    def test_concurrency_limit_clamped_to_group_size(self):
        preferences = OperationPreferences(failure_tolerance_count=0, max_concurrent_count=50)

        assert preferences.concurrency_limit(4) == 4

    def test_concurrency_limit_percentage_at_least_one(self):
        preferences = OperationPreferences(
            failure_tolerance_count=0, max_concurrent_percentage=10
        )

        assert preferences.concurrency_limit(5) == 1
        assert preferences.concurrency_limit(40) == 4

    def test_concurrency_limit_zero_count_means_one(self):
        preferences = OperationPreferences(failure_tolerance_count=0, max_concurrent_count=0)

        assert preferences.concurrency_limit(5) == 1

    def test_to_dict(self):
        preferences = OperationPreferences(
            failure_tolerance_count=1,
            max_concurrent_percentage=50,
            region_concurrency_type=RegionConcurrencyType.SEQUENTIAL,
        )

        assert preferences.to_dict()["region_concurrency_type"] == "SEQUENTIAL"
        assert preferences.to_dict()["max_concurrent_percentage"] == 50


class TestTemplate:
    """Test cases for Template versioning."""

    def test_version_ignores_capability_and_parameter_order(self):
        first = Template(name="t", body="Resources: {}",
                         capabilities=("CAPABILITY_IAM", "CAPABILITY_NAMED_IAM"),
                         parameters={"A": "1", "B": "2"})
        second = Template(name="t", body="Resources: {}",
                          capabilities=("CAPABILITY_NAMED_IAM", "CAPABILITY_IAM"),
                          parameters={"B": "2", "A": "1"})

        assert first.version == second.version

    def test_version_changes_with_body(self):
        first = Template(name="t", body="Resources: {}")
        second = Template(name="t", body="Resources: {Bucket: {}}")

        assert first.version != second.version
        assert first.ref.name == "t"

    def test_version_changes_with_parameters(self):
        first = Template(name="t", body="x", parameters={"A": "1"})
        second = Template(name="t", body="x", parameters={"A": "2"})

        assert first.version != second.version


class TestRolloutOperation:
    """Test cases for RolloutOperation."""

    def test_targets_start_pending(self, template):
        targets = [Target("111111111111", "us-east-1"), Target("222222222222", "us-east-1")]
        operation = RolloutOperation(
            operation_id="op-1",
            template=template,
            targets=targets,
            preferences=OperationPreferences.default(),
        )

        assert operation.status is OperationStatus.PENDING
        assert operation.targets_with_status(TargetStatus.PENDING) == targets


class TestRolloutResult:
    """Test cases for RolloutResult."""

    def test_raise_for_status_on_tolerance_exceeded(self):
        result = RolloutResult(operation_id="op-1", status=OperationStatus.FAILED,
                               failure_reason="TOLERANCE_EXCEEDED")

        with pytest.raises(ToleranceExceededError, match="op-1"):
            result.raise_for_status()

    def test_raise_for_status_noop_on_success(self):
        result = RolloutResult(operation_id="op-1", status=OperationStatus.SUCCEEDED)

        result.raise_for_status()
