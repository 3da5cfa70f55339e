"""Unit tests for the rollout engine."""

import threading
from datetime import datetime, timezone

import pytest

from stackset_rollout.stackset.engine import RolloutEngine, RolloutError, ToleranceExceededError
from stackset_rollout.stackset.models import (
    InvalidPreferencesError,
    OperationPreferences,
    OperationStatus,
    RegionConcurrencyType,
    RolloutOperation,
    Target,
    TargetStatus,
)
from stackset_rollout.stackset.resolver import InvalidScopeError
from stackset_rollout.stackset.tracker import OperationNotFoundError, OperationTracker


def make_targets(count, regions=("us-east-1",)):
    return [
        Target(account_id=f"{index:012d}", region=region)
        for region in regions
        for index in range(1, count + 1)
    ]


def make_preferences(**kwargs):
    values = {"failure_tolerance_count": 0, "max_concurrent_count": 1}
    if "failure_tolerance_percentage" in kwargs:
        values.pop("failure_tolerance_count")
    if "max_concurrent_percentage" in kwargs:
        values.pop("max_concurrent_count")
    values.update(kwargs)
    return OperationPreferences(**values)


class TestRolloutEngine:
    """Test cases for RolloutEngine class."""

    @pytest.fixture(autouse=True)
    def setup(self, template):
        """Set up test fixtures."""
        self.template = template
        self.tracker = OperationTracker()

    def make_operation(self, targets, preferences, operation_id="op-1"):
        return RolloutOperation(
            operation_id=operation_id,
            template=self.template,
            targets=targets,
            preferences=preferences,
            created_at=datetime.now(timezone.utc),
        )

    def test_all_targets_succeed(self, fake_backend):
        engine = RolloutEngine(fake_backend, self.tracker)
        targets = make_targets(3, regions=("us-east-1", "eu-west-1"))

        result = engine.execute(self.make_operation(targets, make_preferences(max_concurrent_count=2)))

        assert result.status == OperationStatus.SUCCEEDED
        assert set(result.succeeded) == set(targets)
        assert result.failed == []
        assert result.cancelled == []
        assert set(fake_backend.calls) == set(targets)

        snapshot = self.tracker.status("op-1")
        assert snapshot.status == OperationStatus.SUCCEEDED
        assert all(s.status == TargetStatus.SUCCEEDED for s in snapshot.target_states.values())
        assert snapshot.target_states[targets[0]].stack_id == "stack-000000000001-us-east-1"

    def test_concurrency_never_exceeds_limit(self, backend_factory):
        backend = backend_factory(delay=0.05)
        engine = RolloutEngine(backend, self.tracker)

        result = engine.execute(self.make_operation(
            make_targets(7), make_preferences(max_concurrent_count=3)))

        assert result.status == OperationStatus.SUCCEEDED
        assert result.concurrency_limit == 3
        assert backend.max_in_flight <= 3
        assert len(backend.calls) == 7

    def test_tolerance_exceeded_halts_after_batch(self, backend_factory):
        targets = make_targets(10)
        backend = backend_factory(fail=[targets[0]])
        engine = RolloutEngine(backend, self.tracker)

        result = engine.execute(self.make_operation(
            targets, make_preferences(failure_tolerance_count=0, max_concurrent_count=2)))

        assert result.status == OperationStatus.FAILED
        assert result.failure_reason == "TOLERANCE_EXCEEDED"
        assert len(backend.calls) == 2
        assert len(result.cancelled) == 8
        assert result.failed[0].target == targets[0]

        snapshot = self.tracker.status("op-1")
        cancelled = snapshot.targets_with_status(TargetStatus.CANCELLED)
        assert cancelled == targets[2:]
        assert snapshot.target_states[targets[2]].reason == "TOLERANCE_EXCEEDED"

        with pytest.raises(ToleranceExceededError):
            result.raise_for_status()

    def test_failures_within_tolerance_succeed(self, backend_factory):
        targets = make_targets(4)
        backend = backend_factory(fail=[targets[1]])
        engine = RolloutEngine(backend, self.tracker)

        result = engine.execute(self.make_operation(
            targets, make_preferences(failure_tolerance_count=1)))

        assert result.status == OperationStatus.SUCCEEDED
        assert len(result.failed) == 1
        assert len(backend.calls) == 4
        result.raise_for_status()

    def test_percentage_tolerance(self, backend_factory):
        targets = make_targets(10)
        backend = backend_factory(fail=targets[:3])
        engine = RolloutEngine(backend, self.tracker)

        result = engine.execute(self.make_operation(
            targets, make_preferences(failure_tolerance_percentage=25)))

        # 25% of 10 targets floors to 2 tolerated failures
        assert result.failure_threshold == 2
        assert result.status == OperationStatus.FAILED
        assert len(backend.calls) == 3
        assert len(result.cancelled) == 7

    def test_percentage_concurrency_is_clamped(self, fake_backend):
        engine = RolloutEngine(fake_backend, self.tracker)

        batches = engine.plan_batches(make_targets(3), make_preferences(max_concurrent_percentage=10))

        assert [len(b) for b in batches] == [1, 1, 1]

    def test_count_concurrency_is_clamped_to_target_count(self, fake_backend):
        engine = RolloutEngine(fake_backend, self.tracker)

        result = engine.execute(self.make_operation(
            make_targets(3), make_preferences(max_concurrent_count=50)))

        assert result.concurrency_limit == 3

    def test_sequential_regions_complete_in_order(self, backend_factory):
        backend = backend_factory(delay=0.01)
        engine = RolloutEngine(backend, self.tracker)
        targets = make_targets(4, regions=("us-east-1", "eu-west-1"))

        engine.execute(self.make_operation(targets, make_preferences(
            max_concurrent_count=2, region_concurrency_type=RegionConcurrencyType.SEQUENTIAL)))

        events = [e for e in self.tracker.events("op-1") if e.target is not None]
        first_eu_running = next(
            i for i, e in enumerate(events)
            if e.target.region == "eu-west-1" and e.status == TargetStatus.RUNNING
        )
        us_terminal = [
            i for i, e in enumerate(events)
            if e.target.region == "us-east-1" and e.status.is_terminal
        ]
        assert len(us_terminal) == 4
        assert max(us_terminal) < first_eu_running

    def test_sequential_batches_by_region(self, fake_backend):
        engine = RolloutEngine(fake_backend, self.tracker)
        targets = make_targets(3, regions=("us-east-1", "eu-west-1"))

        batches = engine.plan_batches(targets, make_preferences(
            max_concurrent_count=2, region_concurrency_type=RegionConcurrencyType.SEQUENTIAL))

        assert [len(b) for b in batches] == [2, 1, 2, 1]
        assert all(len({t.region for t in batch}) == 1 for batch in batches)

    def test_parallel_batches_span_regions(self, fake_backend):
        engine = RolloutEngine(fake_backend, self.tracker)
        targets = make_targets(2, regions=("us-east-1", "eu-west-1"))

        parallel = engine.plan_batches(targets, make_preferences(max_concurrent_count=2))
        sequential = engine.plan_batches(targets, make_preferences(
            max_concurrent_count=2, region_concurrency_type=RegionConcurrencyType.SEQUENTIAL))

        assert parallel != sequential
        assert all({t.region for t in batch} == {"us-east-1", "eu-west-1"} for batch in parallel)
        assert parallel[0] == [Target("000000000001", "us-east-1"),
                               Target("000000000001", "eu-west-1")]

    def test_parallel_batches_interleave_uneven_regions(self, fake_backend):
        engine = RolloutEngine(fake_backend, self.tracker)
        targets = make_targets(3, regions=("us-east-1",)) + make_targets(1, regions=("eu-west-1",))

        batches = engine.plan_batches(targets, make_preferences(max_concurrent_count=4))

        assert [len(b) for b in batches] == [4]
        assert [t.region for t in batches[0]] == [
            "us-east-1", "eu-west-1", "us-east-1", "us-east-1"
        ]

    def test_parallel_regions_start_before_first_region_drains(self, fake_backend):
        engine = RolloutEngine(fake_backend, self.tracker)
        targets = make_targets(4, regions=("us-east-1", "eu-west-1"))

        engine.execute(self.make_operation(targets, make_preferences(max_concurrent_count=2)))

        events = [e for e in self.tracker.events("op-1") if e.target is not None]
        first_eu_running = next(
            i for i, e in enumerate(events)
            if e.target.region == "eu-west-1" and e.status == TargetStatus.RUNNING
        )
        us_terminal = [
            i for i, e in enumerate(events)
            if e.target.region == "us-east-1" and e.status.is_terminal
        ]
        assert first_eu_running < max(us_terminal)

    def test_empty_targets_raise_without_calls(self, fake_backend):
        engine = RolloutEngine(fake_backend, self.tracker)

        with pytest.raises(InvalidScopeError):
            engine.execute(self.make_operation([], make_preferences()))

        assert fake_backend.calls == []
        assert self.tracker.list_operations() == []

    def test_invalid_preferences_raise(self, fake_backend):
        engine = RolloutEngine(fake_backend, self.tracker)
        preferences = OperationPreferences(failure_tolerance_count=0, max_concurrent_count=1,
                                           max_concurrent_percentage=50)

        with pytest.raises(InvalidPreferencesError):
            engine.execute(self.make_operation(make_targets(2), preferences))

        assert fake_backend.calls == []

    def test_conflict_reason_is_recorded(self, backend_factory):
        targets = make_targets(2)
        backend = backend_factory(conflict=[targets[1]])
        engine = RolloutEngine(backend, self.tracker)

        result = engine.execute(self.make_operation(
            targets, make_preferences(failure_tolerance_count=1)))

        assert result.failed[0].reason == "CONFLICT"
        state = self.tracker.status("op-1").target_states[targets[1]]
        assert state.status == TargetStatus.FAILED
        assert state.reason == "CONFLICT"
        assert "already exists" in state.error

    def test_unexpected_backend_error_is_a_target_failure(self, fake_backend):
        targets = make_targets(2)

        def explode(target):
            if target == targets[0]:
                raise RuntimeError("connection reset")

        fake_backend.before_deploy = explode
        engine = RolloutEngine(fake_backend, self.tracker)

        result = engine.execute(self.make_operation(
            targets, make_preferences(failure_tolerance_count=1)))

        assert result.status == OperationStatus.SUCCEEDED
        assert "connection reset" in result.failed[0].error
        assert self.tracker.status("op-1").target_states[targets[0]].status == TargetStatus.FAILED

    def test_stop_cancels_remaining_batches(self, fake_backend):
        engine = RolloutEngine(fake_backend, self.tracker)
        stop_results = []
        fake_backend.before_deploy = lambda target: stop_results.append(engine.stop("op-1"))

        result = engine.execute(self.make_operation(make_targets(5), make_preferences()))

        assert stop_results[0] is True
        assert result.status == OperationStatus.STOPPED
        assert result.failure_reason == "STOPPED"
        assert len(fake_backend.calls) == 1
        assert len(result.cancelled) == 4

        snapshot = self.tracker.status("op-1")
        assert snapshot.status == OperationStatus.STOPPED
        assert len(snapshot.targets_with_status(TargetStatus.CANCELLED)) == 4

    def test_stop_finished_operation_returns_false(self, fake_backend):
        engine = RolloutEngine(fake_backend, self.tracker)
        engine.execute(self.make_operation(make_targets(1), make_preferences()))

        assert engine.stop("op-1") is False

    def test_stop_unknown_operation_raises(self, fake_backend):
        engine = RolloutEngine(fake_backend, self.tracker)

        with pytest.raises(OperationNotFoundError):
            engine.stop("missing")

    def test_status_reads_during_rollout_are_monotonic(self, fake_backend):
        engine = RolloutEngine(fake_backend, self.tracker)
        observed = []
        lock = threading.Lock()

        def observe(target):
            with lock:
                snapshot = self.tracker.status("op-1")
                observed.append({t: s.status.rank for t, s in snapshot.target_states.items()})

        fake_backend.before_deploy = observe
        targets = make_targets(6)
        engine.execute(self.make_operation(targets, make_preferences(max_concurrent_count=2)))

        final = self.tracker.status("op-1")
        observed.append({t: s.status.rank for t, s in final.target_states.items()})
        for earlier, later in zip(observed, observed[1:]):
            assert all(later[t] >= earlier[t] for t in targets)

    def test_progress_callback_receives_every_result(self, fake_backend):
        engine = RolloutEngine(fake_backend, self.tracker)
        seen = []
        targets = make_targets(3)

        engine.execute(self.make_operation(targets, make_preferences()), progress_callback=seen.append)

        assert [r.target for r in seen] == targets

    def test_failing_progress_callback_does_not_strand_operation(self, fake_backend):
        engine = RolloutEngine(fake_backend, self.tracker)
        targets = make_targets(3)

        def broken_stdout(result):
            raise OSError("Broken pipe")

        result = engine.execute(self.make_operation(targets, make_preferences()),
                                progress_callback=broken_stdout)

        assert result.status == OperationStatus.SUCCEEDED
        assert fake_backend.calls == targets
        snapshot = self.tracker.status("op-1")
        assert snapshot.status == OperationStatus.SUCCEEDED
        assert snapshot.targets_with_status(TargetStatus.SUCCEEDED) == targets

    def test_interrupt_marks_operation_terminal(self, fake_backend):
        engine = RolloutEngine(fake_backend, self.tracker)
        targets = make_targets(3)

        def interrupt(result):
            raise KeyboardInterrupt

        with pytest.raises(KeyboardInterrupt):
            engine.execute(self.make_operation(targets, make_preferences()),
                           progress_callback=interrupt)

        snapshot = self.tracker.status("op-1")
        assert snapshot.status == OperationStatus.FAILED
        assert snapshot.failure_reason == "INTERRUPTED"
        assert snapshot.target_states[targets[0]].status == TargetStatus.SUCCEEDED
        assert snapshot.targets_with_status(TargetStatus.CANCELLED) == targets[1:]
        assert engine.stop("op-1") is False

    def test_execute_finished_operation_raises(self, fake_backend):
        engine = RolloutEngine(fake_backend, self.tracker)
        operation = self.make_operation(make_targets(2), make_preferences())
        engine.execute(operation)
        events_before = len(self.tracker.events("op-1"))

        with pytest.raises(RolloutError, match="already ended SUCCEEDED"):
            engine.execute(operation)

        assert len(fake_backend.calls) == 2
        assert len(self.tracker.events("op-1")) == events_before

    def test_execute_pre_registered_operation(self, fake_backend):
        engine = RolloutEngine(fake_backend, self.tracker)
        operation = self.make_operation(make_targets(2), make_preferences())
        self.tracker.create(operation)

        result = engine.execute(operation)

        assert result.status == OperationStatus.SUCCEEDED
        assert self.tracker.list_operations() == ["op-1"]
