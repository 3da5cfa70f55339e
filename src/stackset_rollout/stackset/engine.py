"""Rollout engine for multi-account, multi-region deployments.

This module provides the RolloutEngine class which applies a template to
every target of an operation in concurrency-bounded batches, enforces the
failure tolerance and supports stopping an operation in flight.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from itertools import zip_longest
from typing import Callable, Dict, List, Optional

from .backend import ProvisioningBackend, TargetDeploymentFailedError
from .models import (
    DeploymentResult,
    OperationPreferences,
    OperationStatus,
    RegionConcurrencyType,
    RolloutOperation,
    RolloutResult,
    Target,
    TargetStatus,
)
from .resolver import InvalidScopeError
from .tracker import OperationNotFoundError, OperationTracker


logger = logging.getLogger(__name__)


class RolloutError(Exception):
    """Base exception for rollout execution."""
    pass


class ToleranceExceededError(RolloutError):
    """Raised when target failures exceed the operation's failure tolerance."""
    pass


ProgressCallback = Callable[[DeploymentResult], None]


class RolloutEngine:
    """Executes rollout operations against a provisioning backend.

    Batches are dispatched one at a time; targets within a batch deploy
    concurrently on a thread pool. Failure tolerance and stop requests are
    checked between batches, so a halted operation never has more than one
    batch of targets attempted past the point of failure.
    """

    def __init__(self, backend: ProvisioningBackend, tracker: OperationTracker) -> None:
        """Initialize the rollout engine.

        Args:
            backend: Provisioning backend applying templates to targets
            tracker: Operation tracker receiving status events
        """
        self.backend = backend
        self.tracker = tracker
        self._stop_requests: Dict[str, threading.Event] = {}

    def plan_batches(self, targets: List[Target],
                     preferences: OperationPreferences) -> List[List[Target]]:
        """Partition targets into dispatch batches.

        SEQUENTIAL groups targets by region (in order of first appearance)
        and sizes each region's batches from that region's target count.
        PARALLEL interleaves the regions round-robin so every batch spans
        regions, and sizes batches from the total target count.
        """
        groups: Dict[str, List[Target]] = {}
        for target in targets:
            groups.setdefault(target.region, []).append(target)

        if preferences.region_concurrency_type is RegionConcurrencyType.SEQUENTIAL:
            group_list = list(groups.values())
        else:
            interleaved = [
                target
                for column in zip_longest(*groups.values())
                for target in column
                if target is not None
            ]
            group_list = [interleaved]

        batches = []
        for group in group_list:
            limit = preferences.concurrency_limit(len(group))
            for start in range(0, len(group), limit):
                batches.append(group[start:start + limit])
        return batches

    def execute(self, operation: RolloutOperation,
                progress_callback: Optional[ProgressCallback] = None) -> RolloutResult:
        """Execute a rollout operation to completion.

        Args:
            operation: Operation to execute
            progress_callback: Optional callable invoked with each target result

        Returns:
            RolloutResult with the aggregated outcome

        Raises:
            InvalidScopeError: When the operation has no targets
            InvalidPreferencesError: When the preferences are invalid
            RolloutError: When the operation is running or has already finished
        """
        if not operation.targets:
            raise InvalidScopeError(
                f"Operation {operation.operation_id} has an empty target set"
            )
        operation.preferences.validate()

        operation_id = operation.operation_id
        if operation_id in self._stop_requests:
            raise RolloutError(f"Operation {operation_id} is already running")
        if operation_id in self.tracker.list_operations():
            tracked_status = self.tracker.status(operation_id).status
            if tracked_status.is_terminal:
                raise RolloutError(
                    f"Operation {operation_id} already ended {tracked_status.value}"
                )
        else:
            self.tracker.create(operation)
        stop_event = self._stop_requests.setdefault(operation_id, threading.Event())

        preferences = operation.preferences
        threshold = preferences.failure_threshold(len(operation.targets))
        batches = self.plan_batches(operation.targets, preferences)
        concurrency = max(len(batch) for batch in batches)

        logger.info(
            f"Starting operation {operation_id}: {len(operation.targets)} targets in "
            f"{len(batches)} batches, concurrency {concurrency}, failure tolerance {threshold}"
        )
        self.tracker.record_operation(operation_id, OperationStatus.IN_PROGRESS)

        succeeded: List[Target] = []
        failed: List[DeploymentResult] = []
        remaining = list(batches)
        halted_reason = None

        try:
            with ThreadPoolExecutor(max_workers=concurrency) as executor:
                while remaining:
                    if len(failed) > threshold:
                        halted_reason = "TOLERANCE_EXCEEDED"
                        break
                    if stop_event.is_set():
                        halted_reason = "STOPPED"
                        break

                    batch = remaining.pop(0)
                    futures = {}
                    for target in batch:
                        self.tracker.record_target(operation_id, target, TargetStatus.RUNNING)
                        futures[executor.submit(self._deploy_target, operation, target)] = target

                    for future in as_completed(futures):
                        result = future.result()
                        if result.succeeded:
                            succeeded.append(result.target)
                        else:
                            failed.append(result)
                        if progress_callback:
                            self._notify(progress_callback, result)
        except BaseException:
            # In-flight targets settle when the executor shuts down
            interrupted = [target for batch in remaining for target in batch]
            for target in interrupted:
                self.tracker.record_target(
                    operation_id, target, TargetStatus.CANCELLED, reason="INTERRUPTED"
                )
            self.tracker.record_operation(operation_id, OperationStatus.FAILED,
                                          reason="INTERRUPTED")
            logger.error(
                f"Operation {operation_id} interrupted, {len(interrupted)} targets cancelled"
            )
            raise
        finally:
            self._stop_requests.pop(operation_id, None)

        cancelled = [target for batch in remaining for target in batch]
        for target in cancelled:
            self.tracker.record_target(
                operation_id, target, TargetStatus.CANCELLED, reason=halted_reason
            )

        if len(failed) > threshold:
            status, failure_reason = OperationStatus.FAILED, "TOLERANCE_EXCEEDED"
            logger.error(
                f"Operation {operation_id} failed: {len(failed)} failures exceeded "
                f"tolerance of {threshold}, {len(cancelled)} targets cancelled"
            )
        elif halted_reason == "STOPPED":
            status, failure_reason = OperationStatus.STOPPED, "STOPPED"
            logger.warning(
                f"Operation {operation_id} stopped, {len(cancelled)} targets cancelled"
            )
        else:
            status, failure_reason = OperationStatus.SUCCEEDED, None
            logger.info(
                f"Operation {operation_id} succeeded: {len(succeeded)} succeeded, "
                f"{len(failed)} failed within tolerance"
            )

        self.tracker.record_operation(operation_id, status, reason=failure_reason)

        return RolloutResult(
            operation_id=operation_id,
            status=status,
            succeeded=succeeded,
            failed=failed,
            cancelled=cancelled,
            failure_threshold=threshold,
            concurrency_limit=concurrency,
            failure_reason=failure_reason,
        )

    @staticmethod
    def _notify(progress_callback: ProgressCallback, result: DeploymentResult) -> None:
        try:
            progress_callback(result)
        except Exception:
            logger.exception(f"Progress callback failed for {result.target}")

    def _deploy_target(self, operation: RolloutOperation, target: Target) -> DeploymentResult:
        """Deploy one target and record its terminal sub-status."""
        try:
            result = self.backend.deploy(operation.template, target)
        except TargetDeploymentFailedError as e:
            result = DeploymentResult(target=target, succeeded=False, error=str(e),
                                      reason=e.reason, stack_id=e.stack_id)
        except Exception as e:
            logger.exception(f"Unexpected backend error deploying to {target}")
            result = DeploymentResult(target=target, succeeded=False,
                                      error=f"Unexpected error: {e}", reason="FAILED")

        if result.succeeded:
            self.tracker.record_target(operation.operation_id, target, TargetStatus.SUCCEEDED,
                                       stack_id=result.stack_id)
        else:
            logger.error(f"Deployment to {target} failed: {result.error}")
            self.tracker.record_target(operation.operation_id, target, TargetStatus.FAILED,
                                       error=result.error, reason=result.reason or "FAILED",
                                       stack_id=result.stack_id)
        return result

    def stop(self, operation_id: str) -> bool:
        """Request that a running operation stop after its in-flight batch.

        Returns:
            True if a running operation was signalled, False if it is not running

        Raises:
            OperationNotFoundError: When the operation is unknown
        """
        if operation_id not in self.tracker.list_operations():
            raise OperationNotFoundError(operation_id)

        stop_event = self._stop_requests.get(operation_id)
        if stop_event is None:
            return False

        logger.warning(f"Stop requested for operation {operation_id}")
        stop_event.set()
        return True
