"""Operation tracking for StackSet rollouts.

The tracker keeps an append-only event log per operation. Snapshots are
folded from the log on every read, so ``status`` can be called while a
rollout is still writing. Each target has a single writer (the worker
deploying it); ``list.append`` is atomic, so readers copy the log without
taking a lock.
"""

import copy
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from .models import (
    OperationStatus,
    RolloutOperation,
    Target,
    TargetState,
    TargetStatus,
)


logger = logging.getLogger(__name__)


class OperationNotFoundError(KeyError):
    """Raised when an operation id is unknown to the tracker."""
    pass


@dataclass(frozen=True)
class TrackerEvent:
    """One status transition of an operation or of one of its targets."""

    operation_id: str
    target: Optional[Target]
    status: Union[OperationStatus, TargetStatus]
    timestamp: datetime
    error: Optional[str] = None
    reason: Optional[str] = None
    stack_id: Optional[str] = None


class OperationTracker:
    """Append-only status log for rollout operations."""

    def __init__(self) -> None:
        self._operations: Dict[str, RolloutOperation] = {}
        self._events: Dict[str, List[TrackerEvent]] = {}
        self._order: List[str] = []
        # Writer-side view of the latest status per (operation, target)
        self._current: Dict[Tuple[str, Optional[Target]], Union[OperationStatus, TargetStatus]] = {}

    def create(self, operation: RolloutOperation) -> RolloutOperation:
        """Register a new operation in PENDING state.

        Returns:
            Snapshot of the registered operation
        """
        if operation.operation_id in self._operations:
            raise ValueError(f"Operation {operation.operation_id} is already tracked")

        base = copy.copy(operation)
        base.status = OperationStatus.PENDING
        base.target_states = {}
        base.created_at = operation.created_at or datetime.now(timezone.utc)
        base.ended_at = None
        base.failure_reason = None

        self._events[operation.operation_id] = []
        self._operations[operation.operation_id] = base
        self._order.append(operation.operation_id)
        self._current[(operation.operation_id, None)] = OperationStatus.PENDING
        for target in operation.targets:
            self._current[(operation.operation_id, target)] = TargetStatus.PENDING

        logger.info(f"Tracking operation {operation.operation_id} with {len(operation.targets)} targets")
        return self.status(operation.operation_id)

    def record_target(self, operation_id: str, target: Target, status: TargetStatus,
                      error: Optional[str] = None, reason: Optional[str] = None,
                      stack_id: Optional[str] = None) -> bool:
        """Append a target sub-status event.

        Returns:
            True if the event was appended, False if it would regress the
            target's status

        Raises:
            OperationNotFoundError: When the operation is unknown
        """
        events = self._get_events(operation_id)
        key = (operation_id, target)
        if key not in self._current:
            raise ValueError(f"Target {target} is not part of operation {operation_id}")

        if not self._advances(self._current[key], status):
            logger.warning(
                f"Ignoring {status.value} for {target} in {operation_id}: "
                f"already {self._current[key].value}"
            )
            return False

        self._current[key] = status
        events.append(TrackerEvent(
            operation_id=operation_id,
            target=target,
            status=status,
            timestamp=datetime.now(timezone.utc),
            error=error,
            reason=reason,
            stack_id=stack_id,
        ))
        return True

    def record_operation(self, operation_id: str, status: OperationStatus,
                         reason: Optional[str] = None) -> bool:
        """Append an operation-level status event."""
        events = self._get_events(operation_id)
        key = (operation_id, None)

        if not self._advances(self._current[key], status):
            logger.warning(
                f"Ignoring {status.value} for operation {operation_id}: "
                f"already {self._current[key].value}"
            )
            return False

        self._current[key] = status
        events.append(TrackerEvent(
            operation_id=operation_id,
            target=None,
            status=status,
            timestamp=datetime.now(timezone.utc),
            reason=reason,
        ))
        return True

    @staticmethod
    def _advances(current, new) -> bool:
        if current.is_terminal:
            return False
        return new.rank > current.rank

    def _get_events(self, operation_id: str) -> List[TrackerEvent]:
        try:
            return self._events[operation_id]
        except KeyError:
            raise OperationNotFoundError(operation_id)

    def events(self, operation_id: str) -> Tuple[TrackerEvent, ...]:
        """Get the raw event log of an operation."""
        return tuple(self._get_events(operation_id))

    def status(self, operation_id: str) -> RolloutOperation:
        """Fold the event log into a snapshot of the operation.

        Raises:
            OperationNotFoundError: When the operation is unknown
        """
        events = self.events(operation_id)
        base = self._operations[operation_id]

        snapshot = RolloutOperation(
            operation_id=base.operation_id,
            template=base.template,
            targets=list(base.targets),
            preferences=base.preferences,
            created_at=base.created_at,
        )

        for event in events:
            if event.target is None:
                if not self._advances(snapshot.status, event.status):
                    continue
                snapshot.status = event.status
                if event.reason:
                    snapshot.failure_reason = event.reason
                if event.status.is_terminal:
                    snapshot.ended_at = event.timestamp
                continue

            state = snapshot.target_states[event.target]
            if not self._advances(state.status, event.status):
                continue
            snapshot.target_states[event.target] = TargetState(
                target=event.target,
                status=event.status,
                error=event.error,
                reason=event.reason,
                stack_id=event.stack_id or state.stack_id,
                updated_at=event.timestamp,
            )

        return snapshot

    def list_operations(self) -> List[str]:
        return list(self._order)

    def export(self, operation_id: str) -> Dict[str, Any]:
        """Export an operation snapshot and its event log as plain data."""
        snapshot = self.status(operation_id)
        return {
            'operation_id': snapshot.operation_id,
            'status': snapshot.status.value,
            'failure_reason': snapshot.failure_reason,
            'template': {
                'name': snapshot.template.name,
                'version': snapshot.template.version,
            },
            'preferences': snapshot.preferences.to_dict(),
            'created_at': _isoformat(snapshot.created_at),
            'ended_at': _isoformat(snapshot.ended_at),
            'targets': [
                {
                    'account_id': target.account_id,
                    'region': target.region,
                    'status': state.status.value,
                    'error': state.error,
                    'reason': state.reason,
                    'stack_id': state.stack_id,
                    'updated_at': _isoformat(state.updated_at),
                }
                for target, state in snapshot.target_states.items()
            ],
            'events': [
                {
                    'target': str(event.target) if event.target else None,
                    'status': event.status.value,
                    'timestamp': _isoformat(event.timestamp),
                    'error': event.error,
                    'reason': event.reason,
                }
                for event in self.events(operation_id)
            ],
        }


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
