"""Data model for StackSet rollouts.

Templates, deployment scopes, targets, operation preferences and the
operation/result records shared by the resolver, engine and tracker.
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


ALLOWED_CAPABILITIES = ("CAPABILITY_IAM", "CAPABILITY_NAMED_IAM", "CAPABILITY_AUTO_EXPAND")


class InvalidPreferencesError(ValueError):
    """Raised when operation preferences violate their invariants."""
    pass


class AccountFilterType(Enum):
    """How the scope's filter account set is applied."""

    NONE = "NONE"
    DIFFERENCE = "DIFFERENCE"
    INTERSECTION = "INTERSECTION"


class RegionConcurrencyType(Enum):
    """Whether regions are rolled out together or one after another."""

    PARALLEL = "PARALLEL"
    SEQUENTIAL = "SEQUENTIAL"


class OperationStatus(Enum):
    """Rollout operation status."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    STOPPED = "STOPPED"

    @property
    def is_terminal(self) -> bool:
        return self in (OperationStatus.SUCCEEDED, OperationStatus.FAILED,
                        OperationStatus.STOPPED)

    @property
    def rank(self) -> int:
        if self.is_terminal:
            return 2
        return 1 if self is OperationStatus.IN_PROGRESS else 0


class TargetStatus(Enum):
    """Per-target deployment sub-status."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (TargetStatus.SUCCEEDED, TargetStatus.FAILED,
                        TargetStatus.CANCELLED)

    @property
    def rank(self) -> int:
        if self.is_terminal:
            return 2
        return 1 if self is TargetStatus.RUNNING else 0


@dataclass(frozen=True)
class TemplateRef:
    """Reference to one registered template version."""

    name: str
    version: str

    def __str__(self) -> str:
        return f"{self.name}@{self.version[:12]}"


@dataclass(frozen=True)
class Template:
    """Immutable CloudFormation template with its deployment inputs."""

    name: str
    body: str
    capabilities: Tuple[str, ...] = ()
    parameters: Dict[str, str] = field(default_factory=dict, hash=False)

    @property
    def version(self) -> str:
        """Content hash of body, capabilities and parameters."""
        canonical = json.dumps(
            {
                "body": self.body,
                "capabilities": sorted(self.capabilities),
                "parameters": sorted((str(k), str(v)) for k, v in self.parameters.items()),
            },
            sort_keys=True,
        )
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    @property
    def ref(self) -> TemplateRef:
        return TemplateRef(name=self.name, version=self.version)


@dataclass(frozen=True)
class Target:
    """Resolved (account, region) deployment target."""

    account_id: str
    region: str

    def __str__(self) -> str:
        return f"{self.account_id}/{self.region}"


@dataclass
class DeploymentScope:
    """Organizational scope to resolve into targets.

    The scope is the union of ``accounts``, the member accounts of
    ``organizational_units`` and, with ``include_root``, every account in
    the organization. ``exclusions`` is applied according to
    ``account_filter_type``: removed for DIFFERENCE, kept exclusively for
    INTERSECTION, ignored for NONE.
    """

    accounts: List[str] = field(default_factory=list)
    organizational_units: List[str] = field(default_factory=list)
    include_root: bool = False
    exclusions: List[str] = field(default_factory=list)
    account_filter_type: AccountFilterType = AccountFilterType.NONE
    regions: List[str] = field(default_factory=list)
    include_nested_ous: bool = True


@dataclass
class OperationPreferences:
    """Concurrency and failure tolerance settings for a rollout."""

    failure_tolerance_count: Optional[int] = None
    failure_tolerance_percentage: Optional[int] = None
    max_concurrent_count: Optional[int] = None
    max_concurrent_percentage: Optional[int] = None
    region_concurrency_type: RegionConcurrencyType = RegionConcurrencyType.PARALLEL

    @classmethod
    def default(cls) -> "OperationPreferences":
        return cls(failure_tolerance_count=0, max_concurrent_count=1)

    def validate(self) -> None:
        """Check the one-of and range invariants.

        Raises:
            InvalidPreferencesError: When an invariant is violated
        """
        pairs = [
            ("failure_tolerance", self.failure_tolerance_count, self.failure_tolerance_percentage),
            ("max_concurrent", self.max_concurrent_count, self.max_concurrent_percentage),
        ]
        for name, count, percentage in pairs:
            if (count is None) == (percentage is None):
                raise InvalidPreferencesError(
                    f"Exactly one of {name}_count or {name}_percentage must be set"
                )
            value = count if count is not None else percentage
            if isinstance(value, bool) or not isinstance(value, int):
                raise InvalidPreferencesError(f"{name} value must be an integer, got {value!r}")
            if value < 0:
                raise InvalidPreferencesError(f"{name} value must be >= 0, got {value}")
            if percentage is not None and percentage > 100:
                raise InvalidPreferencesError(
                    f"{name}_percentage must be between 0 and 100, got {percentage}"
                )
        if not isinstance(self.region_concurrency_type, RegionConcurrencyType):
            raise InvalidPreferencesError(
                f"Unknown region concurrency type: {self.region_concurrency_type!r}"
            )

    def failure_threshold(self, total_targets: int) -> int:
        """Number of failures tolerated before the rollout halts."""
        if self.failure_tolerance_count is not None:
            return self.failure_tolerance_count
        return (self.failure_tolerance_percentage * total_targets) // 100

    def concurrency_limit(self, group_size: int) -> int:
        """Deployments allowed in flight for a group of ``group_size`` targets."""
        if group_size <= 0:
            return 0
        if self.max_concurrent_count is not None:
            limit = self.max_concurrent_count
        else:
            limit = (self.max_concurrent_percentage * group_size) // 100
        return max(1, min(limit, group_size))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "failure_tolerance_count": self.failure_tolerance_count,
            "failure_tolerance_percentage": self.failure_tolerance_percentage,
            "max_concurrent_count": self.max_concurrent_count,
            "max_concurrent_percentage": self.max_concurrent_percentage,
            "region_concurrency_type": self.region_concurrency_type.value,
        }


@dataclass
class TargetState:
    """Current sub-status of one target within an operation."""

    target: Target
    status: TargetStatus = TargetStatus.PENDING
    error: Optional[str] = None
    reason: Optional[str] = None
    stack_id: Optional[str] = None
    updated_at: Optional[datetime] = None


@dataclass
class RolloutOperation:
    """A requested rollout of one template to a list of targets."""

    operation_id: str
    template: Template
    targets: List[Target]
    preferences: OperationPreferences
    status: OperationStatus = OperationStatus.PENDING
    target_states: Dict[Target, TargetState] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    failure_reason: Optional[str] = None

    def __post_init__(self) -> None:
        for target in self.targets:
            self.target_states.setdefault(target, TargetState(target=target))

    def targets_with_status(self, *statuses: TargetStatus) -> List[Target]:
        return [t for t in self.targets if self.target_states[t].status in statuses]


@dataclass
class DeploymentResult:
    """Outcome of deploying a template to a single target."""

    target: Target
    succeeded: bool
    error: Optional[str] = None
    reason: Optional[str] = None
    stack_id: Optional[str] = None


@dataclass
class RolloutResult:
    """Aggregated outcome of one rollout operation."""

    operation_id: str
    status: OperationStatus
    succeeded: List[Target] = field(default_factory=list)
    failed: List[DeploymentResult] = field(default_factory=list)
    cancelled: List[Target] = field(default_factory=list)
    failure_threshold: int = 0
    concurrency_limit: int = 0
    failure_reason: Optional[str] = None

    @property
    def failure_count(self) -> int:
        return len(self.failed)

    def raise_for_status(self) -> None:
        """Raise ToleranceExceededError when the rollout exceeded its tolerance."""
        if self.failure_reason == "TOLERANCE_EXCEEDED":
            # Imported here to avoid a circular import with the engine module
            from .engine import ToleranceExceededError

            raise ToleranceExceededError(
                f"Operation {self.operation_id} failed: {self.failure_count} target "
                f"failure(s) exceeded tolerance of {self.failure_threshold}"
            )
