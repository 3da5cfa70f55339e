"""StackSet rollout orchestration.

This module provides the RolloutOrchestrator class for coordinating a
complete rollout: template registration, target resolution against the
organization, batched execution and status tracking. It also resumes
failed operations and reconciles auto-deployment when organization
membership changes.
"""

import logging
import uuid
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from ..core.aws_client import AWSClientManager
from ..core.config import Configuration
from ..organization.directory import DirectoryError, OrganizationsDirectory
from .backend import CloudFormationBackend, ProvisioningBackend, TargetDeploymentFailedError
from .engine import ProgressCallback, RolloutEngine
from .models import (
    OperationPreferences,
    OperationStatus,
    RolloutOperation,
    RolloutResult,
    Target,
    TargetStatus,
    Template,
)
from .resolver import TargetResolver
from .templates import TemplateRegistry, TemplateRegistryError
from .tracker import OperationTracker


logger = logging.getLogger(__name__)


class RolloutOrchestrationError(Exception):
    """Raised when rollout orchestration fails."""
    pass


class RolloutOrchestrator:
    """Orchestrates StackSet rollouts across an organization.

    Components default to their AWS-backed implementations; tests and
    callers may inject their own directory, backend, registry or tracker.
    """

    def __init__(self, config: Configuration, aws_client: Optional[AWSClientManager] = None,
                 directory=None, backend: Optional[ProvisioningBackend] = None,
                 registry: Optional[TemplateRegistry] = None,
                 tracker: Optional[OperationTracker] = None) -> None:
        """Initialize the rollout orchestrator.

        Args:
            config: Configuration instance
            aws_client: AWS client manager, required unless both directory
                and backend are supplied
            directory: Account directory providing ``snapshot()``
            backend: Provisioning backend for target deployments
            registry: Template registry
            tracker: Operation tracker
        """
        self.config = config
        self.aws_client = aws_client

        if (directory is None or backend is None) and aws_client is None:
            raise RolloutOrchestrationError(
                "An AWS client manager is required for the default directory and backend"
            )

        self.directory = directory or OrganizationsDirectory(aws_client)
        self.backend = backend or CloudFormationBackend(
            aws_client,
            execution_role_name=config.get_execution_role_name(),
            timeout_seconds=config.get_stack_timeout_seconds(),
        )
        self.registry = registry or TemplateRegistry()
        self.tracker = tracker or OperationTracker()
        self.resolver = TargetResolver()
        self.engine = RolloutEngine(self.backend, self.tracker)

    def register_template(self) -> Template:
        """Register the configured template file.

        Returns:
            The registered Template

        Raises:
            RolloutOrchestrationError: When the template cannot be registered
        """
        try:
            ref = self.registry.register_file(
                self.config.get_stack_set_name(),
                self.config.get_template_path(),
                capabilities=self.config.get_capabilities(),
                parameters=self.config.get_parameters(),
                update=self.config.allow_template_update(),
            )
            return self.registry.get(ref)

        except TemplateRegistryError as e:
            raise RolloutOrchestrationError(f"Template registration failed: {str(e)}")

    def resolve_targets(self) -> List[Target]:
        """Resolve the configured scope against a fresh directory snapshot.

        Raises:
            InvalidScopeError: When the scope cannot be resolved
            RolloutOrchestrationError: When the directory cannot be read
        """
        try:
            snapshot = self.directory.snapshot()
        except DirectoryError as e:
            raise RolloutOrchestrationError(f"Failed to read organization: {str(e)}")

        return self.resolver.resolve(self.config.get_scope(), snapshot)

    def plan(self) -> Dict[str, Any]:
        """Preview a rollout without deploying anything.

        Returns:
            Dictionary describing targets, batching and tolerance
        """
        template = self.register_template()
        targets = self.resolve_targets()
        preferences = self.config.get_operation_preferences()
        batches = self.engine.plan_batches(targets, preferences)

        targets_per_region: Dict[str, int] = OrderedDict()
        for target in targets:
            targets_per_region[target.region] = targets_per_region.get(target.region, 0) + 1

        scope = self.config.get_scope()
        return {
            'stack_set_name': template.name,
            'template': str(template.ref),
            'capabilities': list(template.capabilities),
            'targets': [{'account_id': t.account_id, 'region': t.region} for t in targets],
            'target_count': len(targets),
            'regions': list(targets_per_region.keys()),
            'targets_per_region': dict(targets_per_region),
            'batch_count': len(batches),
            'concurrency_limit': max(len(batch) for batch in batches),
            'failure_threshold': preferences.failure_threshold(len(targets)),
            'region_concurrency_type': preferences.region_concurrency_type.value,
            'include_root': scope.include_root,
        }

    def start_rollout(self, targets: Optional[List[Target]] = None,
                      progress_callback: Optional[ProgressCallback] = None) -> Dict[str, Any]:
        """Run a complete rollout of the configured template.

        Args:
            targets: Optional pre-resolved targets, resolved from config when omitted
            progress_callback: Optional callable invoked with each target result

        Returns:
            Dictionary containing the rollout results

        Raises:
            InvalidScopeError: When the scope resolves to no targets
            RolloutOrchestrationError: When a rollout step fails
        """
        print("🚀 Starting StackSet rollout...")

        template = self.register_template()
        print(f"✅ Template registered: {template.ref}")

        if targets is None:
            targets = self.resolve_targets()
        print(f"✅ Resolved {len(targets)} target(s)")

        return self._run_operation(template, targets,
                                   self.config.get_operation_preferences(),
                                   progress_callback)

    def _run_operation(self, template: Template, targets: List[Target],
                       preferences: OperationPreferences,
                       progress_callback: Optional[ProgressCallback] = None) -> Dict[str, Any]:
        operation = RolloutOperation(
            operation_id=str(uuid.uuid4()),
            template=template,
            targets=list(targets),
            preferences=preferences,
            created_at=datetime.now(timezone.utc),
        )
        print(f"⏳ Operation {operation.operation_id} in progress...")

        # The engine registers the operation with the tracker
        result = self.engine.execute(operation, progress_callback=progress_callback)

        if result.status is OperationStatus.SUCCEEDED:
            print(f"🎉 Operation {result.operation_id} succeeded")
        else:
            print(f"❌ Operation {result.operation_id} ended {result.status.value}"
                  f" ({result.failure_reason})")

        return self._result_to_dict(template, result)

    @staticmethod
    def _result_to_dict(template: Template, result: RolloutResult) -> Dict[str, Any]:
        return {
            'status': result.status.value,
            'operation_id': result.operation_id,
            'template': str(template.ref),
            'succeeded': [str(t) for t in result.succeeded],
            'failed': [
                {'target': str(r.target), 'error': r.error, 'reason': r.reason}
                for r in result.failed
            ],
            'cancelled': [str(t) for t in result.cancelled],
            'failure_threshold': result.failure_threshold,
            'concurrency_limit': result.concurrency_limit,
            'failure_reason': result.failure_reason,
        }

    def get_operation_status(self, operation_id: str) -> Dict[str, Any]:
        """Get operation status for monitoring.

        Raises:
            OperationNotFoundError: When the operation is unknown
        """
        snapshot = self.tracker.status(operation_id)
        counts: Dict[str, int] = {}
        for state in snapshot.target_states.values():
            counts[state.status.value] = counts.get(state.status.value, 0) + 1

        return {
            'operation_id': operation_id,
            'status': snapshot.status.value,
            'failure_reason': snapshot.failure_reason,
            'template': str(snapshot.template.ref),
            'created_at': snapshot.created_at,
            'ended_at': snapshot.ended_at,
            'target_counts': counts,
        }

    def stop_operation(self, operation_id: str) -> bool:
        """Ask a running operation to stop after its in-flight batch."""
        return self.engine.stop(operation_id)

    def resume_operation(self, operation_id: str,
                         progress_callback: Optional[ProgressCallback] = None) -> Dict[str, Any]:
        """Retry the failed and cancelled targets of a finished operation.

        A new operation is created with the same template and preferences;
        the original operation's statuses are never rewritten.

        Raises:
            OperationNotFoundError: When the operation is unknown
            RolloutOrchestrationError: When the operation is still running
                or has nothing to retry
        """
        snapshot = self.tracker.status(operation_id)
        if not snapshot.status.is_terminal:
            raise RolloutOrchestrationError(
                f"Operation {operation_id} is still {snapshot.status.value}"
            )

        targets = snapshot.targets_with_status(TargetStatus.FAILED, TargetStatus.CANCELLED)
        if not targets:
            raise RolloutOrchestrationError(
                f"Operation {operation_id} has no failed or cancelled targets to resume"
            )

        logger.info(f"Resuming operation {operation_id} with {len(targets)} targets")
        return self._run_operation(snapshot.template, targets, snapshot.preferences,
                                   progress_callback)

    def _require_auto_deployment(self) -> None:
        if not self.config.is_auto_deployment_enabled():
            raise RolloutOrchestrationError(
                "Auto-deployment is disabled (stack_set.auto_deployment.enabled)"
            )

    def _sync_delta(self, operation_id: Optional[str],
                    deployed_targets: Optional[List[Target]]) -> Tuple[Template, List[Target], List[Target]]:
        """Compare deployed targets with the currently resolved scope.

        Returns:
            The registered template, targets to add and targets that left the scope
        """
        self._require_auto_deployment()

        if operation_id is not None:
            deployed = self.tracker.status(operation_id).targets_with_status(TargetStatus.SUCCEEDED)
        elif deployed_targets is not None:
            deployed = list(deployed_targets)
        else:
            raise RolloutOrchestrationError(
                "An operation id or the list of deployed targets is required"
            )

        template = self.register_template()
        current = self.resolve_targets()
        deployed_set = set(deployed)
        current_set = set(current)

        added = [t for t in current if t not in deployed_set]
        removed = [t for t in deployed if t not in current_set]
        return template, added, removed

    def preview_sync(self, operation_id: Optional[str] = None,
                     deployed_targets: Optional[List[Target]] = None) -> Dict[str, Any]:
        """Preview a sync without deploying or deleting anything.

        Raises:
            RolloutOrchestrationError: When auto-deployment is disabled or no
                previous deployment is given
        """
        template, added, removed = self._sync_delta(operation_id, deployed_targets)
        retain = self.config.retain_stacks_on_account_removal()
        preferences = self.config.get_operation_preferences()

        return {
            'stack_set_name': template.name,
            'template': str(template.ref),
            'stack_name': self.backend.stack_name(template),
            'added': [{'account_id': t.account_id, 'region': t.region} for t in added],
            'removed': [{'account_id': t.account_id, 'region': t.region} for t in removed],
            'retain_stacks': retain,
            'failure_threshold': preferences.failure_threshold(len(added)) if added else 0,
        }

    def sync_auto_deployment(self, operation_id: Optional[str] = None,
                             deployed_targets: Optional[List[Target]] = None,
                             progress_callback: Optional[ProgressCallback] = None,
                             preview: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Reconcile deployments with current organization membership.

        New targets in scope are deployed as a new operation. Targets that
        left the scope have their stacks deleted unless
        ``retain_stacks_on_account_removal`` is set.

        Args:
            operation_id: Previous operation whose succeeded targets are deployed
            deployed_targets: Deployed targets, used when no operation id is given
            progress_callback: Optional callable invoked with each target result
            preview: Result of preview_sync() to apply as confirmed, instead
                of comparing against the organization again

        Returns:
            Dictionary describing added, removed and deleted targets

        Raises:
            RolloutOrchestrationError: When auto-deployment is disabled or no
                previous deployment is given
        """
        if preview is not None:
            self._require_auto_deployment()
            template = self.register_template()
            added = [Target(**entry) for entry in preview['added']]
            removed = [Target(**entry) for entry in preview['removed']]
        else:
            template, added, removed = self._sync_delta(operation_id, deployed_targets)
        retain = self.config.retain_stacks_on_account_removal()

        summary: Dict[str, Any] = {
            'added': [str(t) for t in added],
            'removed': [str(t) for t in removed],
            'retained_stacks': retain,
            'deleted': [],
            'delete_failures': [],
            'operation': None,
        }

        if added:
            print(f"🚀 Deploying to {len(added)} new target(s)...")
            summary['operation'] = self._run_operation(
                template, added, self.config.get_operation_preferences(), progress_callback
            )
        else:
            print("✅ No new targets in scope")

        if removed and not retain:
            stack_name = self.backend.stack_name(template)
            for target in removed:
                try:
                    self.backend.delete(stack_name, target)
                    summary['deleted'].append(str(target))
                except TargetDeploymentFailedError as e:
                    logger.error(f"Failed to delete stack from {target}: {e}")
                    summary['delete_failures'].append({'target': str(target), 'error': str(e)})
        elif removed:
            print(f"⚠️  Retaining stacks in {len(removed)} target(s) that left the scope")

        return summary
