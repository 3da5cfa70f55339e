"""Provisioning backends for per-target template deployment.

The rollout engine treats a backend as an opaque, possibly slow call that
applies a template to one (account, region) target. The CloudFormation
backend assumes an execution role in the member account, creates or
updates a stack there and waits for it to settle.
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
from botocore.exceptions import ClientError

from ..core.aws_client import AWSClientManager
from .models import DeploymentResult, Target, Template


logger = logging.getLogger(__name__)


class TargetDeploymentFailedError(Exception):
    """Raised when a template cannot be deployed to a target.

    ``reason`` is ``FAILED``, ``CONFLICT`` for name collisions with
    existing resources, or ``TIMEOUT``.
    """

    def __init__(self, message: str, reason: str = "FAILED",
                 stack_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.reason = reason
        self.stack_id = stack_id


class ProvisioningBackend(ABC):
    """Applies templates to individual targets."""

    def stack_name(self, template: Template) -> str:
        """Name of the stack a template is deployed as."""
        return template.name

    @abstractmethod
    def deploy(self, template: Template, target: Target) -> DeploymentResult:
        """Deploy a template to a target.

        Implementations either return a DeploymentResult or raise
        TargetDeploymentFailedError.
        """
        pass

    @abstractmethod
    def delete(self, stack_name: str, target: Target) -> DeploymentResult:
        """Delete a previously deployed stack from a target."""
        pass


class CloudFormationBackend(ProvisioningBackend):
    """Deploys templates as CloudFormation stacks inside member accounts."""

    DEFAULT_EXECUTION_ROLE = "AWSControlTowerExecution"

    # Stack timeout in seconds (30 minutes)
    DEFAULT_TIMEOUT_SECONDS = 1800

    # Status polling interval in seconds
    POLLING_INTERVAL_SECONDS = 15

    SUCCESS_STATUSES = ("CREATE_COMPLETE", "UPDATE_COMPLETE", "DELETE_COMPLETE")
    FAILURE_STATUSES = (
        "CREATE_FAILED",
        "ROLLBACK_COMPLETE",
        "ROLLBACK_FAILED",
        "UPDATE_ROLLBACK_COMPLETE",
        "UPDATE_ROLLBACK_FAILED",
        "UPDATE_FAILED",
        "DELETE_FAILED",
        "IMPORT_ROLLBACK_COMPLETE",
        "IMPORT_ROLLBACK_FAILED",
    )

    def __init__(self, aws_client: AWSClientManager,
                 stack_name_prefix: str = "StackSet",
                 execution_role_name: Optional[str] = None,
                 timeout_seconds: Optional[int] = None,
                 polling_interval: Optional[int] = None) -> None:
        """Initialize the CloudFormation backend.

        Args:
            aws_client: AWS client manager instance
            stack_name_prefix: Prefix of the stack name created in each target
            execution_role_name: Role assumed in member accounts
            timeout_seconds: Maximum wait for one stack (default: 30 minutes)
            polling_interval: Seconds between status checks
        """
        self.aws_client = aws_client
        self.stack_name_prefix = stack_name_prefix
        self.execution_role_name = execution_role_name or self.DEFAULT_EXECUTION_ROLE
        self.timeout_seconds = timeout_seconds or self.DEFAULT_TIMEOUT_SECONDS
        self.polling_interval = (
            self.POLLING_INTERVAL_SECONDS if polling_interval is None else polling_interval
        )

    def stack_name(self, template: Template) -> str:
        return f"{self.stack_name_prefix}-{template.name}"

    def _get_client(self, target: Target):
        try:
            return self.aws_client.get_client_for_account(
                'cloudformation', target.account_id, target.region,
                self.execution_role_name,
            )
        except ClientError as e:
            error_message = e.response['Error'].get('Message', str(e))
            raise TargetDeploymentFailedError(
                f"Unable to assume {self.execution_role_name} in {target.account_id}: {error_message}"
            )

    def deploy(self, template: Template, target: Target) -> DeploymentResult:
        """Create or update the template's stack in the target.

        Raises:
            TargetDeploymentFailedError: When the stack cannot be deployed
        """
        client = self._get_client(target)
        stack_name = self.stack_name(template)
        params: Dict[str, Any] = {
            'StackName': stack_name,
            'TemplateBody': template.body,
            'Parameters': [
                {'ParameterKey': key, 'ParameterValue': value}
                for key, value in sorted(template.parameters.items())
            ],
        }
        if template.capabilities:
            params['Capabilities'] = list(template.capabilities)

        try:
            if self._stack_exists(client, stack_name):
                logger.info(f"Updating stack {stack_name} in {target}")
                stack_id = client.update_stack(**params)['StackId']
            else:
                logger.info(f"Creating stack {stack_name} in {target}")
                stack_id = client.create_stack(**params)['StackId']

        except ClientError as e:
            error_code = e.response['Error']['Code']
            error_message = e.response['Error'].get('Message', '')

            if error_code == 'ValidationError' and 'No updates are to be performed' in error_message:
                logger.info(f"Stack {stack_name} in {target} is already up to date")
                return DeploymentResult(target=target, succeeded=True)
            elif error_code == 'AlreadyExistsException':
                raise TargetDeploymentFailedError(
                    f"Stack {stack_name} already exists in {target}: {error_message}",
                    reason="CONFLICT",
                )
            elif error_code == 'InsufficientCapabilitiesException':
                raise TargetDeploymentFailedError(
                    f"Template requires additional capabilities: {error_message}"
                )
            else:
                raise TargetDeploymentFailedError(
                    f"Stack deployment failed in {target}: {error_message or e}"
                )

        return self._wait_for_stack(client, stack_id, target)

    def delete(self, stack_name: str, target: Target) -> DeploymentResult:
        """Delete a stack from the target.

        Raises:
            TargetDeploymentFailedError: When the delete call fails
        """
        client = self._get_client(target)
        try:
            stack_id = self._existing_stack_id(client, stack_name)
            if stack_id is None:
                return DeploymentResult(target=target, succeeded=True)
            client.delete_stack(StackName=stack_name)
            logger.info(f"Deleting stack {stack_name} in {target}")
        except ClientError as e:
            raise TargetDeploymentFailedError(f"Failed to delete stack in {target}: {e}")

        # Deleted stacks can only be described by id
        return self._wait_for_stack(client, stack_id, target, deleting=True)

    def _stack_exists(self, client, stack_name: str) -> bool:
        return self._existing_stack_id(client, stack_name) is not None

    def _existing_stack_id(self, client, stack_name: str) -> Optional[str]:
        """Id of the live stack with the given name, or None if there is none."""
        try:
            stacks = client.describe_stacks(StackName=stack_name)['Stacks']
        except ClientError as e:
            if e.response['Error']['Code'] == 'ValidationError':
                return None
            raise
        if not stacks or stacks[0]['StackStatus'] == 'DELETE_COMPLETE':
            return None
        return stacks[0].get('StackId', stack_name)

    def _wait_for_stack(self, client, stack_id: str, target: Target,
                        deleting: bool = False) -> DeploymentResult:
        """Poll a stack until it reaches a terminal status.

        Args:
            client: CloudFormation client for the target
            stack_id: Id of the stack to poll
            target: Target the stack belongs to
            deleting: Treat a stack that no longer exists as deleted

        Raises:
            TargetDeploymentFailedError: When the stack fails or times out
        """
        start_time = time.time()

        while True:
            try:
                stacks = client.describe_stacks(StackName=stack_id)['Stacks']
            except ClientError as e:
                error = e.response['Error']
                if (deleting and error['Code'] == 'ValidationError'
                        and 'does not exist' in error.get('Message', '')):
                    logger.info(f"Stack {stack_id} in {target} no longer exists")
                    return DeploymentResult(target=target, succeeded=True, stack_id=stack_id)
                raise TargetDeploymentFailedError(
                    f"Failed to get stack status in {target}: {e}", stack_id=stack_id
                )

            stack = stacks[0]
            status = stack['StackStatus']

            if status in self.SUCCESS_STATUSES:
                return DeploymentResult(target=target, succeeded=True,
                                        stack_id=stack.get('StackId', stack_id))

            if status in self.FAILURE_STATUSES:
                status_reason = stack.get('StackStatusReason') or self._first_failure_reason(
                    client, stack_id)
                reason = "CONFLICT" if "already exists" in (status_reason or "") else "FAILED"
                raise TargetDeploymentFailedError(
                    f"Stack {status} in {target}: {status_reason or 'Unknown error'}",
                    reason=reason,
                    stack_id=stack.get('StackId', stack_id),
                )

            if time.time() - start_time >= self.timeout_seconds:
                raise TargetDeploymentFailedError(
                    f"Stack timed out after {self.timeout_seconds} seconds in {target} "
                    f"(last status {status})",
                    reason="TIMEOUT",
                    stack_id=stack_id,
                )

            time.sleep(self.polling_interval)

    def _first_failure_reason(self, client, stack_id: str) -> Optional[str]:
        """Find the reason of the earliest failed resource event."""
        try:
            events = client.describe_stack_events(StackName=stack_id)['StackEvents']
        except ClientError:
            return None

        # Events are returned newest first
        for event in reversed(events):
            if event.get('ResourceStatus', '').endswith('_FAILED'):
                return event.get('ResourceStatusReason')
        return None
