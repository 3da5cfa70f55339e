"""Prerequisites validation framework for StackSet rollouts.

This module provides a validation framework for checking the AWS
prerequisites of an organization-wide rollout: working credentials,
AWS Organizations with all features enabled, and trusted access for
CloudFormation StackSets.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Any
from botocore.exceptions import ClientError, NoCredentialsError

from .aws_client import AWSClientManager


STACKSETS_SERVICE_PRINCIPAL = "member.org.stacksets.cloudformation.amazonaws.com"


class ValidationStatus(Enum):
    """Validation result status."""

    PASSED = "PASSED"
    FAILED = "FAILED"
    WARNING = "WARNING"
    SKIPPED = "SKIPPED"


@dataclass
class ValidationResult:
    """Result of a validation check."""

    validator_name: str
    status: ValidationStatus
    message: str
    remediation_steps: Optional[List[str]] = None
    details: Optional[Dict[str, Any]] = None


class BaseValidator(ABC):
    """Base class for all validators."""

    def __init__(self, aws_client: AWSClientManager) -> None:
        """Initialize validator with AWS client manager.

        Args:
            aws_client: Configured AWS client manager
        """
        self.aws_client = aws_client

    @abstractmethod
    def validate(self) -> ValidationResult:
        """Perform validation check.

        Returns:
            ValidationResult with status and details
        """
        pass

    @property
    @abstractmethod
    def name(self) -> str:
        """Get validator name."""
        pass


class CredentialsValidator(BaseValidator):
    """Validates AWS credentials."""

    @property
    def name(self) -> str:
        return "AWS Credentials"

    def validate(self) -> ValidationResult:
        """Validate AWS credentials are working.

        Returns:
            ValidationResult indicating credential status
        """
        try:
            account_id = self.aws_client.get_account_id()
            region = self.aws_client.get_current_region()

            return ValidationResult(
                validator_name=self.name,
                status=ValidationStatus.PASSED,
                message=f"AWS credentials valid for account {account_id} in region {region}",
                details={"account_id": account_id, "region": region},
            )

        except NoCredentialsError as e:
            return ValidationResult(
                validator_name=self.name,
                status=ValidationStatus.FAILED,
                message=str(e),
                remediation_steps=[
                    "Configure AWS credentials using one of these methods:",
                    "1. AWS CLI: Run 'aws configure'",
                    "2. Environment variables: Set AWS_ACCESS_KEY_ID and AWS_SECRET_ACCESS_KEY",
                    "3. AWS profiles: Set AWS_PROFILE or pass --profile",
                ],
            )
        except ClientError as e:
            return ValidationResult(
                validator_name=self.name,
                status=ValidationStatus.FAILED,
                message=f"Credential validation failed: {str(e)}",
                remediation_steps=[
                    "Check AWS credential configuration",
                    "Verify IAM permissions for STS GetCallerIdentity",
                ],
            )


class OrganizationsValidator(BaseValidator):
    """Validates AWS Organizations prerequisites."""

    @property
    def name(self) -> str:
        return "AWS Organizations"

    def validate(self) -> ValidationResult:
        """Validate AWS Organizations setup.

        Returns:
            ValidationResult indicating Organizations status
        """
        try:
            org_client = self.aws_client.get_client(
                "organizations", self.aws_client.get_current_region()
            )
            organization = org_client.describe_organization()["Organization"]

        except ClientError as e:
            error_code = e.response["Error"]["Code"]
            if error_code == "AWSOrganizationsNotInUseException":
                return ValidationResult(
                    validator_name=self.name,
                    status=ValidationStatus.FAILED,
                    message="AWS Organizations is not enabled for this account",
                    remediation_steps=[
                        "Organization-wide rollouts require AWS Organizations:",
                        "1. Go to AWS Organizations console",
                        "2. Click 'Create organization'",
                        "3. Choose 'Enable all features'",
                    ],
                )
            if error_code == "AccessDeniedException":
                return ValidationResult(
                    validator_name=self.name,
                    status=ValidationStatus.FAILED,
                    message="Insufficient permissions to access AWS Organizations",
                    remediation_steps=[
                        "Ensure the following IAM permissions are granted:",
                        "- organizations:DescribeOrganization",
                        "- organizations:ListRoots",
                        "- organizations:ListOrganizationalUnitsForParent",
                        "- organizations:ListAccountsForParent",
                    ],
                )
            return ValidationResult(
                validator_name=self.name,
                status=ValidationStatus.FAILED,
                message=f"Organizations validation failed: {str(e)}",
                remediation_steps=[
                    "Check AWS Organizations service status",
                    "Verify IAM permissions for Organizations access",
                ],
            )

        if organization["FeatureSet"] != "ALL":
            return ValidationResult(
                validator_name=self.name,
                status=ValidationStatus.FAILED,
                message="AWS Organizations does not have all features enabled",
                remediation_steps=[
                    "Enable all features in AWS Organizations:",
                    "1. Go to AWS Organizations console",
                    "2. Navigate to Settings",
                    "3. Click 'Enable all features'",
                ],
            )

        account_id = self.aws_client.get_account_id()
        if organization["MasterAccountId"] != account_id:
            return ValidationResult(
                validator_name=self.name,
                status=ValidationStatus.FAILED,
                message="Rollouts must be started from the management account",
                remediation_steps=[
                    f"Switch to the management account: {organization['MasterAccountId']}",
                ],
            )

        return ValidationResult(
            validator_name=self.name,
            status=ValidationStatus.PASSED,
            message="AWS Organizations is properly configured with all features enabled",
            details={
                "organization_id": organization["Id"],
                "management_account_id": organization["MasterAccountId"],
                "feature_set": organization["FeatureSet"],
            },
        )


class StackSetsTrustedAccessValidator(BaseValidator):
    """Validates trusted access between CloudFormation StackSets and Organizations."""

    @property
    def name(self) -> str:
        return "StackSets Trusted Access"

    def validate(self) -> ValidationResult:
        try:
            org_client = self.aws_client.get_client(
                "organizations", self.aws_client.get_current_region()
            )
            paginator = org_client.get_paginator("list_aws_service_access_for_organization")
            principals = [
                principal["ServicePrincipal"]
                for page in paginator.paginate()
                for principal in page["EnabledServicePrincipals"]
            ]

        except ClientError as e:
            return ValidationResult(
                validator_name=self.name,
                status=ValidationStatus.WARNING,
                message=f"Unable to check trusted access: {str(e)}",
                remediation_steps=[
                    "Grant organizations:ListAWSServiceAccessForOrganization to verify",
                ],
            )

        if STACKSETS_SERVICE_PRINCIPAL not in principals:
            return ValidationResult(
                validator_name=self.name,
                status=ValidationStatus.WARNING,
                message="Trusted access for CloudFormation StackSets is not enabled",
                remediation_steps=[
                    "Rollouts still work through the execution role in each account",
                    "To enable service-managed permissions:",
                    "1. Open the CloudFormation console in the management account",
                    "2. Choose StackSets and 'Activate trusted access'",
                ],
            )

        return ValidationResult(
            validator_name=self.name,
            status=ValidationStatus.PASSED,
            message="Trusted access for CloudFormation StackSets is enabled",
        )


class PrerequisitesValidator:
    """Main validator orchestrator for all prerequisites."""

    CRITICAL_VALIDATORS = ("AWS Credentials", "AWS Organizations")

    def __init__(self, aws_client: AWSClientManager) -> None:
        """Initialize prerequisites validator.

        Args:
            aws_client: Configured AWS client manager
        """
        self.aws_client = aws_client
        self.validators = [
            CredentialsValidator(aws_client),
            OrganizationsValidator(aws_client),
            StackSetsTrustedAccessValidator(aws_client),
        ]

    def validate_all(self) -> List[ValidationResult]:
        """Run all validation checks.

        Returns:
            List of ValidationResult objects
        """
        results = []

        for validator in self.validators:
            try:
                result = validator.validate()
            except Exception as e:
                result = ValidationResult(
                    validator_name=validator.name,
                    status=ValidationStatus.FAILED,
                    message=f"Validation error: {str(e)}",
                    remediation_steps=["Verify AWS service availability"],
                )
            results.append(result)

            # Stop on critical failures
            if (
                result.status == ValidationStatus.FAILED
                and validator.name in self.CRITICAL_VALIDATORS
            ):
                break

        return results

    def is_ready_for_deployment(self, results: List[ValidationResult]) -> bool:
        """Check if all prerequisites are met for deployment.

        Args:
            results: List of validation results

        Returns:
            True if ready for deployment, False otherwise
        """
        for result in results:
            if result.status == ValidationStatus.FAILED:
                return False
        return True
