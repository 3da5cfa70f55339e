"""Safety and confirmation system for StackSet rollouts.

This module provides confirmation prompts scaled to the blast radius of a
rollout and keeps an audit log of every confirmation decision.
"""

from datetime import datetime, timezone
from typing import Dict, Any, Optional, List
from dataclasses import dataclass


# Rollouts touching more targets than this need a typed confirmation
HIGH_IMPACT_TARGET_COUNT = 10


@dataclass
class ConfirmationRequest:
    """Request for user confirmation."""

    operation: str
    description: str
    impact_level: str  # LOW, MEDIUM, HIGH
    configuration_summary: Optional[Dict[str, Any]] = None
    warnings: Optional[List[str]] = None


class SafetyManager:
    """Confirmation manager for rollout operations."""

    def __init__(self, enable_confirmations: bool = True) -> None:
        """Initialize safety manager.

        Args:
            enable_confirmations: Whether to enable confirmation prompts
                                 (disabled by ``--yes`` and in tests)
        """
        self.enable_confirmations = enable_confirmations
        self.audit_log: List[Dict[str, Any]] = []

    def request_confirmation(self, request: ConfirmationRequest) -> bool:
        """Request user confirmation for an operation.

        Args:
            request: ConfirmationRequest with operation details

        Returns:
            True if user confirms, False otherwise
        """
        if not self.enable_confirmations:
            self._log_confirmation(request, True, "Auto-confirmed (confirmations disabled)")
            return True

        print("\n" + "=" * 60)
        print("CONFIRMATION REQUIRED")
        print("=" * 60)
        print(f"Operation: {request.operation}")
        print(f"Impact Level: {request.impact_level}")
        print(f"Description: {request.description}")

        if request.warnings:
            print("\n⚠️  WARNINGS:")
            for warning in request.warnings:
                print(f"   • {warning}")

        if request.configuration_summary:
            print("\nConfiguration Summary:")
            self._display_configuration(request.configuration_summary)

        if request.impact_level == "HIGH":
            confirmed = self._get_high_confirmation()
        else:
            confirmed = self._get_standard_confirmation()

        self._log_confirmation(
            request,
            confirmed,
            "User confirmed" if confirmed else "User declined",
        )

        return confirmed

    def _display_configuration(self, config: Dict[str, Any], indent: int = 0) -> None:
        """Display configuration in a readable format.

        Args:
            config: Configuration dictionary to display
            indent: Indentation level for nested items
        """
        prefix = "  " * indent

        for key, value in config.items():
            if isinstance(value, dict):
                print(f"{prefix}{key}:")
                self._display_configuration(value, indent + 1)
            elif isinstance(value, list):
                print(f"{prefix}{key}: {', '.join(map(str, value))}")
            else:
                print(f"{prefix}{key}: {value}")

    def _get_standard_confirmation(self) -> bool:
        print("\nDo you want to proceed? (y/n): ", end="")
        response = input().strip().lower()
        return response in ["y", "yes"]

    def _get_high_confirmation(self) -> bool:
        print("\n⚠️  HIGH IMPACT OPERATION")
        print("This rollout changes stacks across many accounts and regions.")
        print("\nType 'CONFIRM' to proceed: ", end="")
        response = input().strip()

        if response != "CONFIRM":
            print("Operation cancelled.")
            return False
        return True

    def _log_confirmation(self, request: ConfirmationRequest, confirmed: bool,
                          reason: str) -> None:
        """Log confirmation request and result.

        Args:
            request: The confirmation request
            confirmed: Whether the operation was confirmed
            reason: Reason for the confirmation result
        """
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "operation": request.operation,
            "impact_level": request.impact_level,
            "confirmed": confirmed,
            "reason": reason,
            "description": request.description,
        }

        if request.configuration_summary:
            log_entry["configuration"] = request.configuration_summary

        self.audit_log.append(log_entry)

    def get_audit_log(self) -> List[Dict[str, Any]]:
        """Get complete audit log of confirmations.

        Returns:
            List of audit log entries
        """
        return self.audit_log.copy()

    def create_rollout_confirmation(self, plan: Dict[str, Any]) -> ConfirmationRequest:
        """Create confirmation request for a planned rollout.

        Args:
            plan: Plan dictionary returned by RolloutOrchestrator.plan()

        Returns:
            ConfirmationRequest for the rollout
        """
        target_count = plan.get("target_count", 0)
        warnings = []

        if plan.get("include_root"):
            warnings.append("Scope includes the organization root: every account is targeted")

        if plan.get("failure_threshold", 0) > 0:
            warnings.append(
                f"Up to {plan['failure_threshold']} target failure(s) are tolerated "
                "before the rollout halts"
            )

        high_impact = plan.get("include_root") or target_count > HIGH_IMPACT_TARGET_COUNT

        return ConfirmationRequest(
            operation=f"Roll out stack set '{plan.get('stack_set_name')}'",
            description=(
                f"This will deploy template {plan.get('template')} to {target_count} "
                f"target(s) across {len(plan.get('regions', []))} region(s)."
            ),
            impact_level="HIGH" if high_impact else "MEDIUM",
            configuration_summary={
                "regions": plan.get("targets_per_region", {}),
                "concurrency": plan.get("concurrency_limit"),
                "failure_tolerance": plan.get("failure_threshold"),
                "region_concurrency": plan.get("region_concurrency_type"),
            },
            warnings=warnings if warnings else None,
        )

    def create_sync_confirmation(self, preview: Dict[str, Any]) -> ConfirmationRequest:
        """Create confirmation request for an auto-deployment sync.

        Args:
            preview: Delta returned by RolloutOrchestrator.preview_sync()

        Returns:
            ConfirmationRequest listing the targets to deploy and the stacks to delete
        """
        added = [f"{t['account_id']}/{t['region']}" for t in preview.get("added", [])]
        removed = [f"{t['account_id']}/{t['region']}" for t in preview.get("removed", [])]
        deleting = [] if preview.get("retain_stacks") else removed
        warnings = []

        if deleting:
            warnings.append(
                f"Stack {preview.get('stack_name')} will be DELETED from "
                f"{len(deleting)} target(s) that left the scope"
            )
        elif removed:
            warnings.append(
                f"Stacks are retained in {len(removed)} target(s) that left the scope"
            )

        high_impact = bool(deleting) or len(added) > HIGH_IMPACT_TARGET_COUNT

        return ConfirmationRequest(
            operation=f"Sync stack set '{preview.get('stack_set_name')}'",
            description=(
                f"This will deploy template {preview.get('template')} to {len(added)} "
                f"new target(s) and delete stacks from {len(deleting)} target(s)."
            ),
            impact_level="HIGH" if high_impact else "MEDIUM",
            configuration_summary={
                "deploy": added or "none",
                "delete": deleting or "none",
                "failure_tolerance": preview.get("failure_threshold"),
            },
            warnings=warnings if warnings else None,
        )
