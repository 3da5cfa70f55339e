"""StackSet Rollout - Main Entry Point.

Command line interface for validating prerequisites, previewing and
running organization-wide StackSet rollouts.
"""

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import __version__
from .core.aws_client import AWSClientManager
from .core.config import Configuration, ConfigurationError
from .core.safety import SafetyManager
from .core.validator import PrerequisitesValidator
from .stackset.models import DeploymentResult, Target
from .stackset.orchestrator import RolloutOrchestrationError, RolloutOrchestrator
from .stackset.resolver import InvalidScopeError


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments.

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        prog="stackset-rollout",
        description="Multi-account, multi-region StackSet rollout tool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s validate                      # Check prerequisites and configuration
  %(prog)s plan config.yaml              # Preview resolved targets
  %(prog)s deploy --report report.json   # Roll out and save the operation report
  %(prog)s sync --report report.json     # Deploy to accounts added since the report
        """,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"StackSet Rollout v{__version__}",
    )
    parser.add_argument("--profile", help="AWS profile name to use for credentials")
    parser.add_argument(
        "--region", help="AWS region to use (overrides configuration file)"
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (overrides configuration file)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_command(name: str, help_text: str) -> argparse.ArgumentParser:
        command = subparsers.add_parser(name, help=help_text)
        command.add_argument(
            "config_file",
            nargs="?",
            help="Path to configuration file (default: auto-detect config.yaml)",
        )
        return command

    add_command("validate", "Validate prerequisites and configuration")
    add_command("plan", "Preview the targets of a rollout")

    deploy = add_command("deploy", "Roll the template out to all targets")
    deploy.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")
    deploy.add_argument("--report", help="Write the operation report to this JSON file")

    sync = add_command("sync", "Reconcile auto-deployment with organization membership")
    sync.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")
    sync.add_argument(
        "--report", required=True,
        help="Operation report of the previous deploy (updated in place)",
    )

    return parser.parse_args(argv)


def auto_detect_config() -> Optional[str]:
    """Auto-detect configuration file in current directory.

    Returns:
        Path to configuration file if found, None otherwise
    """
    if Path("config.yaml").exists():
        return "config.yaml"

    if Path("config/settings.yaml").exists():
        return "config/settings.yaml"

    return None


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def validate_prerequisites(aws_client: AWSClientManager) -> bool:
    """Validate all prerequisites for a rollout.

    Args:
        aws_client: Configured AWS client manager

    Returns:
        True if all prerequisites are met, False otherwise
    """
    print("Validating prerequisites...")
    print("-" * 50)

    validator = PrerequisitesValidator(aws_client)
    results = validator.validate_all()

    for result in results:
        status_symbol = {
            "PASSED": "✅",
            "FAILED": "❌",
            "WARNING": "⚠️",
            "SKIPPED": "⏭️",
        }.get(result.status.value, "❓")

        print(f"{status_symbol} {result.validator_name}: {result.message}")

        if result.remediation_steps:
            print("   Remediation steps:")
            for step in result.remediation_steps:
                print(f"   • {step}")
            print()

    print("-" * 50)

    is_ready = validator.is_ready_for_deployment(results)
    if is_ready:
        print("✅ All prerequisites validated successfully!")
    else:
        print("❌ Prerequisites validation failed.")
        print("   Please address the issues above before proceeding.")

    return is_ready


def print_plan(plan: Dict[str, Any]) -> None:
    print(f"\n📄 Stack set: {plan['stack_set_name']} ({plan['template']})")
    print(f"   Targets: {plan['target_count']} in {len(plan['regions'])} region(s)")
    for region, count in plan['targets_per_region'].items():
        print(f"   • {region}: {count} account(s)")
    print(f"   Batches: {plan['batch_count']} (concurrency {plan['concurrency_limit']}, "
          f"{plan['region_concurrency_type']})")
    print(f"   Failure tolerance: {plan['failure_threshold']}")


def print_progress(result: DeploymentResult) -> None:
    if result.succeeded:
        print(f"  ✅ {result.target}")
    else:
        print(f"  ❌ {result.target}: {result.error}")


def write_report(path: str, report: Dict[str, Any]) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(report, f, indent=2, default=str)
    print(f"📄 Report written to {path}")


def load_report(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def deployed_targets(report: Dict[str, Any]) -> List[Target]:
    """Read the succeeded targets from a previous operation report."""
    return [
        Target(account_id=entry["account_id"], region=entry["region"])
        for entry in report.get("targets", [])
        if entry.get("status") == "SUCCEEDED"
    ]


def merge_reports(previous: Dict[str, Any], export: Optional[Dict[str, Any]],
                  dropped: List[str]) -> Dict[str, Any]:
    """Carry the previous report's targets into the report of a sync.

    Targets in ``dropped`` (``account/region``) are no longer managed and
    are left out. Targets deployed by the sync operation replace their
    previous entries.
    """
    merged = dict(export) if export else dict(previous)
    new_entries = export["targets"] if export else []
    replaced = {(entry["account_id"], entry["region"]) for entry in new_entries}

    merged["targets"] = [
        entry for entry in previous.get("targets", [])
        if (entry["account_id"], entry["region"]) not in replaced
        and f"{entry['account_id']}/{entry['region']}" not in dropped
    ] + new_entries
    return merged


def run_deploy(args: argparse.Namespace, orchestrator: RolloutOrchestrator) -> int:
    plan = orchestrator.plan()
    print_plan(plan)

    safety = SafetyManager(enable_confirmations=not args.yes)
    if not safety.request_confirmation(safety.create_rollout_confirmation(plan)):
        print("Rollout cancelled.")
        return 1

    targets = [Target(**entry) for entry in plan["targets"]]
    result = orchestrator.start_rollout(targets=targets, progress_callback=print_progress)

    if args.report:
        write_report(args.report, orchestrator.tracker.export(result["operation_id"]))

    return 0 if result["status"] == "SUCCEEDED" else 1


def run_sync(args: argparse.Namespace, orchestrator: RolloutOrchestrator) -> int:
    previous = load_report(args.report)
    deployed = deployed_targets(previous)
    print(f"📄 {len(deployed)} deployed target(s) in {args.report}")

    preview = orchestrator.preview_sync(deployed_targets=deployed)
    if not preview["added"] and not preview["removed"]:
        print("✅ Deployed targets match the current scope, nothing to sync")
        return 0

    safety = SafetyManager(enable_confirmations=not args.yes)
    if not safety.request_confirmation(safety.create_sync_confirmation(preview)):
        print("Sync cancelled.")
        return 1

    summary = orchestrator.sync_auto_deployment(
        progress_callback=print_progress, preview=preview
    )
    print(f"   Added: {len(summary['added'])}, removed: {len(summary['removed'])}, "
          f"deleted: {len(summary['deleted'])}")

    dropped = list(summary["deleted"])
    if summary["retained_stacks"]:
        dropped.extend(summary["removed"])

    operation = summary["operation"]
    export = orchestrator.tracker.export(operation["operation_id"]) if operation else None
    if export or dropped:
        write_report(args.report, merge_reports(previous, export, dropped))

    if operation and operation["status"] != "SUCCEEDED":
        return 1
    return 1 if summary["delete_failures"] else 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main application entry point.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    try:
        args = parse_arguments(argv)

        if args.region:
            os.environ["AWS_REGION"] = args.region

        config_path = args.config_file or auto_detect_config()
        if not config_path:
            print("❌ No configuration file found.")
            print("   Please create config.yaml or specify a configuration file.")
            return 1

        try:
            config = Configuration(config_path)
        except ConfigurationError as e:
            print(f"❌ Configuration error: {e}")
            return 1

        configure_logging(args.log_level or config.get_log_level())
        print(f"📄 Using configuration file: {config_path}")

        try:
            aws_client = AWSClientManager(
                profile_name=args.profile or config.get_profile_name(),
                region_name=config.get_home_region(),
            )
        except Exception as e:
            print(f"❌ AWS client initialization failed: {e}")
            return 1

        if args.command == "validate":
            return 0 if validate_prerequisites(aws_client) else 1

        orchestrator = RolloutOrchestrator(config, aws_client)

        if args.command == "plan":
            print_plan(orchestrator.plan())
            return 0
        if args.command == "deploy":
            return run_deploy(args, orchestrator)
        return run_sync(args, orchestrator)

    except (InvalidScopeError, RolloutOrchestrationError) as e:
        print(f"\n❌ {e}")
        return 1

    except KeyboardInterrupt:
        print("\n\n👋 Operation cancelled by user.")
        return 130

    except Exception as e:
        print(f"\n❌ Unexpected error: {e}")
        print("   Please check your configuration and try again.")
        return 1


if __name__ == "__main__":
    sys.exit(main())
