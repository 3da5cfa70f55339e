"""Configuration management for StackSet rollout automation.

This module handles YAML configuration loading, validation, and
environment variable override support for the stack set definition,
deployment targets and operation preferences.
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Optional
import yaml

from ..stackset.models import (
    ALLOWED_CAPABILITIES,
    AccountFilterType,
    DeploymentScope,
    InvalidPreferencesError,
    OperationPreferences,
    RegionConcurrencyType,
)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""

    pass


class Configuration:
    """Configuration management with YAML loading and validation.

    This class handles loading configuration from YAML files,
    validating the structure, and supporting environment variable
    overrides.
    """

    DEFAULT_EXECUTION_ROLE = "AWSControlTowerExecution"
    DEFAULT_STACK_TIMEOUT_SECONDS = 1800

    def __init__(self, config_path: Optional[str] = None) -> None:
        """Initialize configuration manager.

        Args:
            config_path: Optional path to configuration file.
                        If None, auto-detects config.yaml in current directory.

        Raises:
            ConfigurationError: When configuration file is invalid
        """
        self._config: Dict[str, Any] = {}
        self._config_path = self._resolve_config_path(config_path)
        self._load_configuration()
        self._apply_environment_overrides()
        self._validate_configuration()

    def _resolve_config_path(self, config_path: Optional[str]) -> Path:
        """Resolve configuration file path.

        Args:
            config_path: Optional path to configuration file

        Returns:
            Resolved Path object to configuration file

        Raises:
            ConfigurationError: When configuration file not found
        """
        if config_path:
            path = Path(config_path)
        else:
            # Auto-detect config.yaml in current directory
            path = Path("config.yaml")
            if not path.exists():
                path = Path("config/settings.yaml")

        if not path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {path}. "
                "Please create a configuration file or specify a valid path."
            )

        return path

    def _load_configuration(self) -> None:
        """Load configuration from YAML file.

        Raises:
            ConfigurationError: When YAML file is invalid
        """
        try:
            with open(self._config_path, "r", encoding="utf-8") as f:
                self._config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Invalid YAML in configuration file {self._config_path}: {e}"
            )
        except IOError as e:
            raise ConfigurationError(
                f"Unable to read configuration file {self._config_path}: {e}"
            )

        if not isinstance(self._config, dict):
            raise ConfigurationError(
                f"Configuration file {self._config_path} must contain a mapping"
            )

    def _validate_configuration(self) -> None:
        """Validate configuration has required fields.

        Raises:
            ConfigurationError: When required fields are missing or invalid
        """
        for section in ("aws", "stack_set"):
            if section not in self._config:
                raise ConfigurationError(f"Required configuration section '{section}' is missing")
            if not isinstance(self._config[section], dict):
                raise ConfigurationError(f"Configuration section '{section}' must be a mapping")

        home_region = self._config["aws"].get("home_region")
        if not isinstance(home_region, str) or not home_region:
            raise ConfigurationError("Required field 'aws.home_region' must be a non-empty string")

        stack_set = self._config["stack_set"]
        for field in ("name", "template_file"):
            if not stack_set.get(field):
                raise ConfigurationError(f"Required field 'stack_set.{field}' is missing")

        capabilities = stack_set.get("capabilities", [])
        if not isinstance(capabilities, list):
            raise ConfigurationError("Field 'stack_set.capabilities' must be a list")
        for capability in capabilities:
            if capability not in ALLOWED_CAPABILITIES:
                raise ConfigurationError(
                    f"Unknown capability '{capability}'. "
                    f"Allowed: {', '.join(ALLOWED_CAPABILITIES)}"
                )

        if not isinstance(stack_set.get("parameters", {}), dict):
            raise ConfigurationError("Field 'stack_set.parameters' must be a mapping")

        targets = self._config.setdefault("deployment_targets", {}) or {}
        self._config["deployment_targets"] = targets
        for field in ("accounts", "organizational_units", "exclusions", "regions"):
            if not isinstance(targets.get(field, []), list):
                raise ConfigurationError(f"Field 'deployment_targets.{field}' must be a list")

        filter_type = targets.get("account_filter_type", "NONE")
        if filter_type not in AccountFilterType.__members__:
            raise ConfigurationError(
                f"Field 'deployment_targets.account_filter_type' must be one of "
                f"{', '.join(AccountFilterType.__members__)}, got '{filter_type}'"
            )

        # Building the preferences validates them
        self.get_operation_preferences()

    def _apply_environment_overrides(self) -> None:
        """Apply environment variable overrides to configuration."""
        # AWS region override
        if "AWS_REGION" in os.environ:
            self._set_nested_value("aws.home_region", os.environ["AWS_REGION"])

        # AWS profile override
        if "AWS_PROFILE" in os.environ:
            self._set_nested_value(
                "aws.profile_name", os.environ["AWS_PROFILE"]
            )

        if "STACKSET_ROLLOUT_LOG_LEVEL" in os.environ:
            self._set_nested_value(
                "logging.level", os.environ["STACKSET_ROLLOUT_LOG_LEVEL"]
            )

    def _set_nested_value(self, key_path: str, value: Any) -> None:
        """Set nested configuration value using dot notation.

        Args:
            key_path: Dot-separated key path (e.g., 'aws.home_region')
            value: Value to set
        """
        keys = key_path.split(".")
        current = self._config

        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value

    def get(self, key_path: str, default: Any = None) -> Any:
        """Get configuration value using dot notation.

        Args:
            key_path: Dot-separated key path (e.g., 'aws.home_region')
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        keys = key_path.split(".")
        current = self._config

        try:
            for key in keys:
                current = current[key]
            return current
        except (KeyError, TypeError):
            return default

    def get_home_region(self) -> str:
        """Get AWS home region.

        Returns:
            AWS home region string
        """
        return self.get("aws.home_region")

    def get_profile_name(self) -> Optional[str]:
        return self.get("aws.profile_name")

    def get_regions(self) -> List[str]:
        """Get deployment regions, defaulting to the home region.

        Returns:
            List of AWS region strings
        """
        regions = self.get("deployment_targets.regions", [])
        if not regions:
            regions = [self.get_home_region()]
        return regions

    def get_stack_set_name(self) -> str:
        return self.get("stack_set.name")

    def get_template_path(self) -> Path:
        """Get template file path, relative paths resolved against the config file."""
        path = Path(self.get("stack_set.template_file"))
        if not path.is_absolute():
            path = self._config_path.parent / path
        return path

    def get_capabilities(self) -> List[str]:
        return list(self.get("stack_set.capabilities", []) or [])

    def get_parameters(self) -> Dict[str, str]:
        return dict(self.get("stack_set.parameters", {}) or {})

    def get_execution_role_name(self) -> str:
        return self.get("stack_set.execution_role_name") or self.DEFAULT_EXECUTION_ROLE

    def allow_template_update(self) -> bool:
        return bool(self.get("stack_set.allow_update", False))

    def is_auto_deployment_enabled(self) -> bool:
        return bool(self.get("stack_set.auto_deployment.enabled", False))

    def retain_stacks_on_account_removal(self) -> bool:
        return bool(self.get("stack_set.auto_deployment.retain_stacks_on_account_removal", False))

    def get_stack_timeout_seconds(self) -> int:
        return int(self.get("operation_preferences.stack_timeout_seconds",
                            self.DEFAULT_STACK_TIMEOUT_SECONDS))

    def get_log_level(self) -> str:
        return str(self.get("logging.level", "WARNING")).upper()

    def get_scope(self) -> DeploymentScope:
        """Build the deployment scope from the deployment_targets section.

        Returns:
            DeploymentScope for target resolution
        """
        targets = self.get("deployment_targets", {})
        return DeploymentScope(
            accounts=[str(a) for a in targets.get("accounts", [])],
            organizational_units=list(targets.get("organizational_units", [])),
            include_root=bool(targets.get("include_root", False)),
            exclusions=[str(a) for a in targets.get("exclusions", [])],
            account_filter_type=AccountFilterType[targets.get("account_filter_type", "NONE")],
            regions=self.get_regions(),
            include_nested_ous=bool(targets.get("include_nested_ous", True)),
        )

    def get_operation_preferences(self) -> OperationPreferences:
        """Build operation preferences from the operation_preferences section.

        Returns:
            Validated OperationPreferences

        Raises:
            ConfigurationError: When the preferences are invalid
        """
        section = self.get("operation_preferences", {}) or {}
        defaults = OperationPreferences.default()

        tolerance_count = section.get("failure_tolerance_count")
        tolerance_percentage = section.get("failure_tolerance_percentage")
        if tolerance_count is None and tolerance_percentage is None:
            tolerance_count = defaults.failure_tolerance_count

        concurrent_count = section.get("max_concurrent_count")
        concurrent_percentage = section.get("max_concurrent_percentage")
        if concurrent_count is None and concurrent_percentage is None:
            concurrent_count = defaults.max_concurrent_count

        region_type = section.get("region_concurrency_type", "PARALLEL")
        if region_type not in RegionConcurrencyType.__members__:
            raise ConfigurationError(
                f"Field 'operation_preferences.region_concurrency_type' must be "
                f"PARALLEL or SEQUENTIAL, got '{region_type}'"
            )

        preferences = OperationPreferences(
            failure_tolerance_count=tolerance_count,
            failure_tolerance_percentage=tolerance_percentage,
            max_concurrent_count=concurrent_count,
            max_concurrent_percentage=concurrent_percentage,
            region_concurrency_type=RegionConcurrencyType[region_type],
        )
        try:
            preferences.validate()
        except InvalidPreferencesError as e:
            raise ConfigurationError(f"Invalid operation preferences: {e}")
        return preferences

    def to_dict(self) -> Dict[str, Any]:
        """Get complete configuration as dictionary.

        Returns:
            Complete configuration dictionary
        """
        return self._config.copy()
