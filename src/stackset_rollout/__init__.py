"""StackSet Rollout - Main Package.

This package provides a multi-account, multi-region rollout orchestrator
that applies one CloudFormation template across an AWS Organization.
"""

__version__ = "1.0.0"
__author__ = "StackSet Rollout Team"
