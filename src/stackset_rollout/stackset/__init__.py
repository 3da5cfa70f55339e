"""StackSet rollout components.

Template registry, target resolution, rollout execution and operation
tracking for multi-account, multi-region deployments.
"""
