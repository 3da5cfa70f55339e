"""Core components for StackSet rollout automation.

This module contains the foundational components including AWS client
management, configuration handling, validation, and safety mechanisms.
"""
