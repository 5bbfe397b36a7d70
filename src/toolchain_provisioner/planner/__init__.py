"""
Planner package.

This makes the planner folder an explicit package so both Python and mypy
resolve modules consistently.
"""

from toolchain_provisioner.planner.planner import PlannerConfig, ReconcilePlanner

__all__ = ["PlannerConfig", "ReconcilePlanner"]
