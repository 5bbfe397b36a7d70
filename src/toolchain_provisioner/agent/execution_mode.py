"""
Execution modes.

apply
Plan and apply the plan with the executor.

dry_run
Build and report the plan, but do not apply it. The provider is only read.
"""

from __future__ import annotations

from enum import StrEnum


class ExecutionMode(StrEnum):
    apply = "apply"
    dry_run = "dry_run"
