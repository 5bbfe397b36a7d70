"""
Teardown guard.

Purpose
Convert an operator confirmation into an execution decision for teardown.

Teardown deletes every instance and its data. The guard only allows it when
the operator typed the exact confirmation token. Case and surrounding
whitespace matter, so "destroy" or "DESTROY " are refused.

The decision is made before the provider is contacted at all.
"""

from __future__ import annotations

from dataclasses import dataclass

from toolchain_provisioner.agent.execution_mode import ExecutionMode
from toolchain_provisioner.core.errors import ConfirmationRequired

DESTROY_TOKEN = "DESTROY"


@dataclass(frozen=True)
class GuardDecision:
    """
    Guard decision.

    mode
    apply when teardown may proceed, dry_run otherwise

    allowed
    If False, the engine must not call the provider.

    reasons
    Human readable reasons suitable for the terminal.
    """

    mode: ExecutionMode
    allowed: bool
    reasons: list[str]


@dataclass(frozen=True)
class GuardConfig:
    """
    Guard configuration.

    token
    The exact text the operator must type.
    """

    token: str = DESTROY_TOKEN


class TeardownGuard:
    """Decide whether a teardown may run."""

    def __init__(self, config: GuardConfig | None = None) -> None:
        self._config = config or GuardConfig()

    @property
    def token(self) -> str:
        return self._config.token

    def decide(self, confirmation: str | None) -> GuardDecision:
        if confirmation is None or confirmation == "":
            return GuardDecision(
                mode=ExecutionMode.dry_run,
                allowed=False,
                reasons=["no confirmation given"],
            )

        if confirmation != self._config.token:
            return GuardDecision(
                mode=ExecutionMode.dry_run,
                allowed=False,
                reasons=[f"confirmation {confirmation!r} does not match the required token"],
            )

        return GuardDecision(
            mode=ExecutionMode.apply,
            allowed=True,
            reasons=["operator confirmed permanent deletion"],
        )

    def require(self, confirmation: str | None) -> GuardDecision:
        """Return an allowing decision or raise ConfirmationRequired."""
        decision = self.decide(confirmation)
        if not decision.allowed:
            raise ConfirmationRequired(
                "; ".join(decision.reasons),
                subject="teardown",
                remediation=f"type {self._config.token} exactly to delete all instances and their data",
            )
        return decision
