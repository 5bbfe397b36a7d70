"""
Error taxonomy.

We separate error types so callers can react correctly.
Example:
PlanConflict must stop before any provider call and wait for a human decision.
ProvisionFailed aborts the remaining plan but leaves applied changes in place.
ConnectivityTimeout, HostAccessDenied and StepFailed are recorded per host and
never stop other hosts.
PreconditionUnmet fails fast without contacting the certificate authority.

Every error names its subject (a resource, host or operation) and a
remediation, and str(err) includes both so the CLI can print it directly.
"""

from __future__ import annotations


class ProvisionerError(Exception):
    """Base class for all provisioner exceptions."""

    remediation = ""

    def __init__(self, message: str, subject: str = "", remediation: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.subject = subject
        if remediation is not None:
            self.remediation = remediation

    def __str__(self) -> str:
        text = self.message
        if self.subject and self.subject not in text:
            text = f"{self.subject}: {text}"
        if self.remediation:
            text = f"{text} ({self.remediation})"
        return text


class PlanConflict(ProvisionerError):
    """Raised when observed state diverges from desired state in a way that needs a human."""

    remediation = "delete or rename the resource explicitly, then run provision again"


class ProvisionFailed(ProvisionerError):
    """Raised when a provider operation fails, times out or exhausts its retries."""

    remediation = "check provider quota and permissions, then run provision again to resume"

    def __init__(self, operation: str, cause: object, remediation: str | None = None) -> None:
        super().__init__(f"{operation} failed: {cause}", subject=operation, remediation=remediation)
        self.operation = operation
        self.cause = cause


class ProvisionCancelled(ProvisionerError):
    """Raised when an abort was requested. Applied operations stay in place."""

    remediation = "run provision again to resume from the current state"


class ConnectivityTimeout(ProvisionerError):
    """Raised when a host does not accept a remote channel within the startup window."""

    remediation = "check that the instance is running and that the firewall allows ssh"

    def __init__(self, host: str, waited_seconds: float, cause: object = None) -> None:
        message = f"host unreachable after {waited_seconds:.0f}s"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message, subject=host)
        self.host = host
        self.cause = cause


class StepFailed(ProvisionerError):
    """Raised when a configuration step does not reach its postcondition."""

    remediation = "inspect the host, fix the cause and run configure again"

    def __init__(self, host: str, step: str, detail: str) -> None:
        super().__init__(f"step {step} failed: {detail}", subject=host)
        self.host = host
        self.step = step
        self.detail = detail


class PreconditionUnmet(ProvisionerError):
    """Raised when an operation is attempted before its external precondition holds."""


class ConfirmationRequired(ProvisionerError):
    """Raised when a destructive command is invoked without the exact confirmation token."""


class ConfigError(ProvisionerError):
    """Raised when the settings file is missing or invalid."""

    remediation = "fix the settings file and run the command again"


class InventoryMissing(ProvisionerError):
    """Raised when a command needs the inventory record and none exists."""

    remediation = "run provision first"


class InventoryCorrupt(ProvisionerError):
    """Raised when the inventory record exists but cannot be read back."""

    remediation = "fix or delete the file, then re-run provision"


class HostAccessDenied(ProvisionerError):
    """Raised when a host rejects our ssh credentials. Retrying does not help."""

    remediation = "check ssh_user and that the public key was installed on the instance"

    def __init__(self, host: str, cause: object = None) -> None:
        message = "host rejected the ssh credentials"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message, subject=host)
        self.host = host
        self.cause = cause
