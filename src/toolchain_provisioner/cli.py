"""
Command line interface for toolchain-provisioner.

Provisions the Jenkins, SonarQube and Nexus hosts on Compute Engine,
configures them over SSH and manages them afterwards.

Typical session
toolchain-provisioner check
toolchain-provisioner provision
toolchain-provisioner configure
(create the DNS records shown by info and wait for propagation)
toolchain-provisioner issue-certificates
toolchain-provisioner credentials

Exit codes
0 success, 1 a command failed, 2 teardown was not confirmed.
"""

from __future__ import annotations

import contextlib
import functools
import json
import signal
import threading
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

import click

from toolchain_provisioner import __version__
from toolchain_provisioner.agent.costs import render_costs
from toolchain_provisioner.agent.engine import ProvisioningEngine
from toolchain_provisioner.agent.execution_mode import ExecutionMode
from toolchain_provisioner.agent.guard import DESTROY_TOKEN
from toolchain_provisioner.agent.prerequisites import check_prerequisites
from toolchain_provisioner.config.settings import load_settings
from toolchain_provisioner.core.errors import ConfirmationRequired, ProvisionerError
from toolchain_provisioner.core.serialization import plan_to_dict, report_to_dict
from toolchain_provisioner.core.types import ConfigReport, Plan, PlanMode, StepStatus
from toolchain_provisioner.inventory.render import render_info
from toolchain_provisioner.logging_config import configure_logging


def _default_engine_factory(config_path: Optional[Path]) -> ProvisioningEngine:
    return ProvisioningEngine.from_settings(load_settings(config_path))


def _engine(ctx: click.Context) -> ProvisioningEngine:
    return ctx.obj["engine_factory"](ctx.obj["config_path"])


def _reports_errors(fn: Callable[..., Any]) -> Callable[..., Any]:
    """Print ProvisionerError as one line and exit nonzero."""

    @functools.wraps(fn)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except ProvisionerError as e:
            click.echo(f"✗ {e}", err=True)
            raise SystemExit(2 if isinstance(e, ConfirmationRequired) else 1)

    return wrapper


@contextlib.contextmanager
def _cancel_on_interrupt(engine: ProvisioningEngine) -> Iterator[None]:
    """Turn Ctrl-C into a cooperative abort of the running plan."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    previous = signal.getsignal(signal.SIGINT)
    signal.signal(signal.SIGINT, lambda signum, frame: engine.cancel())
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _echo_plan(plan: Plan) -> None:
    click.echo(plan.explanation)
    for index, wave in enumerate(plan.waves, start=1):
        for op in wave:
            click.echo(f"  [{index}] {op.describe()}  ({op.reason})")


def _echo_report(report: ConfigReport) -> None:
    marks = {
        StepStatus.applied: "+",
        StepStatus.skipped: "=",
        StepStatus.failed: "✗",
        StepStatus.not_run: "-",
    }
    for host in report.hosts:
        state = "ok" if host.ok else "FAILED"
        click.echo(
            f"{host.role} ({host.host}): {state}, "
            f"{host.count(StepStatus.applied)} applied, {host.count(StepStatus.skipped)} unchanged"
        )
        for outcome in host.outcomes:
            detail = f"  {outcome.detail}" if outcome.detail else ""
            click.echo(f"  {marks[outcome.status]} {outcome.step}{detail}")
        if host.error is not None:
            click.echo(f"  ✗ {host.error}", err=True)


def _finish_report(report: ConfigReport, as_json: bool, success: str) -> None:
    if as_json:
        click.echo(json.dumps(report_to_dict(report), indent=2))
    else:
        _echo_report(report)
    if not report.ok:
        raise SystemExit(1)
    if not as_json:
        click.echo(f"✓ {success}")


@click.group()
@click.version_option(version=__version__, prog_name="toolchain-provisioner")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    envvar="TOOLCHAIN_CONFIG",
    default=None,
    help="Settings file. Defaults to provisioner.yaml.",
)
@click.option("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR.")
@click.option("--log-format", type=click.Choice(["text", "json"]), default=None)
@click.pass_context
def main(ctx: click.Context, config_path: Optional[Path], log_level: Optional[str], log_format: Optional[str]) -> None:
    """
    toolchain-provisioner - CI toolchain hosts on Compute Engine.
    """
    configure_logging(level=log_level, fmt=log_format)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj.setdefault("engine_factory", _default_engine_factory)


@main.command()
@click.pass_context
def check(ctx: click.Context) -> None:
    """Check local prerequisites."""
    report = check_prerequisites(ctx.obj["config_path"])
    for c in report.checks:
        mark = "✓" if c.ok else "✗"
        click.echo(f"{mark} {c.name}: {c.detail}")
    if not report.ok:
        raise SystemExit(1)


@main.command()
@click.option("--dry-run", is_flag=True, help="Show the plan without applying it.")
@click.option("--reconcile", is_flag=True, help="Also delete managed resources that are no longer desired.")
@click.option("--json", "as_json", is_flag=True, help="Print the plan as JSON.")
@click.pass_context
@_reports_errors
def provision(ctx: click.Context, dry_run: bool, reconcile: bool, as_json: bool) -> None:
    """Create the network, firewall rules and instances."""
    engine = _engine(ctx)
    mode = PlanMode.reconcile if reconcile else PlanMode.provision
    with _cancel_on_interrupt(engine):
        result = engine.provision(dry_run=dry_run, mode=mode)

    if as_json:
        click.echo(json.dumps(plan_to_dict(result.plan), indent=2))
        return
    _echo_plan(result.plan)
    if result.mode == ExecutionMode.dry_run:
        click.echo("Dry run, nothing applied.")
        return

    click.echo(f"✓ Inventory written to {engine.store.path}")
    if result.inventory is not None:
        click.echo(render_info(result.inventory))


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON.")
@click.pass_context
@_reports_errors
def configure(ctx: click.Context, as_json: bool) -> None:
    """Install Docker, nginx and the services on every host."""
    report = _engine(ctx).configure()
    _finish_report(report, as_json, "All hosts configured")


@main.command("issue-certificates")
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON.")
@click.pass_context
@_reports_errors
def issue_certificates(ctx: click.Context, as_json: bool) -> None:
    """Issue TLS certificates once DNS points at the hosts."""
    report = _engine(ctx).issue_certificates()
    _finish_report(report, as_json, "Certificates in place")


@main.command()
@click.pass_context
@_reports_errors
def status(ctx: click.Context) -> None:
    """Show running containers on every host."""
    for host in _engine(ctx).status():
        if not host.reachable:
            click.echo(f"{host.role} ({host.host}): unreachable, {host.error}")
            continue
        click.echo(f"{host.role} ({host.host}):")
        if host.error:
            click.echo(f"  ✗ {host.error}")
        for line in host.containers:
            click.echo(f"  {line}")


@main.command()
@click.pass_context
@_reports_errors
def credentials(ctx: click.Context) -> None:
    """Show the initial admin credentials of each service."""
    for cred in _engine(ctx).credentials():
        click.echo(f"{cred.service}:")
        click.echo(f"  Username: {cred.username}")
        if cred.password is not None:
            click.echo(f"  Password: {cred.password}")
        else:
            click.echo(f"  Password: {cred.note}")


@main.command()
@click.pass_context
@_reports_errors
def verify(ctx: click.Context) -> None:
    """Probe every service port on its host."""
    checks = _engine(ctx).verify()
    for c in checks:
        mark = "✓" if c.ok else "✗"
        click.echo(f"{mark} {c.service} ({c.role}) port {c.port}: HTTP {c.http_code}")
    if not all(c.ok for c in checks):
        raise SystemExit(1)


@main.command()
@click.pass_context
@_reports_errors
def info(ctx: click.Context) -> None:
    """Show hosts, DNS records to create and next steps."""
    click.echo(_engine(ctx).info(), nl=False)


@main.command()
@click.pass_context
@_reports_errors
def costs(ctx: click.Context) -> None:
    """Estimate the monthly cost of the configured hosts."""
    click.echo(render_costs(_engine(ctx).estimate_costs()), nl=False)


@main.command()
@click.option("--confirm", "confirmation", default=None, help=f"Type {DESTROY_TOKEN} to confirm.")
@click.pass_context
@_reports_errors
def teardown(ctx: click.Context, confirmation: Optional[str]) -> None:
    """Permanently delete every instance, its data and the network."""
    if confirmation is None:
        click.echo("This deletes all instances and their data. It cannot be undone.", err=True)
        confirmation = click.prompt(f"Type '{DESTROY_TOKEN}' to confirm", default="", show_default=False)

    engine = _engine(ctx)
    with _cancel_on_interrupt(engine):
        result = engine.teardown(confirmation)

    _echo_plan(result.plan)
    for path in result.removed_files:
        click.echo(f"removed {path}")
    click.echo("✓ Infrastructure destroyed")


if __name__ == "__main__":
    main()
