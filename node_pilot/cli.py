"""Main CLI entry point for node pilot."""

import asyncio
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from node_pilot.audit import AuditLogger
from node_pilot.config import DEFAULT_SETTINGS, ConfigLoader, NodePilotConfig
from node_pilot.exceptions import NodePilotError, PreCheckBlockedError
from node_pilot.logging_config import get_logger, setup_logging
from node_pilot.models.health import HealthState
from node_pilot.models.operation import (
    FailurePolicy,
    NodeOutcome,
    OperationKind,
    PlanReport,
    PlanState,
    Strictness,
)
from node_pilot.models.topology import Member, TopologyStatus
from node_pilot.models.workload import PreCheckResult, Verdict
from node_pilot.multicluster import MultiClusterAggregator

app = typer.Typer(
    name="node-pilot",
    help="Safe rolling drain and reboot of Talos Kubernetes nodes",
    add_completion=False,
)

console = Console()
logger = get_logger(__name__)

TALOSCONFIG_OPTION = typer.Option(
    None, "--talosconfig", help="talosconfig file (default: $TALOSCONFIG or ~/.talos/config)"
)
SETTINGS_OPTION = typer.Option(
    None, "--config", help=f"node-pilot settings file (default: {DEFAULT_SETTINGS} if present)"
)

VERDICT_STYLES = {Verdict.SAFE: "green", Verdict.WARN: "yellow", Verdict.BLOCKED: "red"}
OUTCOME_STYLES = {
    NodeOutcome.DONE: "green",
    NodeOutcome.SKIPPED: "yellow",
    NodeOutcome.FAILED: "red",
    NodeOutcome.ABORTED: "magenta",
    NodeOutcome.PENDING: "dim",
}


# Global callback to set up logging
@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    log_file: str | None = typer.Option(None, "--log-file", help="Path to log file"),
):
    """Global options for all commands."""
    log_path = Path(log_file) if log_file else None
    setup_logging(verbose=verbose, log_file=log_path)
    logger.debug("Logging initialized")


def load_config(talosconfig: str | None, settings: str | None) -> NodePilotConfig:
    if settings is None and DEFAULT_SETTINGS.expanduser().exists():
        settings = str(DEFAULT_SETTINGS)
    return ConfigLoader(talosconfig, settings).load()


def build_aggregator(config: NodePilotConfig) -> MultiClusterAggregator:
    return MultiClusterAggregator(config.contexts, AuditLogger(config.audit_log), config.settings)


def _fail(e: NodePilotError) -> None:
    logger.error(f"{type(e).__name__}: {e.message}")
    console.print(f"[red]Error:[/red] {e.message}")
    if e.details:
        console.print(f"[dim]{e.details}[/dim]")
    raise typer.Exit(code=1)


def _selected(config: NodePilotConfig, context: str | None) -> list[str]:
    if context:
        return [config.context(context).name]
    return [c.name for c in config.contexts]


@app.command()
def version() -> None:
    """Show version information."""
    from node_pilot import __version__

    typer.echo(f"node-pilot version {__version__}")


@app.command()
def contexts(
    talosconfig: str | None = TALOSCONFIG_OPTION,
    settings: str | None = SETTINGS_OPTION,
) -> None:
    """List configured cluster contexts."""
    try:
        config = load_config(talosconfig, settings)
    except NodePilotError as e:
        _fail(e)

    table = Table(title="Cluster Contexts")
    table.add_column("Name", style="cyan")
    table.add_column("Endpoints", style="magenta")
    table.add_column("Node hints")
    table.add_column("Default", style="green")
    for ctx in config.contexts:
        table.add_row(
            ctx.name,
            ", ".join(e.address for e in ctx.endpoints),
            ", ".join(h.address for h in ctx.node_hints) or "-",
            "✓" if ctx.name == config.default_context else "",
        )
    console.print(table)


@app.command()
def members(
    context: str | None = typer.Option(None, "--context", "-c", help="Only this context"),
    talosconfig: str | None = TALOSCONFIG_OPTION,
    settings: str | None = SETTINGS_OPTION,
) -> None:
    """
    Resolve and list the real members of each cluster.

    Every configured endpoint and node address is probed; addresses answering
    with the same identity are shown as one member and floating addresses
    are listed separately.
    """
    try:
        config = load_config(talosconfig, settings)
        names = _selected(config, context)
        aggregator = build_aggregator(config)
        snapshots = asyncio.run(aggregator.refresh(names))
    except NodePilotError as e:
        _fail(e)

    table = Table(title="Cluster Members")
    table.add_column("Context", style="cyan")
    table.add_column("Hostname", style="cyan")
    table.add_column("Role", style="magenta")
    table.add_column("Address")
    table.add_column("Reachable via", style="dim")
    for name in names:
        for member in snapshots[name].members:
            table.add_row(
                name, member.hostname, member.role.value, member.address, ", ".join(member.reachable_via)
            )
    console.print(table)

    for name in names:
        snapshot = snapshots[name]
        if snapshot.status == TopologyStatus.UNREACHABLE:
            console.print(f"[red]{name}: no configured address answered[/red]")
        for address in snapshot.dropped_addresses:
            console.print(f"[dim]{name}: {address} is a floating address[/dim]")
        for address, reason in snapshot.failures.items():
            console.print(f"[yellow]{name}: {address} unreachable:[/yellow] {reason}")
        for conflict in snapshot.conflicts:
            roles = ", ".join(f"{a}={r.value}" for a, r in conflict.roles.items())
            console.print(
                f"[red]{name}: {conflict.hostname} reports conflicting roles ({roles}); not listed[/red]"
            )


@app.command()
def health(
    context: str | None = typer.Option(None, "--context", "-c", help="Only this context"),
    talosconfig: str | None = TALOSCONFIG_OPTION,
    settings: str | None = SETTINGS_OPTION,
) -> None:
    """Show etcd health and quorum of each cluster."""
    try:
        config = load_config(talosconfig, settings)
        names = _selected(config, context)
        aggregator = build_aggregator(config)
        snapshots = asyncio.run(aggregator.health(names))
    except NodePilotError as e:
        _fail(e)

    unhealthy = False
    for name in names:
        snapshot = snapshots[name]
        style = "green" if snapshot.state == HealthState.HEALTHY else "red"
        console.print(f"[bold]{name}[/bold]: [{style}]{snapshot.summary()}[/{style}]")

        table = Table()
        table.add_column("Member", style="cyan")
        table.add_column("Healthy")
        table.add_column("Peer confirmations")
        table.add_column("Reason", style="yellow")
        for member in snapshot.members:
            table.add_row(
                member.hostname,
                "[green]✓[/green]" if member.healthy else "[red]✗[/red]",
                str(member.peer_confirmations),
                member.reason or "",
            )
        for hostname, reason in snapshot.unreachable.items():
            table.add_row(hostname, "[red]?[/red]", "-", f"unreachable: {reason}")
        console.print(table)
        unhealthy = unhealthy or snapshot.state != HealthState.HEALTHY

    if unhealthy:
        raise typer.Exit(code=1)


def _print_precheck(result: PreCheckResult) -> None:
    style = VERDICT_STYLES[result.verdict]
    console.print(f"[bold]{result.node}[/bold]: [{style}]{result.verdict.value}[/{style}]")
    for reason in result.reasons:
        marker = "[red]✗[/red]" if reason.blocking else "[yellow]![/yellow]"
        console.print(f"  {marker} {reason.message}")


@app.command()
def precheck(
    nodes: list[str] = typer.Argument(..., help="Nodes to check (hostname or address)"),
    context: str | None = typer.Option(None, "--context", "-c", help="Cluster context"),
    talosconfig: str | None = TALOSCONFIG_OPTION,
    settings: str | None = SETTINGS_OPTION,
) -> None:
    """Check whether draining the given nodes is currently safe for their workloads."""

    async def check(aggregator: MultiClusterAggregator, name: str) -> list[PreCheckResult]:
        runtime = aggregator.runtime(name)
        snapshot = await runtime.topology.refresh()
        targets: list[Member] = []
        for node in nodes:
            member = snapshot.find(node)
            if member is None:
                raise NodePilotError(f"Node '{node}' is not a member of context '{name}'")
            targets.append(member)
        return list(await asyncio.gather(*(runtime.prechecks.check(m) for m in targets)))

    try:
        config = load_config(talosconfig, settings)
        name = config.context(context).name
        results = asyncio.run(check(build_aggregator(config), name))
        for result in results:
            _print_precheck(result)
        blocked = [r.node for r in results if r.blocked]
        if blocked:
            raise PreCheckBlockedError(f"Pre-checks block {', '.join(blocked)}")
    except NodePilotError as e:
        _fail(e)


def _print_report(report: PlanReport) -> None:
    table = Table(title=f"Plan {report.plan.plan_id} ({report.plan.kind.value})")
    table.add_column("#")
    table.add_column("Node", style="cyan")
    table.add_column("Outcome")
    table.add_column("Last step", style="dim")
    table.add_column("Reason", style="yellow")
    for progress in report.nodes:
        style = OUTCOME_STYLES[progress.outcome]
        table.add_row(
            str(progress.position + 1),
            progress.member.hostname,
            f"[{style}]{progress.outcome.value}[/{style}]",
            progress.step.value,
            progress.reason or "",
        )
    console.print(table)
    style = "green" if report.state == PlanState.COMPLETED else "red"
    console.print(
        f"[{style}]Plan {report.state.value}[/{style}]" + (f": {report.reason}" if report.reason else "")
    )


async def _ask_override(member: Member, result: PreCheckResult) -> bool:
    _print_precheck(result)
    # blocking prompt runs in a worker thread
    return await asyncio.to_thread(
        typer.confirm, f"Pre-checks block {member.hostname}. Proceed anyway?", default=False
    )


async def _run_with_progress(aggregator: MultiClusterAggregator, plan) -> PlanReport:
    events = aggregator.runtime(plan.context).orchestrator.events

    def show(event) -> None:
        console.print(f"[dim]{event.timestamp:%H:%M:%S}[/dim] {event.message}")

    async def follow() -> None:
        while True:
            show(await events.get())

    follower = asyncio.create_task(follow())
    try:
        return await aggregator.run(plan, override=_ask_override)
    finally:
        follower.cancel()
        while not events.empty():
            show(events.get_nowait())


@app.command()
def rolling(
    targets: list[str] = typer.Argument(..., help="Nodes in execution order (hostname or address)"),
    context: str | None = typer.Option(None, "--context", "-c", help="Cluster context"),
    kind: OperationKind = typer.Option(OperationKind.REBOOT, "--kind", "-k", help="Operation kind"),
    strict: bool = typer.Option(
        True, "--strict/--force", help="Skip nodes blocked by pre-checks, or ask to override"
    ),
    on_failure: FailurePolicy = typer.Option(
        FailurePolicy.CONTINUE, "--on-failure", help="Continue or abort after a node fails"
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Confirm the plan without prompting"),
    talosconfig: str | None = TALOSCONFIG_OPTION,
    settings: str | None = SETTINGS_OPTION,
) -> None:
    """
    Drain or reboot nodes one at a time, in the given order.

    Each node is cordoned, drained, optionally rebooted and waited for, and
    uncordoned. Etcd quorum is re-checked before every node.
    """
    strictness = Strictness.STRICT if strict else Strictness.FORCE

    async def execute(aggregator: MultiClusterAggregator, name: str) -> PlanReport | None:
        await aggregator.refresh([name])
        plan = await aggregator.plan(name, targets, kind, strictness, on_failure)

        console.print(
            f"[bold]Rolling {kind.value} on '{name}'[/bold] "
            f"({strictness.value}, on failure: {on_failure.value})"
        )
        for position, member in enumerate(plan.targets, start=1):
            console.print(f"  {position}. {member.hostname} ({member.role.value}, {member.address})")

        if not yes and not typer.confirm("Proceed?", default=False):
            console.print("Operation cancelled")
            return None
        return await _run_with_progress(aggregator, aggregator.confirm(plan))

    try:
        config = load_config(talosconfig, settings)
        name = config.context(context).name
        report = asyncio.run(execute(build_aggregator(config), name))
    except NodePilotError as e:
        _fail(e)

    if report is None:
        raise typer.Exit(code=0)
    _print_report(report)
    if report.state != PlanState.COMPLETED or report.skipped:
        raise typer.Exit(code=1)


@app.command()
def audit(
    limit: int = typer.Option(20, "--limit", "-n", help="Number of most recent records"),
    audit_log: str | None = typer.Option(None, "--audit-log", help="Audit log file"),
    talosconfig: str | None = TALOSCONFIG_OPTION,
    settings: str | None = SETTINGS_OPTION,
) -> None:
    """Show the most recent audit records."""
    try:
        path = Path(audit_log) if audit_log else load_config(talosconfig, settings).audit_log
        records = AuditLogger(path).read(limit=limit)
    except NodePilotError as e:
        _fail(e)

    if not records:
        console.print("[yellow]No audit records[/yellow]")
        return

    table = Table(title="Audit Log")
    table.add_column("Time", style="dim")
    table.add_column("Context", style="cyan")
    table.add_column("Plan")
    table.add_column("Node", style="cyan")
    table.add_column("Step")
    table.add_column("Outcome")
    table.add_column("Reason", style="yellow")
    for record in records:
        table.add_row(
            f"{record.timestamp:%Y-%m-%d %H:%M:%S}",
            record.context,
            record.plan_id,
            record.member or "-",
            record.step,
            record.outcome.value,
            record.reason or "",
        )
    console.print(table)


if __name__ == "__main__":
    app()
