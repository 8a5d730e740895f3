"""Main CLI entry point for Hotswap.

This module provides the Typer application used by pipelines and operators to
deploy a new image into a target, resolve interrupted runs, prune old images
and inspect a target's containers.

Usage:
    hotswap deploy api ghcr.io/acme/api:v2 -p 8080:80 -e LOG_LEVEL=info
    hotswap recover api -p 8080:80
    hotswap prune --age-hours 72 --keep 3
    hotswap status api

Exit codes of ``deploy``:
    0  promoted
    1  rolled back (the previous version keeps serving)
    2  fatal failure or invalid input
    3  another deployment of the target is in progress
"""

from __future__ import annotations

import asyncio
import signal
from datetime import timedelta
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from hotswap.config import HotswapConfig, load_config
from hotswap.logging import setup_logging
from hotswap.orchestrator.deployer import DeploymentOrchestrator
from hotswap.orchestrator.locks import DeploymentInProgressError
from hotswap.orchestrator.models import DeploymentOutcome, DeploymentTarget, DeployOptions, OutcomeKind
from hotswap.orchestrator.recovery import RecoveryReport
from hotswap.pipeline.container import ContainerRuntime, DockerRuntime, is_backup_name, is_retained_name
from hotswap.pipeline.health import HealthProbe
from hotswap.pipeline.images import ImageGarbageCollector, PruneReport

EXIT_IN_PROGRESS = 3
EXIT_FATAL = 2

app = typer.Typer(
    name="hotswap",
    help="Hotswap: container deployment with health verification and automatic rollback",
    no_args_is_help=True,
)

console = Console()

_OUTCOME_STYLES = {
    OutcomeKind.PROMOTED: ("green", "Deployment Promoted"),
    OutcomeKind.ROLLED_BACK: ("yellow", "Deployment Rolled Back"),
    OutcomeKind.FAILED_FATAL: ("red", "Deployment Failed"),
}


def build_runtime(config: HotswapConfig) -> ContainerRuntime:
    """Create the container runtime client for the configured engine."""
    return DockerRuntime(config.docker)


def build_prober(config: HotswapConfig) -> HealthProbe:
    """Create the health prober."""
    return HealthProbe(config.health)


class AppContext:
    """Application context shared across CLI commands.

    Attributes:
        config: Loaded Hotswap configuration
    """

    def __init__(self, config: HotswapConfig):
        self.config = config

    def create_orchestrator(self) -> DeploymentOrchestrator:
        """Build an orchestrator with a fresh runtime client and prober."""
        return DeploymentOrchestrator(
            runtime=build_runtime(self.config),
            prober=build_prober(self.config),
            config=self.config,
        )


# Global context holder
_app_context: AppContext | None = None


def get_app_context() -> AppContext:
    """Get the shared application context.

    Raises:
        RuntimeError: If context has not been initialized
    """
    if _app_context is None:
        raise RuntimeError("Application context not initialized. Call initialize_context first.")
    return _app_context


def initialize_context(config: HotswapConfig) -> AppContext:
    """Initialize the global application context."""
    global _app_context
    _app_context = AppContext(config)
    return _app_context


def parse_ports(values: list[str] | None) -> dict[int, int | None]:
    """Parse ``HOST:CONTAINER`` (or bare ``PORT``) mappings into container -> host ports.

    Raises:
        ValueError: On malformed mappings
    """
    ports: dict[int, int | None] = {}
    for value in values or []:
        host, sep, container = value.partition(":")
        if not sep:
            container = host
        try:
            host_port = int(host) if host else None
            container_port = int(container)
        except ValueError:
            raise ValueError(f"Invalid port mapping: {value!r} (expected HOST:CONTAINER)") from None
        ports[container_port] = host_port
    return ports


def parse_env(values: list[str] | None) -> dict[str, str]:
    """Parse ``KEY=VALUE`` pairs.

    Raises:
        ValueError: On entries without ``=`` or with an empty key
    """
    env: dict[str, str] = {}
    for value in values or []:
        key, sep, val = value.partition("=")
        if not sep or not key:
            raise ValueError(f"Invalid environment variable: {value!r} (expected KEY=VALUE)")
        env[key] = val
    return env


def render_outcome(outcome: DeploymentOutcome) -> Panel:
    """Render a deployment outcome as a Rich panel."""
    color, title = _OUTCOME_STYLES[outcome.kind]

    table = Table(show_header=False, box=None)
    table.add_column("Field", style="bold cyan")
    table.add_column("Value")
    table.add_row("Target", outcome.target)
    table.add_row("Image", outcome.image)
    table.add_row("Run ID", outcome.run_id)
    table.add_row("Stage reached", outcome.stage_reached.value)
    table.add_row("Cause", outcome.cause)
    if outcome.failure is not None:
        table.add_row("Failure", outcome.failure.value)
    if outcome.previous_image:
        table.add_row("Previous image", outcome.previous_image)
    if outcome.instance is not None:
        table.add_row(
            "Running",
            f"{outcome.instance.name} ({outcome.instance.container_id}) on {outcome.instance.image}"
            f" [{outcome.instance.state.value}]",
        )
    if outcome.health is not None:
        table.add_row("Health", outcome.health.describe())
    if outcome.pruned_images:
        table.add_row("Pruned images", str(len(outcome.pruned_images)))
    for warning in outcome.warnings:
        table.add_row("Warning", f"[yellow]{warning}[/yellow]")
    table.add_row("Duration", f"{outcome.duration_seconds:.1f}s")

    return Panel(table, title=f"[bold {color}]{title}[/bold {color}]", border_style=color)


def render_recovery(report: RecoveryReport) -> Table:
    """Render a recovery report as a Rich table."""
    table = Table(title=f"Recovery: {report.target}", show_header=False)
    table.add_column("Field", style="bold cyan")
    table.add_column("Value")
    table.add_row("Action", report.action.value)
    if report.restored_backup:
        table.add_row("Restored backup", report.restored_backup)
    if report.removed_instance:
        table.add_row("Removed container", report.removed_instance)
    table.add_row("Discarded backups", ", ".join(report.discarded_backups) or "-")
    for error in report.errors:
        table.add_row("Error", f"[red]{error}[/red]")
    return table


def render_prune(report: PruneReport) -> Table:
    """Render a garbage collection report as a Rich table."""
    table = Table(title="Image Garbage Collection", show_header=False)
    table.add_column("Field", style="bold cyan")
    table.add_column("Value")
    table.add_row("Removed", str(len(report.removed)))
    table.add_row("Kept", str(len(report.kept)))
    for image_id, error in report.errors.items():
        table.add_row(f"Error {image_id[:19]}", f"[red]{error}[/red]")
    if report.error:
        table.add_row("Error", f"[red]{report.error}[/red]")
    return table


async def _close(orchestrator: DeploymentOrchestrator) -> None:
    await orchestrator.prober.close()
    await orchestrator.runtime.close()


@app.command()
def deploy(
    target: Annotated[str, typer.Argument(help="Target (container) name")],
    image: Annotated[str, typer.Argument(help="Image reference to deploy")],
    publish: Annotated[
        Optional[list[str]],
        typer.Option("--publish", "-p", help="Port mapping HOST:CONTAINER (repeatable)"),
    ] = None,
    env: Annotated[
        Optional[list[str]],
        typer.Option("--env", "-e", help="Environment variable KEY=VALUE (repeatable)"),
    ] = None,
    timeout: Annotated[
        Optional[float],
        typer.Option("--timeout", help="Health check deadline in seconds"),
    ] = None,
    interval: Annotated[
        Optional[float],
        typer.Option("--interval", help="Seconds between health probes"),
    ] = None,
    health_path: Annotated[
        Optional[str],
        typer.Option("--health-path", help="Health endpoint path"),
    ] = None,
    health_url: Annotated[
        Optional[str],
        typer.Option("--health-url", help="Full health endpoint URL"),
    ] = None,
    environment: Annotated[
        str,
        typer.Option("--environment", help="Environment label for the container"),
    ] = "production",
    deadline: Annotated[
        Optional[float],
        typer.Option("--deadline", help="Upper bound on the whole run in seconds"),
    ] = None,
    keep_backup: Annotated[
        bool,
        typer.Option("--keep-backup", help="Keep the stopped backup after promotion"),
    ] = False,
    no_prune: Annotated[
        bool,
        typer.Option("--no-prune", help="Skip image garbage collection"),
    ] = False,
) -> None:
    """Deploy IMAGE into TARGET, verify its health, and roll back on failure."""
    ctx = get_app_context()

    try:
        deploy_target = DeploymentTarget(name=target, environment=environment)
        options = DeployOptions.from_config(
            ctx.config,
            ports=parse_ports(publish),
            env=parse_env(env),
            health_timeout_seconds=timeout,
            health_interval_seconds=interval,
            health_path=health_path,
            health_url=health_url,
            deadline_seconds=deadline,
            keep_backup_on_success=True if keep_backup else None,
            prune_images=False if no_prune else None,
        )
        options.resolve_health_url(deploy_target)
    except ValueError as e:
        console.print(f"[red]Invalid deployment options:[/red] {e}")
        raise typer.Exit(code=EXIT_FATAL)

    console.print(
        Panel(
            f"[bold]Target:[/bold] {deploy_target.name}\n"
            f"[bold]Image:[/bold] {image}\n"
            f"[bold]Health:[/bold] {options.resolve_health_url(deploy_target)}\n"
            f"[bold]Timeout:[/bold] {options.health_timeout_seconds}s",
            title="Starting Deployment",
            border_style="cyan",
        )
    )

    cancel = asyncio.Event()

    def signal_handler(sig, frame):
        console.print("[yellow]Cancellation requested. Rolling back...[/yellow]")
        cancel.set()

    previous_handlers = {
        sig: signal.signal(sig, signal_handler) for sig in (signal.SIGINT, signal.SIGTERM)
    }

    async def run_deploy() -> DeploymentOutcome:
        orchestrator = ctx.create_orchestrator()
        try:
            return await orchestrator.deploy(deploy_target, image, options, cancel=cancel)
        finally:
            await _close(orchestrator)

    try:
        outcome = asyncio.run(run_deploy())
    except DeploymentInProgressError as e:
        console.print(f"[yellow]{e}[/yellow]")
        raise typer.Exit(code=EXIT_IN_PROGRESS)
    except ValueError as e:
        console.print(f"[red]Invalid deployment options:[/red] {e}")
        raise typer.Exit(code=EXIT_FATAL)
    finally:
        for sig, handler in previous_handlers.items():
            signal.signal(sig, handler)

    console.print(render_outcome(outcome))
    raise typer.Exit(code=outcome.exit_code)


@app.command()
def recover(
    target: Annotated[str, typer.Argument(help="Target (container) name")],
    publish: Annotated[
        Optional[list[str]],
        typer.Option("--publish", "-p", help="Port mapping HOST:CONTAINER used to probe the target"),
    ] = None,
    health_url: Annotated[
        Optional[str],
        typer.Option("--health-url", help="Full health endpoint URL"),
    ] = None,
) -> None:
    """Resolve leftovers of an interrupted deployment of TARGET."""
    ctx = get_app_context()

    try:
        recover_target = DeploymentTarget(name=target)
        options = DeployOptions.from_config(ctx.config, ports=parse_ports(publish), health_url=health_url)
    except ValueError as e:
        console.print(f"[red]Invalid options:[/red] {e}")
        raise typer.Exit(code=EXIT_FATAL)

    async def run_recover() -> RecoveryReport:
        orchestrator = ctx.create_orchestrator()
        try:
            return await orchestrator.recover(recover_target, options)
        finally:
            await _close(orchestrator)

    try:
        report = asyncio.run(run_recover())
    except Exception as e:
        console.print(f"[red]Recovery error:[/red] {e}")
        raise typer.Exit(code=EXIT_FATAL)

    console.print(render_recovery(report))
    if not report.success:
        raise typer.Exit(code=EXIT_FATAL)


@app.command()
def prune(
    age_hours: Annotated[
        Optional[float],
        typer.Option("--age-hours", help="Minimum image age in hours"),
    ] = None,
    keep: Annotated[
        Optional[int],
        typer.Option("--keep", help="Most recent images always kept"),
    ] = None,
) -> None:
    """Remove old images no container uses."""
    ctx = get_app_context()
    age_threshold = timedelta(hours=age_hours if age_hours is not None else ctx.config.gc.age_threshold_hours)
    keep_count = keep if keep is not None else ctx.config.gc.keep_count

    async def run_prune() -> PruneReport:
        runtime = build_runtime(ctx.config)
        try:
            return await ImageGarbageCollector(runtime).prune(age_threshold, keep_count)
        finally:
            await runtime.close()

    report = asyncio.run(run_prune())
    console.print(render_prune(report))
    if not report.success:
        raise typer.Exit(code=EXIT_FATAL)


@app.command()
def status(
    target: Annotated[str, typer.Argument(help="Target (container) name")],
) -> None:
    """Show the containers of TARGET, including backups."""
    ctx = get_app_context()

    async def run_status():
        runtime = build_runtime(ctx.config)
        try:
            return await runtime.list_instances(target)
        finally:
            await runtime.close()

    try:
        instances = asyncio.run(run_status())
    except Exception as e:
        console.print(f"[red]Error listing containers:[/red] {e}")
        raise typer.Exit(code=EXIT_FATAL)

    instances = [
        i
        for i in instances
        if i.name == target or is_backup_name(i.name, target) or is_retained_name(i.name, target)
    ]
    if not instances:
        console.print(f"[dim]No containers for {target}[/dim]")
        return

    table = Table(title=f"Target: {target}")
    table.add_column("Name", style="bold")
    table.add_column("State")
    table.add_column("Image")
    table.add_column("Container ID", style="dim")
    table.add_column("Created")
    for instance in sorted(instances, key=lambda i: i.name):
        table.add_row(
            instance.name,
            instance.state.value,
            instance.image,
            instance.container_id,
            instance.created_at.isoformat() if instance.created_at else "-",
        )
    console.print(table)


@app.callback()
def main_callback(
    config_path: Annotated[
        Optional[Path],
        typer.Option(
            "--config",
            "-c",
            help="Path to configuration file (TOML format)",
            exists=True,
            dir_okay=False,
            readable=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Configure global options and initialize application context."""
    try:
        config = load_config(config_path)
    except Exception as e:
        console.print(f"[red]Error loading configuration:[/red] {e}")
        raise typer.Exit(code=EXIT_FATAL)

    if verbose:
        config.logging.level = "DEBUG"
    setup_logging(config.logging)
    initialize_context(config)

    if verbose:
        console.print("[dim]Debug logging enabled[/dim]")


if __name__ == "__main__":
    app()
