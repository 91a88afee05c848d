"""VPC Cluster Operator CLI (vpco).

Usage:
    vpco run                      # Run the operator
    vpco reconcile demo/c1        # Run a single pass for one ClusterRequest
    vpco validate cluster.yaml    # Validate a manifest and show its phase
    vpco config                   # Show the resolved (masked) configuration
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

import click

from .config import ConfigurationError, OperatorConfig
from .manifest import ManifestLoadError, load_manifest
from .models import ObjectKey
from .phase import derive_phase, next_step

CLI_VERSION = "0.1.0"


def load_config() -> OperatorConfig:
    """Load configuration, turning validation failures into CLI errors."""
    try:
        return OperatorConfig.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def parse_key(value: str) -> ObjectKey:
    try:
        return ObjectKey.parse(value)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version=CLI_VERSION, prog_name="vpco")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """VPC Cluster Operator CLI (vpco).

    \b
    Quick Start:
        vpco config            # Check the environment
        vpco validate FILE     # Check a ClusterRequest manifest
        vpco run               # Start reconciling
    """
    ctx.obj = {"verbose": verbose}


# =============================================================================
# Operator Commands
# =============================================================================


@cli.command()
def run() -> None:
    """Run the operator until interrupted."""
    from .main import run as run_operator

    run_operator()


@cli.command()
@click.argument("key")
@click.pass_context
def reconcile(ctx: click.Context, key: str) -> None:
    """Run one reconciliation pass for NAMESPACE/NAME and print the outcome."""
    from .main import setup_logging
    from .reconciler import ClusterReconciler
    from .store import PersistError, connect

    object_key = parse_key(key)
    setup_logging(logging.DEBUG if ctx.obj["verbose"] else logging.INFO)
    config = load_config()
    try:
        store = connect(config.watch_namespace)
    except PersistError as e:
        raise click.ClickException(str(e)) from e

    outcome = ClusterReconciler(store, config).reconcile(object_key)

    click.echo(f"Object:   {outcome.key}")
    click.echo(f"Step:     {outcome.step.value}")
    click.echo(f"Phase:    {outcome.phase.value if outcome.phase else '-'}")
    click.echo(f"Outcome:  {outcome.kind.value}")
    if outcome.requeue_after is not None:
        click.echo(f"Requeue:  after {outcome.requeue_after:g}s")
    if outcome.error is not None:
        raise click.ClickException(str(outcome.error))
    click.secho("✓ Pass completed", fg="green")


@cli.command()
@click.argument("manifest", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def validate(manifest: Path) -> None:
    """Validate a ClusterRequest manifest and show its phase."""
    try:
        cluster_request = load_manifest(manifest)
    except ManifestLoadError as e:
        raise click.ClickException(str(e)) from e

    phase = derive_phase(cluster_request)
    click.echo(f"Object:    {cluster_request.key}")
    click.echo(f"Phase:     {phase.value}")
    click.echo(f"Next step: {next_step(phase).value}")
    click.secho("✓ Manifest is valid", fg="green")


@cli.command("config")
def show_config() -> None:
    """Show the configuration resolved from the environment."""
    config = load_config()
    click.echo(json.dumps(config.to_display_dict(), indent=2))


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
