"""Terraform workspace operator CLI (tfo).

Usage:
    tfo run                       # Run the operator loop
    tfo reconcile ws.yaml         # Reconcile one manifest once
    tfo observe ws.yaml           # Report whether a workspace needs apply
    tfo status my-workspace       # Show persisted status
    tfo unlock my-workspace       # Remove a stranded workspace lock
    tfo info                      # Show configuration and tool versions

All commands read configuration from TFO_* environment variables.
"""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
import subprocess
import sys
from pathlib import Path

import click

from .config import Config, ConfigurationError
from .controller import StatusStore
from .errors import WorkspaceError
from .locking import WorkspaceLockManager
from .objects import FileObjectStore
from .reconciler import WorkspaceReconciler
from .spec_loader import SpecLoadError, load_workspace

VERSION_TIMEOUT_SECONDS = 10


def load_config() -> Config:
    """Load configuration, converting validation errors to CLI errors."""
    try:
        return Config.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def build_reconciler(config: Config) -> WorkspaceReconciler:
    return WorkspaceReconciler(config, FileObjectStore(config.objects_dir))


@click.group()
@click.version_option(version="0.1.0", prog_name="tfo")
@click.option("--verbose", "-v", is_flag=True, help="Log to stderr while running commands")
def cli(verbose: bool) -> None:
    """Terraform workspace operator CLI (tfo).

    \b
    Quick Start:
        tfo reconcile workspace.yaml   # Apply one workspace
        tfo unlock my-workspace        # Clear a lock left by a killed run
    """
    if verbose:
        logging.basicConfig(level=logging.INFO, stream=sys.stderr)


# =============================================================================
# Operator Commands
# =============================================================================


@cli.command()
def run() -> None:
    """Run the operator loop until SIGTERM/SIGINT."""
    from .main import main as operator_main

    sys.exit(asyncio.run(operator_main()))


@cli.command()
@click.argument("manifest", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def reconcile(manifest: Path) -> None:
    """Reconcile a single workspace manifest once and persist its status."""
    config = load_config()
    try:
        workspace = load_workspace(manifest)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e

    store = StatusStore(config.status_dir)
    merged = store.merge(workspace)
    if merged is None:
        click.echo(f"Workspace {workspace.metadata.name} was already removed")
        return

    result = asyncio.run(build_reconciler(config).reconcile(merged))
    store.save(result, removed=merged.deletion_requested and result.removable)

    click.echo(f"Workspace: {result.workspace}")
    click.echo(f"Action:    {result.action.value}")
    click.echo(f"Phase:     {result.status.at_provider.phase.value}")
    for key, value in sorted(result.status.at_provider.outputs.items()):
        click.echo(f"  {key} = {value}")

    if result.error is not None:
        raise click.ClickException(f"{type(result.error).__name__}: {result.error}")
    click.secho("✓ Reconciled", fg="green")


@cli.command()
@click.argument("manifest", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def observe(manifest: Path) -> None:
    """Report whether a workspace needs apply, without changing anything."""
    config = load_config()
    try:
        workspace = load_workspace(manifest)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e

    merged = StatusStore(config.status_dir).merge(workspace) or workspace
    try:
        observation = asyncio.run(build_reconciler(config).observe(merged))
    except WorkspaceError as e:
        raise click.ClickException(f"{type(e).__name__} ({e.phase}): {e}") from e

    click.echo(f"Fingerprint: {observation.fingerprint}")
    if observation.up_to_date:
        click.secho(f"✓ Up to date ({observation.reason})", fg="green")
    else:
        click.secho(f"Needs apply ({observation.reason})", fg="yellow")
        sys.exit(2)


@cli.command()
@click.argument("name")
def status(name: str) -> None:
    """Show the persisted status of a workspace."""
    config = load_config()
    stored = StatusStore(config.status_dir).load(name)
    if stored is None:
        raise click.ClickException(f"No status recorded for workspace {name}")
    click.echo(json.dumps(stored.model_dump(mode="json", by_alias=True), indent=2))


@cli.command()
@click.argument("external_name")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
def unlock(external_name: str, yes: bool) -> None:
    """Remove a stranded workspace lock.

    A lock is stranded when terraform was killed on timeout. Inspect the
    workspace directory and its state before unlocking.
    """
    config = load_config()
    manager = WorkspaceLockManager(config.workspaces_dir)

    try:
        holder = manager.describe(external_name)
    except WorkspaceError as e:
        raise click.ClickException(str(e)) from e
    if holder is None:
        click.echo(f"Workspace {external_name} is not locked")
        return

    click.echo(f"Lock held by pid={holder.get('pid', '?')} since {holder.get('acquiredAt', '?')}")
    if not yes:
        click.confirm("Remove the lock?", abort=True)

    if manager.clear(external_name):
        click.secho(f"✓ Unlocked {external_name}", fg="green")


@cli.command()
def info() -> None:
    """Show configuration and terraform version."""
    config = load_config()

    click.echo("Terraform workspace operator (tfo)")
    click.echo("=" * 40)
    click.echo(f"Workspaces dir: {config.workspaces_dir}")
    click.echo(f"Manifests dir:  {config.manifests_dir}")
    click.echo(f"Objects dir:    {config.objects_dir}")
    click.echo(f"Status dir:     {config.status_dir}")
    click.echo(f"Poll interval:  {config.poll_interval_seconds}s")
    click.echo(f"Sync interval:  {config.sync_interval_seconds}s")
    click.echo(f"Timeout:        {config.timeout_seconds}s")

    binary = shutil.which(config.terraform_binary)
    if binary is None:
        click.echo(f"\nterraform: {config.terraform_binary} not found")
        return
    try:
        result = subprocess.run(
            [binary, "version"],
            capture_output=True,
            text=True,
            timeout=VERSION_TIMEOUT_SECONDS,
            check=False,
        )
        version = result.stdout.split("\n")[0].strip() if result.returncode == 0 else "unknown"
    except subprocess.TimeoutExpired:
        version = "unknown"
    click.echo(f"\nterraform: {version} ({binary})")


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
