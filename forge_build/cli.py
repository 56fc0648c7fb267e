"""Thin CLI wrapper for forge_build.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import signal
from pathlib import Path
from typing import Annotated, Any

import typer
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from forge_build import __version__
from forge_build.config import Settings, get_settings, print_settings_json

app = typer.Typer(
    name="forge-build",
    help="forge-build - reconcile machine image Builds",
    no_args_is_help=True,
)
console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"forge-build version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """forge-build - reconcile machine image Builds."""


@app.command()
def run(
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", help="Log level: debug, info or error"),
    ] = None,
    log_format: Annotated[
        str | None,
        typer.Option("--log-format", help="Log format: console or json"),
    ] = None,
    leader_elect: Annotated[
        bool | None,
        typer.Option(
            "--leader-elect/--no-leader-elect",
            help="Enable leader election so only one manager is active",
        ),
    ] = None,
    worker_number: Annotated[
        int | None,
        typer.Option("--worker-number", help="Number of concurrent Build workers"),
    ] = None,
    metrics_bind_address: Annotated[
        str | None,
        typer.Option(
            "--metrics-bind-address",
            help="Address the probe endpoint binds to; '0' disables it",
        ),
    ] = None,
    worker_name: Annotated[
        str | None,
        typer.Option(
            "--worker-name",
            help="Only reconcile objects carrying this watch-filter label value",
        ),
    ] = None,
) -> None:
    """Run the controller manager until interrupted."""
    from forge_build.controllers import setup_manager
    from forge_build.log import setup_logging
    from forge_build.store.sql import open_store

    overrides: dict[str, Any] = {
        "log_level": log_level,
        "log_format": log_format,
        "leader_elect": leader_elect,
        "worker_number": worker_number,
        "metrics_bind_address": metrics_bind_address,
        "worker_name": worker_name,
    }
    try:
        settings = Settings(**{k: v for k, v in overrides.items() if v is not None})
        setup_logging(settings.log_level, settings.log_format)
    except (ValidationError, ValueError) as e:
        console.print(f"[red]Invalid configuration: {e}[/red]")
        raise typer.Exit(code=2) from None

    store = open_store(settings.db_url)
    manager = setup_manager(store, settings)

    def handle_signal(signum: int, _frame: Any) -> None:
        console.print(f"[yellow]Received signal {signum}, shutting down[/yellow]")
        manager.stop()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    try:
        manager.serve_probes(settings.metrics_bind_address)
    except ValueError as e:
        console.print(f"[red]Invalid metrics bind address: {e}[/red]")
        raise typer.Exit(code=2) from None
    manager.start()


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print_json(print_settings_json(settings))
    else:
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Store:[/bold]")
        console.print(f"  Database URL:        {settings.db_url}")
        console.print()
        console.print("[bold]Logging:[/bold]")
        console.print(f"  Log level:           {settings.log_level}")
        console.print(f"  Log format:          {settings.log_format}")
        console.print()
        console.print("[bold]Manager:[/bold]")
        console.print(f"  Leader election:     {settings.leader_elect}")
        console.print(f"  Lease:               {settings.leader_election_namespace}/{settings.leader_election_id}")
        console.print(f"  Workers:             {settings.worker_number}")
        console.print(f"  Probe address:       {settings.metrics_bind_address}")
        console.print(f"  Worker name:         {settings.worker_name or '(none)'}")
        console.print()
        console.print("[bold]Shell provisioner:[/bold]")
        console.print(f"  Namespace:           {settings.provisioner_namespace}")
        console.print(
            f"  Image:               {settings.shell_provisioner_image}:{settings.shell_provisioner_tag}"
        )
        console.print(f"  SSH timeout:         {settings.ssh_timeout}")


@app.command()
def apply(
    path: Annotated[str, typer.Argument(help="Path to a YAML or JSON manifest")],
) -> None:
    """Create or update the resources in a manifest."""
    from forge_build.manifests import ManifestError, apply_manifests, load_manifests
    from forge_build.store.client import StoreError
    from forge_build.store.sql import open_store

    file_path = Path(path)
    if not file_path.exists():
        console.print(f"[red]Path not found: {path}[/red]")
        raise typer.Exit(code=1)

    try:
        objects = load_manifests(file_path)
    except (ManifestError, yaml.YAMLError, json.JSONDecodeError) as e:
        console.print(f"[red]Invalid manifest: {e}[/red]")
        raise typer.Exit(code=1) from None

    store = open_store(get_settings().db_url)
    try:
        results = apply_manifests(store, objects)
    except StoreError as e:
        console.print(f"[red]Apply failed ({e.code}): {e}[/red]")
        raise typer.Exit(code=1) from None

    for obj, operation in results:
        kind = obj.kind.lower()
        console.print(f"{kind}/{obj.name} [green]{operation.value}[/green]")


get_app = typer.Typer(help="Display resources")
app.add_typer(get_app, name="get")


@get_app.command("builds")
def get_builds(
    namespace: Annotated[
        str | None,
        typer.Option("--namespace", "-n", help="Filter by namespace"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List Builds and their status."""
    from forge_build.builds.schema import BUILD_GVK, Build
    from forge_build.store.sql import open_store

    store = open_store(get_settings().db_url)
    builds = [Build.from_unstructured(obj) for obj in store.list(BUILD_GVK, namespace)]

    if not builds:
        if json_output:
            console.print_json(data=[])
        else:
            console.print("[yellow]No builds found[/yellow]")
        return

    if json_output:
        console.print_json(data=[b.summary() for b in builds])
        return

    table = Table(title=f"Builds ({len(builds)})")
    table.add_column("Namespace")
    table.add_column("Name", style="green")
    table.add_column("Phase")
    table.add_column("Ready")
    table.add_column("Infrastructure")
    table.add_column("Provisioners")
    table.add_column("Failure")
    for build in builds:
        status = build.status
        phase_color = {
            "Completed": "green",
            "Failed": "red",
            "Building": "blue",
            "Terminating": "magenta",
        }.get(status.phase or "", "yellow")
        table.add_row(
            build.namespace,
            build.name,
            f"[{phase_color}]{status.phase or 'Pending'}[/{phase_color}]",
            str(status.ready),
            str(status.infrastructure_ready),
            str(status.provisioners_ready),
            status.failure_reason or "",
        )
    console.print(table)


@app.command("provisioner-shell")
def provisioner_shell(
    namespace: Annotated[
        str,
        typer.Option("--namespace", help="The Build namespace"),
    ] = "forge-core",
    run_script: Annotated[
        str,
        typer.Option("--run-script", help="The script to run"),
    ] = "",
    run_script_ref: Annotated[
        str,
        typer.Option(
            "--run-script-ref", help="Name of the ConfigMap containing the script to run"
        ),
    ] = "",
    ssh_credentials_secret_name: Annotated[
        str,
        typer.Option(
            "--ssh-credentials-secret-name",
            help="Name of the Secret containing the SSH credentials",
        ),
    ] = "",
) -> None:
    """Run one shell provisioning step (entrypoint of provisioner Jobs)."""
    from forge_build.log import setup_logging
    from forge_build.provisioners.shell.runner import ShellRunError, run_shell_provisioner
    from forge_build.ssh.client import SSHError
    from forge_build.store.client import StoreError
    from forge_build.store.sql import open_store

    settings = get_settings()
    setup_logging(settings.log_level, settings.log_format)
    store = open_store(settings.db_url)
    try:
        output = run_shell_provisioner(
            store,
            namespace,
            ssh_credentials_secret_name,
            script=run_script,
            script_ref=run_script_ref,
            ssh_timeout=settings.ssh_timeout,
        )
    except (ShellRunError, SSHError, StoreError) as e:
        console.print(f"[red]Error running script ({e.code}): {e}[/red]")
        raise typer.Exit(code=1) from None
    if output.stdout:
        console.print(output.stdout, markup=False, highlight=False)


@app.command()
def keygen(
    output_dir: Annotated[
        Path,
        typer.Option("--output-dir", "-o", help="Directory to write the key pair to"),
    ] = Path("."),
    name: Annotated[
        str,
        typer.Option("--name", help="Base file name of the key pair"),
    ] = "id_rsa",
) -> None:
    """Generate an RSA key pair for build machines."""
    from forge_build.ssh.keys import KeyPair

    private_path = output_dir / name
    public_path = output_dir / f"{name}.pub"
    if private_path.exists() or public_path.exists():
        console.print(f"[red]Refusing to overwrite existing key {private_path}[/red]")
        raise typer.Exit(code=1)

    output_dir.mkdir(parents=True, exist_ok=True)
    pair = KeyPair.generate()
    pair.write_to_files(private_path, public_path)
    console.print(f"[green]✓ Key pair written to {private_path}[/green]")
    console.print(f"  Fingerprint: {pair.fingerprint()}")


if __name__ == "__main__":
    app()
