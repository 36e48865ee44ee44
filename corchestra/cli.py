"""
CLI interface for corchestra.

Provides commands to validate a stack file, run the stack in the foreground,
and manage named volumes.

The stack file defaults to $CORCHESTRA_FILE or corchestra.yaml in the
current directory; every command accepts -f/--file to point elsewhere.
"""

import asyncio
import json
import signal
from pathlib import Path
from typing import Optional

import click

from corchestra import __version__
from corchestra.errors import ConfigurationError, VolumeError


STARTER_STACK = """\
name: webstack

settings:
  volumesRoot: .corchestra/volumes
  logDir: .corchestra/logs
  startupTimeout: 2m
  backoff: {base: 1s, cap: 30s}
  logging:
    level: INFO
    format: pretty
    events: .corchestra/events.jsonl

services:
  db:
    startCommand: postgres -D data
    restartPolicy: always
    healthCheck:
      command: pg_isready -h localhost
      interval: 2s
      timeout: 1s
      retries: 5
    volumes:
      - name: pgdata
        mountPath: data

  api:
    startCommand: ["uvicorn", "app:app", "--port", "8000"]
    dependsOn: [db]
    environment:
      DATABASE_URL: postgresql://localhost/app
    healthCheck:
      command: curl -fsS http://localhost:8000/health
      interval: 2s
      retries: 10

  web:
    startCommand: npm run start
    dependsOn: [api]
"""


def _load(stack_file: Optional[Path]):
    from corchestra.config import load_config

    try:
        return load_config(stack_file)
    except ConfigurationError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)


def _echo_report(report, as_json: bool) -> None:
    from corchestra.schemas import ServiceState
    from corchestra.utils import format_duration

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
        return

    click.echo(f"Stack: {report.stack}")
    for service in report.services:
        if service.healthy:
            mark = "✓"
        elif service.state == ServiceState.PENDING and service.error is None:
            mark = "·"
        else:
            mark = "✗"
        line = f"  {mark} {service.name:<20} {service.state.value:<15} restarts={service.restart_count}"
        if service.last_exit_code is not None:
            line += f" exit={service.last_exit_code}"
        if service.error is not None:
            line += f"  {service.error.kind}: {service.error.message}"
        click.echo(line)

    if report.cancelled:
        click.echo("Startup cancelled.")
    elif report.halted:
        click.echo(f"Startup halted: {', '.join(report.failed)} did not become healthy.")
    elif report.success:
        click.echo(f"All {len(report.started)} services healthy ({format_duration(report.duration_ms / 1000)}).")


async def _run_stack(orchestrator, on_ready):
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, orchestrator.request_stop)
        except NotImplementedError:
            # No asyncio signal support on this platform; Ctrl-C raises instead
            pass
    return await orchestrator.run(on_ready=on_ready)


file_option = click.option(
    "-f", "--file", "stack_file",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Stack file (default: $CORCHESTRA_FILE or ./corchestra.yaml)",
)


@click.group()
@click.version_option(version=__version__, prog_name="corchestra")
def main():
    """
    corchestra - Lightweight service-stack supervisor.

    Start services in dependency order, wait for health, keep volumes,
    restart on failure.
    """
    pass


@main.command("up")
@file_option
@click.option("--json", "as_json", is_flag=True, help="Print the deployment report as JSON")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
def up(stack_file: Optional[Path], as_json: bool, verbose: bool):
    """
    Run the stack in the foreground until interrupted.

    Services start layer by layer; each layer waits for its members to be
    healthy. On Ctrl-C (or SIGTERM) services stop in reverse dependency
    order. Exits 1 if startup did not succeed.

    Examples:

        corchestra up

        corchestra up -f stacks/dev.yaml --json
    """
    from corchestra.events import EventBus
    from corchestra.orchestrator import Orchestrator
    from corchestra.utils import setup_logging

    config = _load(stack_file)
    setup_logging(
        log_level="DEBUG" if verbose else config.get_log_level(),
        log_format=config.get_log_format(),
        log_file=config.get_log_file_path(),
        console_output=config.should_log_to_console(),
    )

    try:
        orchestrator = Orchestrator.from_config(config, EventBus())
        report = asyncio.run(
            _run_stack(orchestrator, on_ready=lambda r: _echo_report(r, as_json))
        )
    except (ConfigurationError, VolumeError) as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)

    if not (report.success or report.cancelled):
        raise SystemExit(1)


@main.command("config")
@file_option
@click.option("--json", "as_json", is_flag=True, help="Print the resolved plan as JSON")
def show_config(stack_file: Optional[Path], as_json: bool):
    """Validate the stack file and show start layers and shutdown order."""
    config = _load(stack_file)
    resolver = config.resolver()

    if as_json:
        click.echo(json.dumps({
            "stack": config.name,
            "layers": resolver.resolve_layers(),
            "start_order": resolver.resolve_order(),
            "shutdown_order": resolver.shutdown_order(),
            "services": {name: spec.to_dict() for name, spec in config.services.items()},
        }, indent=2))
        return

    click.echo(f"Stack: {config.name} ({config.config_path})")
    click.echo("Start layers:")
    for index, layer in enumerate(resolver.resolve_layers(), start=1):
        click.echo(f"  {index}. {', '.join(layer)}")
    click.echo(f"Shutdown order: {', '.join(resolver.shutdown_order())}")
    click.echo(f"Volumes root: {config.volumes_root}")


@main.command("init")
@click.option(
    "--directory",
    type=click.Path(path_type=Path, file_okay=False),
    default=Path("."),
    help="Where to write corchestra.yaml",
)
@click.option("--force", is_flag=True, help="Overwrite an existing stack file")
def init(directory: Path, force: bool):
    """Write a starter corchestra.yaml."""
    directory.mkdir(parents=True, exist_ok=True)
    stack_path = directory / "corchestra.yaml"
    if stack_path.exists() and not force:
        click.echo(f"Stack file already exists at {stack_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    stack_path.write_text(STARTER_STACK)
    click.echo(f"Initialized stack file at {stack_path}")


@main.group("volumes")
def volumes_group():
    """Inspect and remove named volumes."""
    pass


@volumes_group.command("list")
@file_option
def list_volumes(stack_file: Optional[Path]):
    """List volumes under the stack's volumes root."""
    from corchestra.volumes import VolumeManager

    config = _load(stack_file)
    try:
        manager = VolumeManager(config.volumes_root)
    except VolumeError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)

    records = manager.list()
    if not records:
        click.echo("No volumes.")
        return
    for record in records:
        mounts = ", ".join(record.mount_paths) or "-"
        click.echo(f"{record.name:<20} {record.backing_path}  created {record.created_at:%Y-%m-%d %H:%M}  mounts: {mounts}")


@volumes_group.command("rm")
@file_option
@click.argument("name")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
def remove_volume(stack_file: Optional[Path], name: str, yes: bool):
    """
    Delete a volume and its data.

    This is the only way volume data is ever deleted.
    """
    from corchestra.volumes import VolumeManager

    config = _load(stack_file)
    try:
        manager = VolumeManager(config.volumes_root)
        record = manager.get(name)
        if record is None:
            click.echo(f"✗ Unknown volume: {name}", err=True)
            raise SystemExit(1)
        if not yes:
            click.confirm(f"Delete volume {name} and all data in {record.backing_path}?", abort=True)
        asyncio.run(manager.remove(name))
    except VolumeError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)

    click.echo(f"✓ Removed volume {name}")


if __name__ == "__main__":
    main()
