# src/table_importer/cli.py
import json
import logging
import typer
from pathlib import Path
from typing import Optional
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import ImportConfig, load_config
from .engine import BatchImportCycle, TickPayload
from .errors import ConfigError, ConnectionError, QueryError
from .logging_utils import print_header
from .runner import ImportRunner

console = Console(stderr=True)
app = typer.Typer(help="Table Importer CLI")


def version_callback(value: bool):
    if value:
        from table_importer import __version__
        console.print(f"Table Importer version: {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit"
    ),
    log_level: str = typer.Option("WARNING", "--log-level", help="Level for library log messages"),
):
    """Table Importer - incremental batch import of table rows into an event sink."""
    logging.basicConfig(level=log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _load(config_file: Path) -> ImportConfig:
    try:
        return load_config(config_file)
    except ConfigError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(code=1)


def _build_cycle(config: ImportConfig) -> BatchImportCycle:
    try:
        return BatchImportCycle(config)
    except (ConfigError, ValueError) as e:
        console.print(f"[red]✗ Failed to set up import: {e}[/red]")
        raise typer.Exit(code=1)


# ======================================================================================
# COMMAND: table-importer run
# ======================================================================================
@app.command()
def run(
    config_file: Path = typer.Argument("import.yml", help="Path to import.yml"),
    max_ticks: Optional[int] = typer.Option(None, "--max-ticks", "-n", help="Stop after this many ticks"),
    no_initial_delay: bool = typer.Option(False, "--no-initial-delay", help="Start the first tick right away"),
):
    """Run import ticks in this process until the import stops."""
    config = _load(config_file)
    print_header(config.source.table)

    runner = ImportRunner(_build_cycle(config))
    try:
        ticks = runner.run(max_ticks=max_ticks, skip_initial_delay=no_initial_delay)
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted; run guard released.[/yellow]")
        raise typer.Exit(code=130)

    if ticks == 0:
        console.print(f"[yellow][WARN] Import of {config.source.table} is already running elsewhere[/yellow]")
        raise typer.Exit(code=1)

    console.print(Panel(
        f"[green bold][OK] {ticks} tick(s), {runner.delivered} event(s) delivered, "
        f"{runner.committed} committed[/green bold]",
        border_style="green",
    ))


# ======================================================================================
# COMMAND: table-importer tick
# ======================================================================================
@app.command()
def tick(
    config_file: Path = typer.Argument("import.yml", help="Path to import.yml"),
    payload: Optional[str] = typer.Option(None, "--payload", "-p", help="Continuation payload (JSON) from the previous tick"),
):
    """
    Run exactly one tick and print the next run as JSON.

    Meant for external schedulers: feed the printed payload back with --payload
    after waiting delay_seconds.
    """
    config = _load(config_file)
    try:
        tick_payload = TickPayload.model_validate_json(payload) if payload else TickPayload()
    except ValueError as e:
        console.print(f"[red]✗ Invalid payload: {e}[/red]")
        raise typer.Exit(code=2)

    cycle = _build_cycle(config)
    try:
        result = cycle.run_tick(tick_payload)
    finally:
        cycle.sink.close()

    next_run = None
    if result.next_run is not None:
        next_run = {
            "delay_seconds": result.next_run.delay_seconds,
            "payload": result.next_run.payload.model_dump(),
        }
    typer.echo(json.dumps({"state": result.state.value, "next_run": next_run}))


# ======================================================================================
# COMMAND: table-importer status
# ======================================================================================
@app.command()
def status(
    config_file: Path = typer.Argument("import.yml", help="Path to import.yml"),
):
    """Show remaining rows, run guard and checkpoints."""
    config = _load(config_file)
    cycle = _build_cycle(config)
    try:
        info = cycle.status()
    except QueryError as e:
        console.print(f"[red]✗ Could not query {config.source.table}: {e}[/red]")
        raise typer.Exit(code=1)

    table = Table(title=f"Import status: {info['table']}", show_header=True, header_style="bold cyan")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="white")
    table.add_row("Strategy", info["strategy"])
    table.add_row("Import mechanism", info["import_mechanism"])
    table.add_row("Remaining rows", str(info["remaining_rows"]))
    table.add_row("Offset", "-" if info["offset"] is None else str(info["offset"]))
    snapshot = info["snapshot"]
    table.add_row(
        "Snapshot",
        "-" if not snapshot else f"{snapshot['handled']}/{snapshot['ceiling']} (taken {snapshot['taken_at']})",
    )
    table.add_row("Rejected rows", str(info["rejected_rows"]))
    table.add_row("Run guard", f"held by {info['guard_holder']}" if info["guard_held"] else "free")
    Console().print(table)


# ======================================================================================
# COMMAND: table-importer preflight
# ======================================================================================
@app.command()
def preflight(
    config_file: Path = typer.Argument("import.yml", help="Path to import.yml"),
):
    """Validate the config and check source and sink connectivity."""
    config = _load(config_file)
    console.print(f"[green]✓ Config valid[/green] ({config.source.type}, strategy={config.strategy.value})")

    cycle = _build_cycle(config)
    passed = True
    for name, check in (("Source", cycle.executor.test_connection), ("Sink", cycle.sink.test_connection)):
        try:
            check()
            console.print(f"[green]✓ {name} reachable[/green]")
        except ConnectionError as e:
            passed = False
            console.print(f"[red]✗ {name}: {e}[/red]")
    cycle.sink.close()

    raise typer.Exit(code=0 if passed else 1)


# ======================================================================================
# COMMAND: table-importer release-guard
# ======================================================================================
@app.command("release-guard")
def release_guard(
    config_file: Path = typer.Argument("import.yml", help="Path to import.yml"),
):
    """Free a run guard left behind by a crashed run."""
    config = _load(config_file)
    cycle = _build_cycle(config)
    holder = cycle.guard.holder()
    cycle.guard.release()
    if holder:
        console.print(f"[green]✓ Released run guard held by {holder}[/green]")
    else:
        console.print("[dim]Run guard was not held.[/dim]")


# ======================================================================================
# COMMAND: table-importer reset
# ======================================================================================
@app.command()
def reset(
    config_file: Path = typer.Argument("import.yml", help="Path to import.yml"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Forget progress checkpoints (offset cursor, snapshot, rejected row ids). The export log is left untouched."""
    config = _load(config_file)
    if not yes:
        typer.confirm(f"Reset import progress for {config.source.table}?", abort=True)
    _build_cycle(config).reset()
    console.print("[green]✓ Progress checkpoints cleared[/green]")


# ======================================================================================
# ENTRYPOINT
# ======================================================================================
if __name__ == "__main__":
    app()
