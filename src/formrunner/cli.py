# src/formrunner/cli.py
"""formrunner Command Line Interface.

Entry point for the formrunner CLI tool.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING

import typer
from dynaconf.vendor.ruamel.yaml.parser import ParserError as YamlParserError
from dynaconf.vendor.ruamel.yaml.scanner import ScannerError as YamlScannerError
from pydantic import ValidationError

from formrunner import __version__
from formrunner.contracts import (
    CommandNotConfirmedError,
    ControlConflictError,
    FormRunnerError,
    OrchestratorState,
    RecordsFileError,
    SessionNotFoundError,
)
from formrunner.core.config import FormRunnerSettings, load_settings, resolve_config

if TYPE_CHECKING:
    from formrunner.contracts import ExternalActor
    from formrunner.core.checkpoint import CheckpointDB
    from formrunner.engine.control import ControlService

__all__ = [
    "app",
    "load_settings",  # Re-exported from config for convenience
]

app = typer.Typer(
    name="formrunner",
    help="formrunner: resumable sequential form automation.",
    no_args_is_help=True,
)

_EXIT_CODES: dict[OrchestratorState, int] = {
    OrchestratorState.COMPLETED: 0,
    OrchestratorState.STOPPED: 2,
    OrchestratorState.ERROR: 1,
}

_SETTINGS_OPTION_HELP = "Path to settings YAML file (default: settings.yaml if present)."


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"formrunner version {__version__}")
        raise typer.Exit()


def _load_dotenv(env_file: Path | None = None) -> bool:
    """Load environment variables from a .env file.

    Raises:
        typer.Exit: If an explicit env_file path doesn't exist.
    """
    from dotenv import load_dotenv

    if env_file is not None:
        if not env_file.exists():
            typer.secho(f"Error: .env file not found: {env_file}", fg=typer.colors.RED, err=True)
            raise typer.Exit(1)
        return load_dotenv(env_file, override=False)

    return load_dotenv(override=False)  # Don't override existing env vars


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    no_dotenv: bool = typer.Option(
        False,
        "--no-dotenv",
        help="Skip loading .env file.",
    ),
    env_file: Path | None = typer.Option(
        None,
        "--env-file",
        help="Path to .env file (skips automatic search).",
        exists=False,  # Existence is checked in _load_dotenv for a clearer message
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose/debug logging.",
    ),
    json_logs: bool = typer.Option(
        False,
        "--json-logs",
        help="Output structured JSON logs (for machine processing).",
    ),
) -> None:
    """formrunner: resumable sequential form automation."""
    from formrunner.core.logging import configure_logging

    configure_logging(json_output=json_logs, level="DEBUG" if verbose else "WARNING")

    if not no_dotenv:
        _load_dotenv(env_file=env_file)
    elif env_file is not None:
        typer.secho("Warning: --env-file ignored because --no-dotenv is set.", fg=typer.colors.YELLOW, err=True)


# === Helpers ===


def _load_config(settings: str | None) -> FormRunnerSettings:
    """Load settings, turning every failure into a readable CLI error."""
    if settings is not None:
        settings_path: Path | None = Path(settings).expanduser()
    else:
        default_path = Path("settings.yaml")
        settings_path = default_path if default_path.exists() else None

    try:
        return load_settings(settings_path)
    except (YamlParserError, YamlScannerError) as e:
        typer.echo(f"YAML syntax error in {settings_path}: {e.problem}", err=True)
        raise typer.Exit(1) from None
    except FileNotFoundError:
        typer.echo(f"Error: Settings file not found: {settings_path}", err=True)
        raise typer.Exit(1) from None
    except ValidationError as e:
        typer.echo("Configuration errors:", err=True)
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            typer.echo(f"  - {loc}: {error['msg']}", err=True)
        raise typer.Exit(1) from None


def _actor_factory(config: FormRunnerSettings) -> Callable[[], ExternalActor]:
    from formrunner.actors import actor_factory

    return actor_factory(config.actor)


def _open_database(config: FormRunnerSettings) -> CheckpointDB:
    from formrunner.core.checkpoint import CheckpointDB

    try:
        return CheckpointDB.from_url(config.checkpoint.url)
    except Exception as e:
        typer.echo(f"Error opening checkpoint database {config.checkpoint.url}: {e}", err=True)
        raise typer.Exit(1) from None


def _build_control(config: FormRunnerSettings, db: CheckpointDB) -> ControlService:
    from formrunner.core.checkpoint import CheckpointStore
    from formrunner.engine.control import ControlService
    from formrunner.progress import ProgressPublisher

    publisher = ProgressPublisher(
        log_buffer_size=config.progress.log_buffer_size,
        subscriber_queue_size=config.progress.subscriber_queue_size,
    )
    return ControlService.from_settings(config, CheckpointStore(db), publisher, _actor_factory(config))


def _run_in_foreground(
    control: ControlService,
    launch: Callable[[], object],
    output_format: str,
) -> None:
    """Launch a run, print progress until it ends, and exit with its outcome.

    Ctrl-C requests a stop; the run halts after the current record.
    """
    from formrunner.progress import ConsoleReporter
    from formrunner.progress.console import is_valid_format

    if not is_valid_format(output_format):
        typer.echo(f"Error: invalid --format {output_format!r}; expected pretty or json", err=True)
        raise typer.Exit(1)
    reporter = ConsoleReporter(control.publisher, output_format=output_format)
    reporter.start()
    try:
        try:
            launch()
        except FormRunnerError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(1) from None

        while True:
            try:
                if control.wait(timeout=0.5):
                    break
            except KeyboardInterrupt:
                typer.echo("Stopping after the current record (Ctrl-C again to force)...", err=True)
                try:
                    control.stop()
                except ControlConflictError:
                    # Finished on its own in the meantime
                    pass
                except CommandNotConfirmedError as e:
                    typer.echo(f"Warning: {e}; still waiting for the current record", err=True)
    finally:
        reporter.stop()

    snapshot = control.status()
    if output_format == "pretty":
        typer.echo(
            f"Session {snapshot.session_id} {snapshot.state.value}: "
            f"{snapshot.succeeded} succeeded, {snapshot.failed} failed, {snapshot.processed}/{snapshot.total} processed"
        )
        if snapshot.error_message:
            typer.echo(f"Error: {snapshot.error_message}", err=True)
    exit_code = _EXIT_CODES.get(snapshot.state, 1)
    if exit_code:
        raise typer.Exit(exit_code)


# === Commands ===


@app.command()
def run(
    records: Path = typer.Argument(..., help="CSV, TSV, JSON or XLSX file with one record per row/object."),
    label: str | None = typer.Option(
        None,
        "--label",
        "-l",
        help="Session label (default: the records file name).",
    ),
    settings: str | None = typer.Option(None, "--settings", "-s", help=_SETTINGS_OPTION_HELP),
    output_format: str = typer.Option(
        "pretty",
        "--format",
        "-f",
        help="Progress output format: 'pretty' (human-readable) or 'json' (one event per line).",
    ),
) -> None:
    """Process every record in RECORDS, checkpointing after each one."""
    from formrunner.sources import load_records

    config = _load_config(settings)
    try:
        payloads = load_records(records.expanduser())
    except RecordsFileError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None

    db = _open_database(config)
    try:
        control = _build_control(config, db)
        _run_in_foreground(control, lambda: control.start(payloads, label or records.name), output_format)
    finally:
        db.close()


@app.command()
def resume(
    session_id: int | None = typer.Argument(
        None,
        help="Session to resume (default: the most recent running or paused session).",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        help="Also resume sessions that ended completed or in error.",
    ),
    settings: str | None = typer.Option(None, "--settings", "-s", help=_SETTINGS_OPTION_HELP),
    output_format: str = typer.Option(
        "pretty",
        "--format",
        "-f",
        help="Progress output format: 'pretty' or 'json'.",
    ),
) -> None:
    """Continue a session from its first unfinished record.

    Examples:

        # Resume whatever was interrupted last
        formrunner resume

        # Retry the failed records of a completed session
        formrunner resume 12 --force
    """
    config = _load_config(settings)
    db = _open_database(config)
    try:
        control = _build_control(config, db)
        if session_id is None:
            _run_in_foreground(control, control.resume_latest, output_format)
        else:
            _run_in_foreground(control, lambda: control.resume_session(session_id, force=force), output_format)
    finally:
        db.close()


@app.command()
def history(
    limit: int = typer.Option(20, "--limit", "-n", min=1, help="Number of sessions to list."),
    settings: str | None = typer.Option(None, "--settings", "-s", help=_SETTINGS_OPTION_HELP),
    as_json: bool = typer.Option(False, "--json", help="Output JSON."),
) -> None:
    """List recent sessions, newest first."""
    from formrunner.core.checkpoint import CheckpointStore

    config = _load_config(settings)
    db = _open_database(config)
    try:
        sessions = CheckpointStore(db).list_sessions(limit=limit)
    except FormRunnerError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None
    finally:
        db.close()

    if as_json:
        typer.echo(json.dumps([session.to_dict() for session in sessions], indent=2))
        return
    if not sessions:
        typer.echo("No sessions recorded.")
        return
    typer.echo(f"{'ID':>5}  {'STATUS':<10} {'DONE':>11}  {'OK':>5} {'FAIL':>5}  {'STARTED':<25} LABEL")
    for session in sessions:
        progress = f"{session.processed}/{session.total}"
        typer.echo(
            f"{session.session_id:>5}  {session.status.value:<10} {progress:>11}  "
            f"{session.succeeded:>5} {session.failed:>5}  {session.started_at.isoformat(timespec='seconds'):<25} {session.label}"
        )


@app.command()
def show(
    session_id: int = typer.Argument(..., help="Session to show."),
    settings: str | None = typer.Option(None, "--settings", "-s", help=_SETTINGS_OPTION_HELP),
    as_json: bool = typer.Option(False, "--json", help="Output JSON."),
) -> None:
    """Show one session and the status of each of its records."""
    from formrunner.core.checkpoint import CheckpointStore

    config = _load_config(settings)
    db = _open_database(config)
    try:
        detail = CheckpointStore(db).get_detail(session_id)
    except FormRunnerError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None
    finally:
        db.close()

    if detail is None:
        typer.echo(f"Error: {SessionNotFoundError(session_id)}", err=True)
        raise typer.Exit(1)

    if as_json:
        typer.echo(json.dumps(detail.to_dict(), indent=2))
        return
    session = detail.session
    typer.echo(f"Session {session.session_id}: {session.label}")
    typer.echo(f"  Status:    {session.status.value}")
    typer.echo(f"  Progress:  {session.processed}/{session.total} ({session.succeeded} succeeded, {session.failed} failed)")
    typer.echo(f"  Started:   {session.started_at.isoformat(timespec='seconds')}")
    if session.ended_at is not None:
        typer.echo(f"  Ended:     {session.ended_at.isoformat(timespec='seconds')}")
    if session.error_message:
        typer.echo(f"  Error:     {session.error_message}")
    typer.echo("")
    for item in detail.items:
        note = f"  {item.note}" if item.note else ""
        typer.echo(f"  #{item.index + 1:<5} {item.status.value:<12}{note}")


@app.command()
def export(
    session_id: int = typer.Argument(..., help="Session to export."),
    output: Path = typer.Option(..., "--output", "-o", help="File to write; .xlsx writes a workbook, anything else CSV."),
    settings: str | None = typer.Option(None, "--settings", "-s", help=_SETTINGS_OPTION_HELP),
) -> None:
    """Write a session's records with their status and note to CSV or XLSX."""
    from formrunner.core.checkpoint import CheckpointStore
    from formrunner.sources import write_results

    config = _load_config(settings)
    db = _open_database(config)
    try:
        detail = CheckpointStore(db).get_detail(session_id)
    except FormRunnerError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None
    finally:
        db.close()

    if detail is None:
        typer.echo(f"Error: {SessionNotFoundError(session_id)}", err=True)
        raise typer.Exit(1)
    count = write_results(output.expanduser(), detail.items)
    typer.echo(f"Wrote {count} records to {output}")


@app.command()
def serve(
    settings: str | None = typer.Option(None, "--settings", "-s", help=_SETTINGS_OPTION_HELP),
    host: str | None = typer.Option(None, "--host", help="Bind address (overrides settings)."),
    port: int | None = typer.Option(None, "--port", "-p", min=1, max=65535, help="Bind port (overrides settings)."),
) -> None:
    """Serve the HTTP control API and progress WebSocket."""
    import uvicorn

    from formrunner.server import create_app

    config = _load_config(settings)
    db = _open_database(config)
    try:
        control = _build_control(config, db)
        bind_host = host or config.server.host
        bind_port = port or config.server.port
        typer.echo(f"Serving formrunner control API on http://{bind_host}:{bind_port}")
        uvicorn.run(create_app(control), host=bind_host, port=bind_port, log_level="info")
    finally:
        db.close()


@app.command("config")
def show_config(
    settings: str | None = typer.Option(None, "--settings", "-s", help=_SETTINGS_OPTION_HELP),
    output_format: str = typer.Option("yaml", "--format", "-f", help="Output format: yaml or json."),
) -> None:
    """Show the effective configuration with secrets masked."""
    import yaml

    config_dict = resolve_config(_load_config(settings))
    if output_format == "json":
        typer.echo(json.dumps(config_dict, indent=2))
    else:
        typer.echo(yaml.safe_dump(config_dict, default_flow_style=False, sort_keys=False))
