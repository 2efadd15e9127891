"""Command line interface for whatsapp-session-engine."""

from __future__ import annotations

import json
import logging
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as get_version
from pathlib import Path
from typing import Annotated, Any, Optional

import typer

from .config import EngineConfig, load_config
from .factory import build_engine
from .models import OperationOutcome

app = typer.Typer(help="WhatsApp session engine entry point")

ConfigOption = Annotated[
    Optional[Path],
    typer.Option("--config", "-c", help="Path to YAML configuration."),
]
EnvFileOption = Annotated[
    Optional[Path],
    typer.Option("--env-file", help="Path to an .env file with default configuration values."),
]
ModeratorArgument = Annotated[int, typer.Argument(help="Moderator user id.")]


@app.callback()
def main(
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Configure logging before executing any command."""

    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@app.command()
def version() -> None:
    """Print the package version."""

    try:
        typer.echo(get_version("whatsapp-session-engine"))
    except PackageNotFoundError:  # pragma: no cover - when running from source tree
        typer.echo("0.0.0")


@app.command()
def serve(
    config_path: ConfigOption = None,
    env_file: EnvFileOption = None,
    host: Annotated[Optional[str], typer.Option("--host", help="Binding address.")] = None,
    port: Annotated[Optional[int], typer.Option("--port", help="HTTP port.")] = None,
    headless: Annotated[
        Optional[bool],
        typer.Option("--headless/--headed", help="Run the browsers in headless mode (or headed)."),
    ] = None,
) -> None:
    """Serve the session engine HTTP API."""

    import uvicorn

    from .api import service

    overrides: dict[str, Any] = {}
    if host is not None or port is not None:
        overrides.setdefault("service", {})
        if host is not None:
            overrides["service"]["host"] = host
        if port is not None:
            overrides["service"]["port"] = port
    if headless is not None:
        overrides["browser"] = {"headless": headless}

    config = load_config(config_path, env_file=env_file, **overrides)
    service.state.set(build_engine(config))
    typer.echo(f"Serving session engine on {config.service.host}:{config.service.port}")
    uvicorn.run(service.app, host=config.service.host, port=config.service.port)


@app.command()
def probe(
    moderator_id: ModeratorArgument,
    config_path: ConfigOption = None,
    env_file: EnvFileOption = None,
) -> None:
    """Open the moderator's session and report whether it is authenticated."""

    engine = build_engine(_load(config_path, env_file))
    try:
        outcome = engine.operations.check_authentication(moderator_id)
    finally:
        engine.shutdown()
    _report(outcome)


@app.command()
def send(
    moderator_id: ModeratorArgument,
    phone_number: Annotated[str, typer.Argument(help="Recipient phone number.")],
    text: Annotated[str, typer.Argument(help="Message text.")],
    config_path: ConfigOption = None,
    env_file: EnvFileOption = None,
) -> None:
    """Send one message from the moderator's session and report its delivery."""

    engine = build_engine(_load(config_path, env_file))
    try:
        outcome = engine.operations.send_message(moderator_id, phone_number, text)
    finally:
        engine.shutdown()
    _report(outcome)


@app.command()
def restore(
    moderator_id: ModeratorArgument,
    config_path: ConfigOption = None,
    env_file: EnvFileOption = None,
) -> None:
    """Replace the moderator's session directory with its latest backup."""

    engine = build_engine(_load(config_path, env_file))
    try:
        outcome = engine.optimizer.restore_from_backup(moderator_id)
    finally:
        engine.shutdown()
    _report(outcome)


@app.command()
def optimize(
    moderator_id: ModeratorArgument,
    config_path: ConfigOption = None,
    env_file: EnvFileOption = None,
    backup: Annotated[
        bool,
        typer.Option("--backup/--no-backup", help="Also store the trimmed session as the new backup."),
    ] = False,
) -> None:
    """Delete cache folders from the moderator's session directory."""

    engine = build_engine(_load(config_path, env_file))
    try:
        if backup:
            outcome = engine.optimizer.optimize_authenticated_session(moderator_id)
        else:
            outcome = engine.optimizer.optimize_current_session_only(moderator_id)
    finally:
        engine.shutdown()
    _report(outcome)


@app.command()
def health(
    moderator_id: ModeratorArgument,
    config_path: ConfigOption = None,
    env_file: EnvFileOption = None,
) -> None:
    """Print on-disk size and backup information for a moderator."""

    engine = build_engine(_load(config_path, env_file))
    try:
        metrics = engine.optimizer.health_metrics(moderator_id)
    finally:
        engine.shutdown()
    typer.echo(
        json.dumps(
            {
                **metrics.model_dump(mode="json"),
                "current_size_mb": metrics.current_size_mb,
                "threshold_mb": metrics.threshold_mb,
                "exceeds_threshold": metrics.exceeds_threshold,
            },
            indent=2,
        )
    )


def _load(config_path: Optional[Path], env_file: Optional[Path]) -> EngineConfig:
    return load_config(config_path, env_file=env_file)


def _report(outcome: OperationOutcome) -> None:
    typer.echo(json.dumps(outcome.model_dump(mode="json"), indent=2))
    if not outcome.is_success:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
