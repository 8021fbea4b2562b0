"""Typer CLI for running and inspecting the proxy."""

from __future__ import annotations

import dataclasses
import json
from typing import Optional

import typer

from .config_loader import (
    ConfigurationError,
    list_env_overrides,
    load_proxy_config,
    redacted_config_dict,
)
from .logging_utils import configure_logging

app = typer.Typer(help="OpenAI-compatible proxy for the NVIDIA NIM chat API")


@app.command("serve")
def cmd_serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", help="Listening port"),
    log_console: bool = typer.Option(
        True, "--log-console/--no-log-console", help="Mirror logs to stderr"
    ),
):
    """Start the proxy server; exits non-zero when the API key is missing."""
    import uvicorn

    from .app import create_app

    try:
        cfg = load_proxy_config()
    except ConfigurationError as exc:
        typer.echo(f"ERROR: {exc}", err=True)
        raise typer.Exit(1)

    overrides = {}
    if host:
        overrides["host"] = host
    if port:
        overrides["port"] = port
    if overrides:
        cfg = dataclasses.replace(cfg, **overrides)

    log_path = configure_logging(cfg, include_console=log_console)
    typer.echo(f"Logging to {log_path}")
    # uvicorn stops accepting on SIGINT/SIGTERM and waits for open connections.
    uvicorn.run(create_app(cfg), host=cfg.host, port=cfg.port, log_config=None)


@app.command("show-config")
def cmd_show_config():
    """Print the resolved configuration with the API key redacted."""
    try:
        cfg = load_proxy_config(require_api_key=False)
    except ConfigurationError as exc:
        typer.echo(f"ERROR: {exc}", err=True)
        raise typer.Exit(1)
    typer.echo(
        json.dumps(
            {"runtime": redacted_config_dict(cfg), "env_overrides": list_env_overrides()},
            indent=2,
        )
    )


def main():  # pragma: no cover
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
