"""rtdb-isolate worker CLI.

Default mode is stdio (for subprocess workers driven by StdioBoundary).
Use --http to serve the protocol over WebSocket instead.

Usage:
    rtdb-isolate --backend myapp.db:open_database              # Stdio mode (default)
    rtdb-isolate --http --backend myapp.db:open_database       # HTTP/WebSocket mode
    rtdb-isolate --http --port 8080 --config worker.yaml       # Settings from a file
    rtdb-isolate --health                                      # Check HTTP worker health

Settings resolve from RTDB_ISOLATE_* environment variables, then the
--config file, then command-line flags.
"""

from __future__ import annotations

import asyncio
import logging
import sys

import click
import httpx

from .config import WorkerConfig

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


def _resolve_config(
    config_path: str | None,
    backend: str | None,
    host: str | None,
    port: int | None,
    log_level: str | None,
) -> WorkerConfig:
    config = WorkerConfig.from_env()
    try:
        if config_path:
            config = WorkerConfig.from_file(config_path, base=config)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--config") from e
    return config.merged(backend=backend, host=host, port=port, log_level=log_level)


def _configure_logging(level: str) -> None:
    # stdout belongs to the protocol in stdio mode
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


@click.command()
@click.option("--stdio", "stdio_mode", is_flag=True, help="Serve on stdin/stdout (default)")
@click.option("--http", "http_mode", is_flag=True, help="Serve over HTTP/WebSocket instead of stdio")
@click.option("--host", default=None, help="Host to bind to (HTTP mode)")
@click.option("--port", type=int, default=None, help="Port to bind to (HTTP mode)")
@click.option("--backend", default=None, help="Database factory, e.g. myapp.db:open_database")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    help="YAML file with worker settings",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Log level (logs go to stderr)",
)
@click.option("--health", "health_check", is_flag=True, help="Check HTTP worker health and exit")
@click.option("--health-url", default=None, help="Worker URL for health check")
def main(
    stdio_mode: bool,
    http_mode: bool,
    host: str | None,
    port: int | None,
    backend: str | None,
    config_path: str | None,
    log_level: str | None,
    health_check: bool,
    health_url: str | None,
) -> None:
    """rtdb-isolate - worker executing real-time database commands.

    By default, serves the command protocol on stdin/stdout.
    Use --http to run as an HTTP/WebSocket server.
    """
    if stdio_mode and http_mode:
        raise click.UsageError("--stdio and --http are mutually exclusive")

    if (host is not None or port is not None) and not http_mode and not health_check:
        raise click.UsageError(
            "--host and --port require --http mode. "
            "These options are only available when running as an HTTP server."
        )

    config = _resolve_config(config_path, backend, host, port, log_level)

    if health_check:
        _do_health_check(health_url or f"http://{config.host}:{config.port}")
        return

    if not config.backend:
        raise click.UsageError(
            "No database backend configured. Pass --backend package.module:factory "
            "or set RTDB_ISOLATE_BACKEND."
        )

    _configure_logging(config.log_level)

    if http_mode:
        _run_http_server(config)
    else:
        _run_stdio_server(config)


def _do_health_check(url: str) -> None:
    """Check worker health."""

    async def check() -> None:
        try:
            async with httpx.AsyncClient() as client:
                response = await client.get(f"{url.rstrip('/')}/health")
                if response.status_code == 200:
                    data = response.json()
                    click.echo(f"Worker is healthy: {data}")
                else:
                    click.echo(f"Worker returned {response.status_code}", err=True)
                    sys.exit(1)
        except httpx.ConnectError:
            click.echo(f"Cannot connect to worker at {url}", err=True)
            sys.exit(1)

    asyncio.run(check())


def _load_handler(config: WorkerConfig):
    from .worker import create_handler

    try:
        return create_handler(config)
    except (ImportError, ValueError, AttributeError) as e:
        raise click.BadParameter(str(e), param_hint="--backend") from e


def _run_http_server(config: WorkerConfig) -> None:
    """Run HTTP server mode."""
    import uvicorn

    from .app import create_app

    app = create_app(_load_handler(config))

    click.echo(f"Starting rtdb-isolate worker on http://{config.host}:{config.port}", err=True)
    click.echo("Press Ctrl+C to stop", err=True)

    uvicorn.run(app, host=config.host, port=config.port, log_level=config.log_level.lower())


def _run_stdio_server(config: WorkerConfig) -> None:
    """Run stdio server mode (default)."""
    from .transport.stdio import run_stdio_worker

    handler = _load_handler(config)

    click.echo("Starting rtdb-isolate worker in stdio mode", err=True)

    try:
        asyncio.run(run_stdio_worker(handler))
    except KeyboardInterrupt:
        click.echo("\nShutting down", err=True)


if __name__ == "__main__":
    main()
