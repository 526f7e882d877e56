"""Serve command: run the HTTP API under uvicorn."""

import os
from pathlib import Path

import click

from cloudforge.cli._common import config_option, module_option


@click.command("serve")
@module_option
@config_option
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option(
    "--port",
    default=lambda: int(os.environ.get("CLOUDFORGE_PORT", "1337")),
    type=int,
    show_default="1337 or CLOUDFORGE_PORT",
)
@click.option("--reload", is_flag=True, help="Restart on code changes (development).")
@click.option(
    "--log-level",
    default=lambda: os.environ.get("CLOUDFORGE_LOG_LEVEL", "info"),
    type=click.Choice(["critical", "error", "warning", "info", "debug"]),
)
def serve(
    module: str | None,
    config_path: Path | None,
    host: str,
    port: int,
    reload: bool,
    log_level: str,
):
    """Run the CloudForge API."""
    import uvicorn

    # The app reads these at startup, also in reloader subprocesses
    if module:
        os.environ["CLOUDFORGE_CLOUD_MODULE"] = module
    if config_path:
        os.environ["CLOUDFORGE_CONFIG"] = str(config_path.resolve())

    click.echo(f"Serving CloudForge API on http://{host}:{port}")
    uvicorn.run(
        "cloudforge.api.app:app",
        host=host,
        port=port,
        reload=reload,
        log_level=log_level,
    )
