"""Shared option handling for CLI commands."""

from pathlib import Path

import click

from cloudforge.settings import CloudSettings, SettingsError
from cloudforge.triggers import HandlerShapeError, TriggerRegistry
from cloudforge.triggers.loader import load_cloud_module


def load_settings(config_path: Path | None) -> CloudSettings:
    try:
        return CloudSettings.load(config_path)
    except SettingsError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)


def load_registry(settings: CloudSettings, module: str | None) -> TriggerRegistry:
    """Build a registry from --module, falling back to the configured cloud module."""
    module_path = module or settings.cloud_module
    if not module_path:
        click.echo("Error: no cloud module given (use --module or CLOUDFORGE_CLOUD_MODULE)", err=True)
        raise SystemExit(1)

    registry = TriggerRegistry()
    try:
        load_cloud_module(registry, module_path)
    except (ImportError, HandlerShapeError) as e:
        click.echo(f"Error: could not load cloud module '{module_path}': {e}", err=True)
        raise SystemExit(1)
    return registry


module_option = click.option(
    "--module",
    "module",
    default=None,
    help="Dotted path of the cloud module exposing register(registry).",
)

config_option = click.option(
    "--config",
    "config_path",
    default=None,
    type=click.Path(exists=True, path_type=Path),
    help="Settings YAML file.",
)
