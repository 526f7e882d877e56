"""Trigger CLI commands: inspect registrations."""

from pathlib import Path

import click

from cloudforge.cli._common import config_option, load_registry, load_settings, module_option


@click.group()
def triggers():
    """Trigger commands."""
    pass


@triggers.command("list")
@module_option
@config_option
def list_triggers(module: str | None, config_path: Path | None):
    """List hooks, functions and jobs registered by the cloud module."""
    registry = load_registry(load_settings(config_path), module)

    hooks = registry.list_hooks()
    click.echo(f"Hooks ({len(hooks)}):")
    for class_name, kind in hooks:
        registration = registry.lookup(class_name, kind)
        click.echo(f"  {kind.value:<14} {class_name:<20} [{registration.handler.convention.value}]")

    functions = registry.list_functions()
    click.echo(f"Functions ({len(functions)}):")
    for name in functions:
        click.echo(f"  {name} [{registry.get_function(name).handler.convention.value}]")

    jobs = registry.list_jobs()
    click.echo(f"Jobs ({len(jobs)}):")
    for name in jobs:
        click.echo(f"  {name} [{registry.get_job(name).handler.convention.value}]")
