"""CloudForge CLI entry point."""

import click


@click.group()
def cli():
    """CloudForge: cloud code trigger and job runner CLI."""
    pass


# Register subcommand groups
from cloudforge.cli.jobs_cmd import jobs  # noqa: E402
from cloudforge.cli.serve_cmd import serve  # noqa: E402
from cloudforge.cli.triggers_cmd import triggers  # noqa: E402

cli.add_command(jobs)
cli.add_command(serve)
cli.add_command(triggers)
