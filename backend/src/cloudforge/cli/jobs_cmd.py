"""Job CLI commands: run a job in-process and follow its progress."""

import asyncio
import json
from pathlib import Path

import click

from cloudforge.cli._common import config_option, load_registry, load_settings, module_option
from cloudforge.jobs import JobRun, JobRunner, JobStatus, JobStatusStore
from cloudforge.triggers import CallerIdentity, CloudError, InvocationPipeline


@click.group()
def jobs():
    """Job commands."""
    pass


@jobs.command("run")
@click.argument("name")
@module_option
@config_option
@click.option("--params", "params_json", default="{}", help="Job parameters as a JSON object.")
@click.option(
    "--poll-interval",
    default=0.1,
    type=float,
    show_default=True,
    help="Seconds between progress checks.",
)
def run_job(
    name: str,
    module: str | None,
    config_path: Path | None,
    params_json: str,
    poll_interval: float,
):
    """Run job NAME as master and print its progress log."""
    try:
        params = json.loads(params_json)
    except json.JSONDecodeError as e:
        click.echo(f"Error: --params is not valid JSON: {e}", err=True)
        raise SystemExit(1)
    if not isinstance(params, dict):
        click.echo("Error: --params must be a JSON object", err=True)
        raise SystemExit(1)

    settings = load_settings(config_path)
    registry = load_registry(settings, module)
    store = JobStatusStore(settings.job_store_url) if settings.job_store_url else None
    runner = JobRunner(registry, InvocationPipeline(settings), store=store)

    async def _follow() -> JobRun:
        run_id = runner.start(name, params, CallerIdentity.master(), source="cli")
        click.echo(f"Started {name} (run {run_id})")
        printed = 0
        while True:
            run = runner.status(run_id)
            for entry in run.progress_log[printed:]:
                click.echo(f"  [{entry.timestamp.strftime('%H:%M:%S')}] {entry.message}")
            printed = len(run.progress_log)
            if run.is_terminal:
                return run
            await runner.wait(run_id, timeout=poll_interval)

    try:
        run = asyncio.run(_follow())
    except CloudError as e:
        click.echo(f"Error: {e.message}", err=True)
        raise SystemExit(1)
    finally:
        if store:
            store.close()

    if run.status is JobStatus.SUCCEEDED:
        click.echo(click.style(f"Job {name} succeeded", fg="green"))
        if run.result is not None:
            click.echo(json.dumps(run.result, indent=2, default=str))
        return

    click.echo(
        click.style(f"Job {name} failed: [{run.error.code}] {run.error.message}", fg="red"),
        err=True,
    )
    raise SystemExit(1)
