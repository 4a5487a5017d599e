"""CLI tools for operating the job queue."""

import asyncio
import json
import logging
from datetime import timedelta
from uuid import UUID

import click

from supportdesk.core.exceptions import PermanentValidationError
from supportdesk.db.enums import JobStatus, JobType
from supportdesk.db.session import SessionLocal
from supportdesk.services import job_service, settings_service


@click.group()
@click.option("--verbose", is_flag=True, help="Debug logging")
def cli(verbose: bool):
    """Support desk queue CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


@cli.command()
@click.argument("job_type")
@click.option("--payload", default="{}", help="JSON payload")
@click.option("--idempotency-key", default=None, help="Skip if a job with this key exists")
def enqueue(job_type: str, payload: str, idempotency_key: str | None):
    """
    Enqueue a single job.

    Example:
        python -m supportdesk.cli enqueue return_sync --payload '{"full_resync": true}'
    """
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"Invalid JSON: {e}", param_hint="--payload")

    with SessionLocal() as db:
        try:
            job = job_service.enqueue(db, job_type, data, idempotency_key=idempotency_key)
        except PermanentValidationError as e:
            raise click.ClickException(str(e))
        click.echo(f"✓ Enqueued {job.job_type} job {job.id} (status={job.status})")


@cli.command("run-once")
@click.option("--max-batch", type=int, default=None, help="Jobs to dispatch (default WORKER_BATCH_SIZE)")
@click.option("--no-recurring", is_flag=True, help="Do not enqueue recurring jobs first")
def run_once_cmd(max_batch: int | None, no_recurring: bool):
    """Run one dispatcher batch, like a scheduler call to POST /queue/process."""
    from supportdesk.worker import run_once

    with SessionLocal() as db:
        if not no_recurring:
            for job in job_service.enqueue_recurring_jobs(db):
                click.echo(f"→ Enqueued recurring {job.job_type}")
        result = asyncio.run(run_once(db, max_batch=max_batch))

    click.echo(f"✓ Processed {result.processed} job(s), {result.failed} failed")
    for error in result.errors:
        click.echo(f"  ✗ {error['job_type']} {error['job_id']}: {error['error']}")


@cli.command()
@click.option("--interval", type=int, default=None, help="Seconds between batches (default WORKER_POLL_INTERVAL)")
@click.option("--max-batch", type=int, default=None)
def worker(interval: int | None, max_batch: int | None):
    """Run the dispatcher in a loop until interrupted."""
    from supportdesk.worker import worker_loop

    asyncio.run(worker_loop(poll_interval=interval, max_batch=max_batch))


@cli.command()
def stats():
    """Show status and type counts over the most recent jobs."""
    with SessionLocal() as db:
        data = job_service.get_queue_stats(db)

    click.echo(f"Last {data['total']} job(s)")
    click.echo("By status:")
    for status, count in sorted(data["by_status"].items()):
        click.echo(f"  {status:<18} {count}")
    click.echo("By type:")
    for job_type, count in sorted(data["by_type"].items()):
        click.echo(f"  {job_type:<18} {count}")


@cli.command("purge-jobs")
@click.option("--days", type=int, default=30, show_default=True, help="Delete finished jobs older than this")
def purge_jobs(days: int):
    """Delete succeeded and dead jobs older than --days."""
    with SessionLocal() as db:
        deleted = job_service.purge_finished_jobs(db, timedelta(days=days))
    click.echo(f"✓ Deleted {deleted} finished job(s)")


@cli.command("jobs")
@click.option("--status", type=click.Choice([s.value for s in JobStatus]), default=None)
@click.option("--type", "job_type", type=click.Choice([t.value for t in JobType]), default=None)
@click.option("--limit", type=int, default=20, show_default=True)
def list_jobs_cmd(status: str | None, job_type: str | None, limit: int):
    """List recent jobs, newest first."""
    with SessionLocal() as db:
        jobs = job_service.list_jobs(
            db,
            status=JobStatus(status) if status else None,
            job_type=JobType(job_type) if job_type else None,
            limit=limit,
        )
        for job in jobs:
            click.echo(
                f"{job.id}  {job.job_type:<12} {job.status:<18} "
                f"attempts={job.attempts}/{job.max_attempts}  created={job.created_at:%Y-%m-%d %H:%M}"
            )


@cli.command()
@click.argument("job_id", type=click.UUID)
def show(job_id: UUID):
    """Show one job with its payload, result and last error."""
    with SessionLocal() as db:
        job = job_service.get_job(db, job_id)
        if job is None:
            raise click.ClickException(f"Job {job_id} not found")
        click.echo(f"{job.job_type} {job.id} status={job.status} attempts={job.attempts}/{job.max_attempts}")
        click.echo(f"payload: {json.dumps(job.payload, ensure_ascii=False)}")
        if job.result is not None:
            click.echo(f"result: {json.dumps(job.result, ensure_ascii=False)}")
        if job.last_error:
            click.echo(f"last error: {job.last_error}")


@cli.command("set-setting")
@click.argument("key")
@click.argument("value")
def set_setting_cmd(key: str, value: str):
    """Store an operator setting (IMAP, iKAS, OpenAI credentials, knowledge base)."""
    with SessionLocal() as db:
        settings_service.set_setting(db, key, value)
    click.echo(f"✓ Saved {key}")


@cli.command("get-setting")
@click.argument("key")
def get_setting_cmd(key: str):
    """Print an operator setting. Secrets are masked."""
    with SessionLocal() as db:
        value = settings_service.get_setting(db, key)
    if not value:
        raise click.ClickException(f"{key} is not set")
    if key in settings_service.SECRET_KEYS:
        value = value[:3] + "***"
    click.echo(value)


if __name__ == "__main__":
    cli()
