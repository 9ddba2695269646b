"""
Command line interface: run workers, the scheduler and the operator API,
and manage the failed job store.
"""

import asyncio
import json
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import TypeVar

import click

from jobengine.backends.manager import BackendManager
from jobengine.config import get_settings
from jobengine.db import close_db, init_db
from jobengine.exceptions import BackendUnavailable, FailedJobNotFound
from jobengine.observability.logging import setup_logging
from jobengine.registry import load_registry

T = TypeVar("T")

REGISTRY_HELP = 'Registry import path, e.g. "myapp.jobs:registry"'


def _run(
    ctx: click.Context,
    connection: str | None,
    operation: Callable[..., Awaitable[T]],
) -> T:
    """Run `operation(backend)` against a connection, building backends if none were given."""
    backends: BackendManager | None = ctx.obj.get("backends")

    async def main() -> T:
        if backends is not None:
            return await operation(backends.connection(connection))
        session_factory = await init_db()
        manager = BackendManager.from_settings(get_settings(), session_factory)
        try:
            return await operation(manager.connection(connection))
        finally:
            await manager.close()
            await close_db()

    try:
        return asyncio.run(main())
    except BackendUnavailable as e:
        raise click.ClickException(f"Backend unavailable: {e}") from e
    except ValueError as e:
        raise click.ClickException(str(e)) from e


connection_option = click.option(
    "--connection", default=None, help="Queue connection name. Defaults to the configured default."
)


@click.group(help="jobengine - background job queue tooling")
@click.pass_context
def cli(ctx: click.Context) -> None:
    ctx.ensure_object(dict)


# ---------- Processes ----------
@cli.command("work", help="Process jobs from one connection")
@click.option("--registry", "registry_path", envvar="JOBENGINE_REGISTRY", required=True, help=REGISTRY_HELP)
@connection_option
@click.option("--queue", "queues", default=None, help="Comma-separated queues in priority order")
@click.option("--tries", type=int, default=None, help="Default max tries for jobs without one (0 = unlimited)")
@click.option("--timeout", type=float, default=None, help="Default seconds a job may run")
@click.option("--sleep", type=float, default=None, help="Seconds to sleep when every queue is empty")
@click.option("--concurrency", type=int, default=None, help="Jobs executed at the same time")
@click.option("--max-jobs", type=int, default=None, help="Stop after processing this many jobs")
@click.option("--once", is_flag=True, help="Process a single job, then exit")
@click.option("--stop-when-empty", is_flag=True, help="Exit once every queue is empty")
def work_cmd(registry_path, connection, queues, tries, timeout, sleep, concurrency, max_jobs, once, stop_when_empty):
    from jobengine.worker.main import run

    registry = load_registry(registry_path)
    queue_list = [q.strip() for q in queues.split(",") if q.strip()] if queues else None
    click.secho(f"Worker starting on {connection or 'default connection'}. Press Ctrl+C to stop…", fg="cyan")
    run(
        registry,
        connection=connection,
        queues=queue_list,
        tries=tries,
        timeout=timeout,
        sleep=sleep,
        concurrency=concurrency,
        max_jobs=max_jobs,
        once=once or None,
        stop_when_empty=stop_when_empty or None,
    )
    click.secho("Worker stopped.", fg="yellow")


@cli.command("schedule", help="Run the scheduler for recurring jobs")
@click.option("--registry", "registry_path", envvar="JOBENGINE_REGISTRY", required=True, help=REGISTRY_HELP)
@click.option("--tasks", "tasks_path", required=True, help='Function registering tasks, e.g. "myapp.schedule:configure"')
def schedule_cmd(registry_path, tasks_path):
    import importlib

    from jobengine.scheduler.main import run_async

    module_name, _, attribute = tasks_path.partition(":")
    configure = getattr(importlib.import_module(module_name), attribute or "configure")
    asyncio.run(run_async(load_registry(registry_path), configure))


@cli.command("serve", help="Run the operator HTTP API")
def serve_cmd():
    from jobengine.api.main import run

    run()


# ---------- Failed jobs ----------
@cli.command("failed", help="List failed jobs")
@connection_option
@click.option("--queue", default=None, help="Only failed jobs from this queue")
@click.option("--limit", type=int, default=100, show_default=True)
@click.pass_context
def failed_cmd(ctx, connection, queue, limit):
    rows = _run(ctx, connection, lambda backend: backend.list_failed(queue=queue, limit=limit))
    if not rows:
        click.echo("No failed jobs.")
        return
    for f in rows:
        summary = f.exception.strip().splitlines()[-1] if f.exception.strip() else ""
        click.echo(
            f"{f.id:>32} | {f.queue:<12} | {f.payload.type:<24} "
            f"| failed_at={f.failed_at.isoformat()} | {summary}"
        )


@cli.command("retry", help="Retry a failed job by id, or every failed job with 'all'")
@click.argument("failed_id")
@connection_option
@click.pass_context
def retry_cmd(ctx, failed_id, connection):
    if failed_id == "all":
        envelopes = _run(ctx, connection, lambda backend: backend.retry_all_failed())
        click.secho(f"Queued {len(envelopes)} failed jobs for retry.", fg="green")
        return
    try:
        envelope = _run(ctx, connection, lambda backend: backend.retry_failed(failed_id))
    except FailedJobNotFound as e:
        click.secho(f"Error: {e}", fg="red")
        raise SystemExit(1) from e
    click.secho(f"Queued {failed_id} for retry as {envelope.id}.", fg="green")


@cli.command("forget", help="Delete a failed job")
@click.argument("failed_id")
@connection_option
@click.pass_context
def forget_cmd(ctx, failed_id, connection):
    if not _run(ctx, connection, lambda backend: backend.forget_failed(failed_id)):
        click.secho(f"Error: failed job {failed_id} not found", fg="red")
        raise SystemExit(1)
    click.secho(f"Forgot failed job {failed_id}.", fg="green")


@cli.command("flush", help="Delete every failed job")
@connection_option
@click.pass_context
def flush_cmd(ctx, connection):
    deleted = _run(ctx, connection, lambda backend: backend.flush_failed())
    click.secho(f"Deleted {deleted} failed jobs.", fg="green")


@cli.command("prune-failed", help="Delete failed jobs older than the retention window")
@click.option("--hours", type=int, default=None, help="Retention in hours. Defaults to settings.")
@connection_option
@click.pass_context
def prune_failed_cmd(ctx, hours, connection):
    retention = hours if hours is not None else get_settings().failed_job_retention_hours
    before = datetime.now(UTC) - timedelta(hours=retention)
    deleted = _run(ctx, connection, lambda backend: backend.prune_failed(before))
    click.secho(f"Pruned {deleted} failed jobs older than {retention}h.", fg="green")


# ---------- Batches ----------
@cli.command("batch", help="Show batch progress")
@click.argument("batch_id")
@click.option("--cancel", is_flag=True, help="Cancel the batch")
@connection_option
@click.pass_context
def batch_cmd(ctx, batch_id, cancel, connection):
    async def operation(backend):
        if cancel:
            await backend.cancel_batch(batch_id)
        return await backend.get_batch(batch_id)

    batch = _run(ctx, connection, operation)
    if batch is None:
        click.secho(f"Error: batch {batch_id} not found", fg="red")
        raise SystemExit(1)

    click.echo(
        json.dumps(
            {
                "id": batch.id,
                "name": batch.name,
                "total_jobs": batch.total_jobs,
                "pending_jobs": batch.pending_jobs,
                "failed_jobs": batch.failed_jobs,
                "progress": round(batch.progress(), 4),
                "cancelled": batch.cancelled,
                "finished": batch.finished,
            },
            indent=2,
        )
    )


def main() -> None:
    setup_logging(role="cli")
    cli(obj={})


if __name__ == "__main__":
    main()
