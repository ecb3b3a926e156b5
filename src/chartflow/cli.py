from __future__ import annotations

import json
import logging
from typing import Optional

import typer
import uvicorn

from chartflow import __version__
from chartflow.config import get_settings

app = typer.Typer(add_completion=False, help="ChartFlow CLI")


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@app.callback()
def _root(
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level"),
) -> None:
    _configure_logging(log_level)


@app.command()
def start(
    host: Optional[str] = typer.Option(None, help="Bind host"),
    port: Optional[int] = typer.Option(None, help="Bind port"),
    reload: bool = typer.Option(False, help="Auto-reload on changes (dev)"),
) -> None:
    settings = get_settings()
    uvicorn.run(
        "chartflow.api.app:app",
        host=host or settings.HOST,
        port=port or settings.PORT,
        reload=reload,
    )


@app.command()
def version() -> None:
    typer.echo(__version__)


@app.command()
def worker(
    worker_id: Optional[str] = typer.Option(None, help="Worker id (default: host+pid)"),
    poll_interval: Optional[float] = typer.Option(None, help="Poll interval seconds"),
    once: bool = typer.Option(False, help="Process one job then exit"),
) -> None:
    """
    Run a document-processing worker.

    SIGTERM/SIGINT stop further claims; the job in flight is finished first.
    """
    from chartflow.integrations.storage import ObjectStorageClient
    from chartflow.processing.events.event_bus import event_bus, log_phase_event
    from chartflow.processing.services.job_worker import DocumentWorker, WorkerLifecycle

    event_bus.subscribe(log_phase_event)
    # Presign stored keys when a bucket is configured; otherwise use the stored URLs.
    storage = ObjectStorageClient() if get_settings().S3_BUCKET_NAME else None
    w = DocumentWorker(worker_id, poll_interval=poll_interval, storage=storage)

    if once:
        w.release_stuck_jobs()
        try:
            processed = w.run_once()
        except Exception as exc:
            typer.echo(f"Worker error: {exc}", err=True)
            raise typer.Exit(1)
        typer.echo("Processed one job." if processed else "No pending jobs.")
        return

    lifecycle = WorkerLifecycle()
    lifecycle.install_signal_handlers()
    typer.echo(f"Worker '{w.worker_id}' started. Press Ctrl+C to stop.", err=True)
    processed = w.run(lifecycle)
    typer.echo(f"Worker '{w.worker_id}' stopped after {processed} job(s).", err=True)


@app.command()
def stats() -> None:
    """Print queue statistics for the recent window as JSON."""
    from chartflow.database import get_db_session
    from chartflow.processing.services.queue_service import QueueService

    with get_db_session() as session:
        result = QueueService(session).get_stats()
    typer.echo(json.dumps(result, indent=2))


@app.command("release-stuck")
def release_stuck(
    threshold_minutes: Optional[int] = typer.Option(
        None, help="Lock age in minutes (default: JOB_STALE_TIMEOUT_MINUTES)"
    ),
) -> None:
    """Return jobs stuck in processing to pending."""
    from chartflow.database import get_db_session
    from chartflow.processing.services.queue_service import QueueService

    with get_db_session() as session:
        released = QueueService(session).release_stuck_jobs(threshold_minutes)
        job_ids = [job.job_id for job in released]
    typer.echo(f"Released {len(job_ids)} stuck job(s).")
    for job_id in job_ids:
        typer.echo(f"  {job_id}")


@app.command()
def cleanup(
    older_than_days: Optional[int] = typer.Option(
        None, help="Retention in days (default: JOB_RETENTION_DAYS)"
    ),
) -> None:
    """Delete completed jobs past the retention window."""
    from chartflow.database import get_db_session
    from chartflow.processing.services.queue_service import QueueService

    with get_db_session() as session:
        removed = QueueService(session).cleanup_old_jobs(older_than_days)
    typer.echo(f"Removed {removed} completed job(s).")


@app.command("init-db")
def init_database() -> None:
    """Create tables (SCHEMA_MODE=create_all only)."""
    from chartflow.database import init_db

    init_db(create_tables=True)
    typer.echo("Database initialized.")


@app.command("db")
def db_command(
    action: str = typer.Argument(
        ..., help="upgrade|downgrade|revision|current|history"
    ),
    message: Optional[str] = typer.Option(
        None, "--message", "-m", help="Migration message (for revision)"
    ),
    autogenerate: bool = typer.Option(
        True, "--autogenerate/--no-autogenerate", help="Autogenerate migration"
    ),
    revision: Optional[str] = typer.Option(
        None, "--revision", "-r", help="Target revision (for upgrade/downgrade)"
    ),
) -> None:
    """
    Database migrations via Alembic.

    Actions:
      upgrade   - Apply migrations (default: head)
      downgrade - Revert migrations
      revision  - Create new migration
      current   - Show current revision
      history   - Show migration history
    """
    import os
    import subprocess
    import sys

    alembic_ini = os.path.join(os.getcwd(), "alembic.ini")
    if not os.path.exists(alembic_ini):
        typer.echo("Error: alembic.ini not found", err=True)
        raise typer.Exit(1)

    cmd = [sys.executable, "-m", "alembic", "-c", alembic_ini]

    if action == "upgrade":
        cmd.extend(["upgrade", revision or "head"])
    elif action == "downgrade":
        cmd.extend(["downgrade", revision or "-1"])
    elif action == "revision":
        cmd.append("revision")
        if autogenerate:
            cmd.append("--autogenerate")
        cmd.extend(["-m", message or "auto migration"])
    elif action == "current":
        cmd.append("current")
    elif action == "history":
        cmd.append("history")
    else:
        typer.echo(f"Unknown action: {action}", err=True)
        raise typer.Exit(1)

    typer.echo(f"Running: {' '.join(cmd)}", err=True)
    result = subprocess.run(cmd, cwd=os.getcwd())
    raise typer.Exit(result.returncode)


def main() -> None:
    app()
