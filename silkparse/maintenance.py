"""Maintenance operations for cron-style callers.

Covers the queue repair interface (force resume, purge, listing), removal
of expired upload directories and the health probe. Every operation is
available as a library function and as a ``silkparse-maintenance``
subcommand.
"""

import asyncio
import json
import os
import shutil
import time
import httpx
import structlog
import typer
from pathlib import Path
from typing import Iterable, Optional

from silkparse.config import settings
from silkparse.jobs.queue import Job, JobQueue, isoformat
from silkparse.main import configure_logging
from silkparse.storage import JOB_STATES, JobStore

logger = structlog.get_logger()

QUEUE_PURGE_AGE_SECONDS = 7 * 24 * 60 * 60
HEALTH_TIMEOUT_SECONDS = 5.0

app = typer.Typer(
    name="silkparse-maintenance",
    help="Queue repair, file cleanup and health checks",
    add_completion=False,
)


async def force_resume(queue: JobQueue) -> bool:
    """Clear a pause flag left behind by any process.

    Returns:
        True if the queue was paused
    """
    was_paused = await queue.is_paused()
    await queue.resume()
    if was_paused:
        logger.warning("queue_force_resumed", source="maintenance")
    return was_paused


async def purge_older_than(queue: JobQueue, state: str, max_age_seconds: float) -> list[str]:
    """Delete jobs in ``state`` older than ``max_age_seconds``.

    Raises:
        ValueError: If ``state`` is not a job state
    """
    if state not in JOB_STATES:
        raise ValueError(f"Unknown job state: {state}")
    return await queue.clean(max_age_seconds, state)


async def list_by_state(queue: JobQueue, state: str) -> list[Job]:
    if state not in JOB_STATES:
        raise ValueError(f"Unknown job state: {state}")
    return await queue.get_jobs(state)


def _directory_size(path: Path) -> int:
    if path.is_file():
        return path.stat().st_size
    total = 0
    for root, _, files in os.walk(path):
        for name in files:
            try:
                total += os.path.getsize(os.path.join(root, name))
            except OSError:
                continue
    return total


def cleanup_files(
    upload_dir: Optional[str] = None,
    ttl_days: Optional[int] = None,
    protected: Iterable[str] = (),
    now: Optional[float] = None,
) -> dict:
    """Remove upload entries not modified within ``ttl_days``.

    Args:
        upload_dir: Directory holding per-job working directories
        ttl_days: Age in days after which an entry is removed
        protected: Entry names that are never removed (unfinished jobs)
        now: Reference time, epoch seconds

    Returns:
        Dict with ``files_processed``, ``files_deleted``, ``bytes_freed`` and
        ``errors``
    """
    upload_path = Path(upload_dir or settings.upload_dir)
    ttl_days = settings.ttl_days if ttl_days is None else ttl_days
    cutoff = (now or time.time()) - ttl_days * 24 * 60 * 60
    protected = set(protected)

    results = {"files_processed": 0, "files_deleted": 0, "bytes_freed": 0, "errors": []}
    if not upload_path.exists():
        logger.info("upload_dir_missing", upload_dir=str(upload_path), source="maintenance")
        return results

    for entry in sorted(upload_path.iterdir()):
        results["files_processed"] += 1
        if entry.name in protected:
            continue
        try:
            if entry.stat().st_mtime >= cutoff:
                continue
            size = _directory_size(entry)
            if entry.is_dir():
                shutil.rmtree(entry)
            else:
                entry.unlink()
        except OSError as e:
            logger.warning("file_cleanup_failed", entry=entry.name, error=str(e), source="maintenance")
            results["errors"].append(f"File cleanup error for {entry.name}: {e}")
            continue

        results["files_deleted"] += 1
        results["bytes_freed"] += size
        logger.info("upload_entry_deleted", entry=entry.name, size_bytes=size, source="maintenance")

    logger.info(
        "file_cleanup_completed",
        deleted=results["files_deleted"],
        processed=results["files_processed"],
        freed_mb=round(results["bytes_freed"] / 1024 / 1024, 2),
        source="maintenance",
    )
    return results


async def cleanup(queue: JobQueue, upload_dir: Optional[str] = None, ttl_days: Optional[int] = None) -> dict:
    """Expired upload directories plus terminal jobs older than a week."""
    unfinished = [
        job.id
        for state in ("waiting", "active", "delayed")
        for job in await queue.get_jobs(state)
    ]
    results = await asyncio.to_thread(cleanup_files, upload_dir, ttl_days, unfinished)

    purged = 0
    for state in ("completed", "failed"):
        try:
            purged += len(await purge_older_than(queue, state, QUEUE_PURGE_AGE_SECONDS))
        except Exception as e:
            logger.error("queue_purge_failed", state=state, error=str(e), source="maintenance")
            results["errors"].append(f"Queue cleanup error for {state}: {e}")
    results["queue_cleaned"] = purged
    results["timestamp"] = isoformat(time.time())
    return results


async def _probe_api(url: str) -> tuple[str, Optional[str]]:
    async with httpx.AsyncClient(timeout=HEALTH_TIMEOUT_SECONDS) as client:
        try:
            response = await client.get(url)
        except httpx.HTTPError as e:
            return "unhealthy", f"API server unreachable: {e}"
    if response.is_success:
        return "healthy", None
    return "unhealthy", f"API server returned {response.status_code}"


async def health_check(
    queue: JobQueue,
    upload_dir: Optional[str] = None,
    health_url: Optional[str] = None,
) -> dict:
    """Probe the store, the queue, the upload directory and the API.

    A paused queue is resumed as part of the check. The overall status is
    ``degraded`` when any check fails or an issue was repaired, and
    ``unhealthy`` when more than two checks fail.
    """
    results: dict = {
        "timestamp": isoformat(time.time()),
        "status": "healthy",
        "checks": {},
        "issues": [],
        "metrics": {},
    }

    try:
        counts = await queue.counts()
        paused = await force_resume(queue)
        results["checks"]["store"] = "healthy"
        results["metrics"]["queue"] = {"paused": paused, **counts}
        if paused:
            results["issues"].append("Queue was paused and has been resumed")
    except Exception as e:
        results["checks"]["store"] = "unhealthy"
        results["issues"].append(f"Job store unavailable: {e}")

    upload_path = Path(upload_dir or settings.upload_dir)
    if upload_path.is_dir() and os.access(upload_path, os.W_OK):
        results["checks"]["filesystem"] = "healthy"
    else:
        results["checks"]["filesystem"] = "unhealthy"
        results["issues"].append(f"Upload directory not writable: {upload_path}")

    results["checks"]["api"], issue = await _probe_api(health_url or settings.health_url)
    if issue:
        results["issues"].append(issue)

    unhealthy = [name for name, status in results["checks"].items() if status == "unhealthy"]
    if unhealthy or results["issues"]:
        results["status"] = "degraded"
    if len(unhealthy) > 2:
        results["status"] = "unhealthy"

    log = logger.info if results["status"] == "healthy" else logger.warning
    log(
        "health_check_completed",
        status=results["status"],
        unhealthy=unhealthy,
        issues=len(results["issues"]),
        source="maintenance",
    )
    return results


async def _open_queue() -> JobQueue:
    # Store init only: JobQueue.initialize() would resume the queue
    store = JobStore()
    await store.initialize()
    return JobQueue(store)


def _echo_json(data) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


@app.callback()
def main() -> None:
    """Maintenance tools for the parse queue."""
    configure_logging()


@app.command("cleanup")
def cleanup_command(
    ttl_days: Optional[int] = typer.Option(None, "--ttl-days", help="Upload TTL in days"),
) -> None:
    """Remove expired uploads and old finished jobs."""

    async def run() -> dict:
        return await cleanup(await _open_queue(), ttl_days=ttl_days)

    results = asyncio.run(run())
    _echo_json(results)
    if results["errors"]:
        raise typer.Exit(code=1)


@app.command("health")
def health_command() -> None:
    """Check service health; exits 1 when unhealthy."""

    async def run() -> dict:
        return await health_check(await _open_queue())

    results = asyncio.run(run())
    _echo_json(results)
    if results["status"] == "unhealthy":
        raise typer.Exit(code=1)


@app.command("resume")
def resume_command() -> None:
    """Resume the queue if anything paused it."""

    async def run() -> bool:
        return await force_resume(await _open_queue())

    was_paused = asyncio.run(run())
    typer.echo("Queue resumed" if was_paused else "Queue was not paused")


@app.command("purge")
def purge_command(
    state: str = typer.Argument(..., help="Job state to purge"),
    max_age_hours: float = typer.Option(24 * 7, "--max-age-hours", help="Minimum job age"),
) -> None:
    """Delete jobs in STATE older than the given age."""

    async def run() -> list[str]:
        return await purge_older_than(await _open_queue(), state, max_age_hours * 3600)

    try:
        removed = asyncio.run(run())
    except ValueError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(code=2)
    typer.echo(f"Removed {len(removed)} {state} jobs")


@app.command("list")
def list_command(state: str = typer.Argument("waiting", help="Job state to list")) -> None:
    """List jobs in STATE, oldest first."""

    async def run() -> list[Job]:
        return await list_by_state(await _open_queue(), state)

    try:
        jobs = asyncio.run(run())
    except ValueError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(code=2)

    _echo_json(
        [
            {
                "id": job.id,
                "state": job.state,
                "progress": job.progress,
                "attempts_made": job.attempts_made,
                "enqueued_at": isoformat(job.enqueued_at),
                "failed_reason": job.failed_reason,
            }
            for job in jobs
        ]
    )


if __name__ == "__main__":
    app()
