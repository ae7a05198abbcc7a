"""Worker process entry point - FastAPI monitoring server around the worker pool."""

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from silkparse import __version__
from silkparse.analyzer import DocumentAnalyzer, PdftocairoRenderer
from silkparse.config import settings
from silkparse.errors import JobNotFound
from silkparse.jobs import JobQueue, ParseJobProcessor, WorkerPool
from silkparse.service import ParseService
from silkparse.storage import JobStore, ResultStore

STARTUP_CLEAN_GRACE_SECONDS = 24 * 60 * 60


def configure_logging() -> None:
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(structlog.stdlib.logging, settings.log_level.upper())
        ),
    )


# Configure structured logging
configure_logging()

logger = structlog.get_logger()

# Global instances
queue: Optional[JobQueue] = None
pool: Optional[WorkerPool] = None
service: Optional[ParseService] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    queue: str
    paused: bool
    busy_slots: int
    concurrency: int


class SlotResponse(BaseModel):
    slot: int
    state: str
    job_id: Optional[str] = None
    processed: int


class QueueResponse(BaseModel):
    """Queue depth per state plus the worker slots of this process."""
    queue: str
    paused: bool
    waiting: int
    active: int
    delayed: int
    completed: int
    failed: int
    slots: list[SlotResponse]


class JobStatusResponse(BaseModel):
    id: str
    state: str
    progress: int
    submitted_at: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    original_name: Optional[str] = None
    queue_position: Optional[int] = None
    processing_started_at: Optional[str] = None
    retry_at: Optional[str] = None
    completed_at: Optional[str] = None
    processing_time_ms: Optional[int] = None
    attempts: Optional[int] = None
    error: Optional[str] = None


async def clean_finished_jobs(job_queue: JobQueue) -> None:
    """Drop finished jobs older than a day beyond the retention counts."""
    await job_queue.clean(
        STARTUP_CLEAN_GRACE_SECONDS, "completed", job_queue.remove_on_complete
    )
    await job_queue.clean(STARTUP_CLEAN_GRACE_SECONDS, "failed", job_queue.remove_on_fail)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle."""
    global queue, pool, service

    logger.info(
        "silkparse_worker_starting",
        version=__version__,
        environment=settings.environment,
        concurrency=settings.worker_concurrency,
    )

    # Initialize storage and queue (initialize always resumes the queue)
    store = JobStore()
    queue = JobQueue(store)
    await queue.initialize()
    results = ResultStore()
    service = ParseService(queue, results)
    logger.info("storage_initialized")

    try:
        await clean_finished_jobs(queue)
    except Exception as e:
        logger.warning("startup_clean_failed", error=str(e))

    counts = await queue.counts()
    logger.info(
        "queue_state_on_startup",
        waiting=counts["waiting"],
        active=counts["active"],
        completed=counts["completed"],
        failed=counts["failed"],
        delayed=counts["delayed"],
    )

    analyzer = DocumentAnalyzer(PdftocairoRenderer())
    pool = WorkerPool(queue, ParseJobProcessor(analyzer, results))
    await pool.start()

    yield

    logger.info("silkparse_worker_shutdown")
    await pool.shutdown()


# Create FastAPI app
app = FastAPI(
    title="silkparse worker",
    description="Print-effect extraction workers for uploaded card designs",
    version=__version__,
    lifespan=lifespan,
)


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse(
        status="healthy" if pool and pool.running else "stopping",
        version=__version__,
        queue=settings.queue_name,
        paused=await queue.is_paused(),
        busy_slots=len(pool.busy_slots),
        concurrency=pool.concurrency,
    )


@app.get("/queue", response_model=QueueResponse)
async def queue_status():
    """Queue counts and slot states."""
    description = await queue.describe()
    return QueueResponse(
        **description,
        slots=[SlotResponse(**slot) for slot in pool.snapshot()],
    )


@app.get("/jobs/{job_id}", response_model=JobStatusResponse)
async def job_status(job_id: str):
    """Status of a single job."""
    try:
        return JobStatusResponse(**await service.status(job_id))
    except JobNotFound:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")


def run() -> None:
    import uvicorn

    uvicorn.run(
        "silkparse.main:app",
        host="0.0.0.0",
        port=settings.monitor_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
