"""Submission, status and result interfaces consumed by the upload gateway."""

import time
import structlog
from pathlib import Path
from typing import Optional

from silkparse.config import settings
from silkparse.errors import ResultNotReady
from silkparse.jobs.queue import Job, JobOptions, JobQueue, isoformat
from silkparse.storage import ResultStore

logger = structlog.get_logger()

PAYLOAD_VERSION = "1.1.0"

# Queue states as reported to callers
STATUS_BY_STATE = {
    "waiting": "queued",
    "active": "processing",
    "delayed": "delayed",
    "completed": "completed",
    "failed": "failed",
}


def default_parse_options() -> dict:
    return {
        "dpi": settings.default_dpi,
        "enable_ocg": settings.enable_ocg,
        "extract_vector": settings.extract_vector,
    }


class ParseService:
    """Facade over the queue and the result store for one parse pipeline."""

    def __init__(self, queue: JobQueue, results: ResultStore) -> None:
        self.queue = queue
        self.results = results

    async def submit(
        self,
        file_path: str,
        original_name: str,
        file_size: int,
        options: Optional[dict] = None,
        job_id: Optional[str] = None,
        submitted_by: Optional[str] = None,
        user_agent: Optional[str] = None,
        job_options: Optional[JobOptions] = None,
    ) -> dict:
        """Queue a document for parsing.

        Args:
            file_path: Location of the uploaded file, usually inside the job dir
            original_name: Name the file was uploaded with
            file_size: Size in bytes
            options: Parse options merged over the defaults
                (``dpi``, ``enable_ocg``, ``extract_vector``)
            job_id: Caller-supplied id; generated when omitted
            submitted_by: Identity of the submitter
            user_agent: Client user agent, kept for diagnostics
            job_options: Delivery options overriding the queue defaults

        Returns:
            Dict with ``id``, ``status`` ("queued"), ``submitted_at`` and
            ``queue_position``

        Raises:
            DuplicateId: If ``job_id`` names an unfinished job
        """
        submitted_at = isoformat(time.time())
        payload = {
            "file_path": str(Path(file_path)),
            "original_name": original_name,
            "file_size": file_size,
            "options": {**default_parse_options(), **(options or {})},
            "submitted_at": submitted_at,
            "submitted_by": submitted_by,
            "user_agent": user_agent,
            "version": PAYLOAD_VERSION,
        }

        job_id = await self.queue.enqueue(payload, job_id=job_id, options=job_options)
        position = await self.queue.queue_position(job_id)

        logger.info(
            "parse_job_submitted",
            job_id=job_id,
            file=original_name,
            file_size=file_size,
            queue_position=position,
            source="service",
        )

        return {
            "id": job_id,
            "status": "queued",
            "submitted_at": submitted_at,
            "queue_position": position,
        }

    async def status(self, job_id: str) -> dict:
        """Current state of a job.

        Raises:
            JobNotFound: If no job is stored under ``job_id``
        """
        job = await self.queue.get_job(job_id)

        state = STATUS_BY_STATE.get(job.state, "unknown")
        if state == "queued" and await self.queue.is_paused():
            state = "paused"

        status = {
            "id": job.id,
            "state": state,
            "progress": job.progress,
            "submitted_at": job.payload.get("submitted_at") or isoformat(job.enqueued_at),
            "started_at": isoformat(job.started_at),
            "finished_at": isoformat(job.finished_at),
            "original_name": job.payload.get("original_name"),
        }

        if job.state == "waiting":
            status["queue_position"] = await self.queue.queue_position(job.id)
        elif job.state == "active":
            status["processing_started_at"] = isoformat(job.started_at)
        elif job.state == "delayed":
            status["retry_at"] = isoformat(job.delay_until)
            status["attempts"] = job.attempts_made
        elif job.state == "completed":
            status["completed_at"] = isoformat(job.finished_at)
            status["processing_time_ms"] = _processing_time_ms(job)
        elif job.state == "failed":
            status["error"] = job.failed_reason
            status["attempts"] = job.attempts_made

        return status

    async def result(self, job_id: str) -> dict:
        """Manifest of a completed job.

        Raises:
            JobNotFound: If no job is stored under ``job_id``
            ResultNotReady: If the job has not completed or its manifest is gone
        """
        job = await self.queue.get_job(job_id)
        if job.state != "completed":
            raise ResultNotReady(f"Job {job_id} is {STATUS_BY_STATE.get(job.state, job.state)}")

        manifest = self.results.load_manifest(job_id)
        if manifest is None:
            raise ResultNotReady(f"Manifest for job {job_id} is missing")
        return manifest


def _processing_time_ms(job: Job) -> Optional[int]:
    if job.result and job.result.get("processing_time_ms") is not None:
        return job.result["processing_time_ms"]
    if job.started_at and job.finished_at:
        return int((job.finished_at - job.started_at) * 1000)
    return None
