import json
import time
import uuid
import structlog
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from silkparse.config import settings
from silkparse.errors import JobNotActive, JobNotFound, StalledLease
from silkparse.storage import JobStore

logger = structlog.get_logger()

STALLED_REASON = f"{StalledLease.__name__}: job stalled more than allowable limit"


def compute_backoff(base_delay_ms: int, attempts_made: int) -> int:
    """Exponential backoff delay for the retry after ``attempts_made`` failures.

    Args:
        base_delay_ms: Delay before the first retry
        attempts_made: Number of failed attempts so far (>= 1)

    Returns:
        Delay in milliseconds: ``base_delay_ms * 2 ** (attempts_made - 1)``
    """
    return base_delay_ms * 2 ** (max(attempts_made, 1) - 1)


@dataclass
class JobOptions:
    """Delivery options recorded with each job."""
    attempts: int = field(default_factory=lambda: settings.max_job_attempts)
    backoff_delay_ms: int = field(default_factory=lambda: settings.backoff_delay_ms)
    ttl_ms: int = field(default_factory=lambda: settings.job_timeout_ms)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "JobOptions":
        options = cls()
        for key, value in (data or {}).items():
            if hasattr(options, key):
                setattr(options, key, value)
        return options


@dataclass
class Job:
    """Represents a job in the queue."""
    id: str
    name: str
    state: str
    payload: dict
    options: JobOptions
    attempts_made: int = 0
    stalled_count: int = 0
    progress: int = 0
    result: Optional[dict] = None
    failed_reason: Optional[str] = None
    enqueued_at: Optional[float] = None
    delay_until: Optional[float] = None
    lease_token: Optional[str] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @classmethod
    def from_row(cls, row: dict) -> "Job":
        payload = {}
        if row.get("payload"):
            try:
                payload = json.loads(row["payload"])
            except json.JSONDecodeError:
                logger.warning("invalid_job_payload", job_id=row["id"], source="queue")

        return cls(
            id=row["id"],
            name=row["name"],
            state=row["state"],
            payload=payload,
            options=JobOptions.from_dict(json.loads(row["opts"] or "{}")),
            attempts_made=row["attempts_made"],
            stalled_count=row["stalled_count"],
            progress=row["progress"],
            result=json.loads(row["result"]) if row.get("result") else None,
            failed_reason=row.get("failed_reason"),
            enqueued_at=row.get("enqueued_at"),
            delay_until=row.get("delay_until"),
            lease_token=row.get("lease_token"),
            started_at=row.get("started_at"),
            finished_at=row.get("finished_at"),
        )


@dataclass
class QueueControl:
    """Process-wide switch gating whether waiting jobs may be leased."""
    paused: bool = False


def isoformat(timestamp: Optional[float]) -> Optional[str]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


class JobQueue:
    """Queue broker over the job store.

    Orders job ids into waiting/active/delayed/completed/failed and decides
    retries. All shared-state changes go through the store, which makes
    ``lease``, ``ack``, ``fail`` and ``progress`` atomic across any number
    of worker processes.
    """

    def __init__(
        self,
        store: JobStore,
        remove_on_complete: Optional[int] = None,
        remove_on_fail: Optional[int] = None,
        stalled_interval_ms: Optional[int] = None,
        max_stalled_count: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize job queue.

        Args:
            store: JobStore instance for database operations
            remove_on_complete: Completed jobs retained (oldest dropped first)
            remove_on_fail: Failed jobs retained (oldest dropped first)
            stalled_interval_ms: Lease silence after which a job is stalled
            max_stalled_count: Stall recoveries allowed before failing a job
            clock: Time source, epoch seconds
        """
        self.store = store
        self.remove_on_complete = (
            settings.remove_on_complete if remove_on_complete is None else remove_on_complete
        )
        self.remove_on_fail = settings.remove_on_fail if remove_on_fail is None else remove_on_fail
        self.stalled_interval_ms = (
            settings.stalled_interval_ms if stalled_interval_ms is None else stalled_interval_ms
        )
        self.max_stalled_count = (
            settings.max_stalled_count if max_stalled_count is None else max_stalled_count
        )
        self.clock = clock
        self.control = QueueControl()
        logger.info("job_queue_initialized", queue=store.queue_name, source="queue")

    async def initialize(self) -> None:
        """Prepare the store and resume the queue.

        A pause persisted by a previous run never survives a restart.
        """
        await self.store.initialize()
        await self.resume()

    async def enqueue(
        self,
        payload: dict,
        job_id: Optional[str] = None,
        options: Optional[JobOptions] = None,
        name: str = "parse",
    ) -> str:
        """Add a new job to the queue.

        Args:
            payload: Dictionary with job-specific data
            job_id: Optional caller-supplied id; a UUID is generated otherwise
            options: Delivery options (attempts, backoff, ttl)
            name: Type of job to process

        Returns:
            Job ID

        Raises:
            DuplicateId: If ``job_id`` exists and has not finished
        """
        job_id = job_id or str(uuid.uuid4())
        options = options or JobOptions()

        await self.store.insert_job(
            job_id, name, json.dumps(payload), json.dumps(asdict(options)), self.clock()
        )

        logger.info(
            "job_enqueued",
            job_id=job_id,
            job_type=name,
            attempts=options.attempts,
            source="queue",
        )

        return job_id

    async def lease(self, worker_token: str) -> Optional[Job]:
        """Claim the oldest eligible waiting job.

        Args:
            worker_token: Token identifying this lease; required for
                ``ack``/``fail``/``progress`` on the leased job

        Returns:
            Job instance or None if nothing is eligible or the queue is paused
        """
        row = await self.store.lease_next_job(worker_token, self.clock())
        if not row:
            return None

        job = Job.from_row(row)
        logger.info(
            "job_marked_processing",
            job_id=job.id,
            attempt=job.attempts_made + 1,
            source="queue",
        )
        return job

    async def progress(
        self, job_id: str, percent: int, token: Optional[str] = None
    ) -> int:
        """Update an active job's progress.

        Args:
            job_id: ID of the active job
            percent: Progress in [0, 100]; lower values than the stored one
                leave it unchanged
            token: Lease token, checked when given

        Returns:
            The stored progress value

        Raises:
            ValueError: If percent is out of range
            JobNotActive: If the job is not active (under token)
        """
        if not 0 <= percent <= 100:
            raise ValueError(f"Progress must be within 0-100, got {percent}")

        stored = await self.store.update_progress(job_id, int(percent), self.clock(), token)
        if stored is None:
            raise JobNotActive(f"Job {job_id} is not active")

        if stored % 10 == 0:
            logger.info("job_progress", job_id=job_id, progress=stored, source="queue")
        return stored

    async def extend_lease(self, job_id: str, token: str) -> bool:
        return await self.store.extend_lease(job_id, token, self.clock())

    async def ack(self, job_id: str, result: dict, token: Optional[str] = None) -> None:
        """Mark a job as successfully completed.

        Args:
            job_id: ID of the completed job
            result: Result data from job processing
            token: Lease token, checked when given

        Raises:
            JobNotActive: If the job is not active (under token)
        """
        if not await self.store.complete_job(job_id, json.dumps(result), self.clock(), token):
            raise JobNotActive(f"Job {job_id} is not active")

        logger.info("job_completed", job_id=job_id, source="queue")
        await self.store.trim_state("completed", self.remove_on_complete)

    async def fail(self, job_id: str, reason: str, token: Optional[str] = None) -> Job:
        """Record a failed attempt.

        The job is rescheduled as delayed with exponential backoff while
        attempts remain, and failed permanently once
        ``attempts_made == attempts``.

        Args:
            job_id: ID of the failed job
            reason: Error message describing the failure
            token: Lease token, checked when given

        Returns:
            The updated job

        Raises:
            JobNotActive: If the job is not active (under token)
        """

        def decide_delay(attempts_made: int, opts: dict) -> Optional[float]:
            options = JobOptions.from_dict(opts)
            if attempts_made >= options.attempts:
                return None
            return compute_backoff(options.backoff_delay_ms, attempts_made) / 1000

        row = await self.store.fail_job(job_id, reason, self.clock(), decide_delay, token)
        if row is None:
            raise JobNotActive(f"Job {job_id} is not active")

        job = Job.from_row(row)
        if job.state == "failed":
            logger.error(
                "job_failed",
                job_id=job_id,
                error=reason,
                attempts_made=job.attempts_made,
                source="queue",
            )
            await self.store.trim_state("failed", self.remove_on_fail)
        else:
            logger.warning(
                "job_failed_will_retry",
                job_id=job_id,
                error=reason,
                attempts_made=job.attempts_made,
                retry_in_seconds=round(job.delay_until - self.clock(), 3),
                source="queue",
            )
        return job

    async def reclaim_stalled(self) -> list[Job]:
        """Return jobs whose lease went quiet to waiting, or fail them.

        Returns:
            Jobs reclaimed by this sweep
        """
        now = self.clock()
        rows = await self.store.reclaim_stalled(
            now - self.stalled_interval_ms / 1000,
            self.max_stalled_count,
            STALLED_REASON,
            now,
        )

        jobs = [Job.from_row(row) for row in rows]
        for job in jobs:
            logger.warning(
                "job_stalled",
                job_id=job.id,
                stalled_count=job.stalled_count,
                new_state=job.state,
                source="queue",
            )
        if any(job.state == "failed" for job in jobs):
            await self.store.trim_state("failed", self.remove_on_fail)
        return jobs

    async def pause(self) -> None:
        """Stop leasing waiting jobs; active jobs keep running."""
        await self.store.set_paused(True)
        self.control.paused = True
        logger.warning("queue_paused", source="queue")

    async def resume(self) -> None:
        """Allow leasing again and clear the persisted pause flag."""
        await self.store.set_paused(False)
        self.control.paused = False
        logger.info("queue_resumed", source="queue")

    async def is_paused(self) -> bool:
        self.control.paused = await self.store.is_paused()
        return self.control.paused

    async def get_job(self, job_id: str) -> Job:
        """Fetch a job by id.

        Raises:
            JobNotFound: If no job is stored under ``job_id``
        """
        row = await self.store.get_job(job_id)
        if not row:
            raise JobNotFound(f"Job {job_id} not found")
        return Job.from_row(row)

    async def get_jobs(self, state: Optional[str] = None) -> list[Job]:
        return [Job.from_row(row) for row in await self.store.list_jobs(state)]

    async def counts(self) -> dict[str, int]:
        return await self.store.count_by_state()

    async def queue_position(self, job_id: str) -> Optional[int]:
        return await self.store.queue_position(job_id)

    async def clean(self, grace_seconds: float, state: str, limit: int = 0) -> list[str]:
        """Remove jobs in ``state`` older than the grace period.

        Args:
            grace_seconds: Age below which jobs are kept
            state: Job state to clean
            limit: Number of newest jobs always kept

        Returns:
            Ids of removed jobs
        """
        removed = await self.store.purge_jobs(state, self.clock() - grace_seconds, limit)
        logger.info("queue_cleaned", state=state, removed=len(removed), source="queue")
        return removed

    async def describe(self) -> dict[str, Any]:
        counts = await self.counts()
        return {
            "queue": self.store.queue_name,
            "paused": await self.is_paused(),
            **counts,
        }
