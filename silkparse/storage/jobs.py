import json

import aiosqlite
import structlog
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Optional

from silkparse.config import settings
from silkparse.errors import DuplicateId

logger = structlog.get_logger()

JOB_STATES = ("waiting", "active", "delayed", "completed", "failed")
TERMINAL_STATES = ("completed", "failed")

_JOB_COLUMNS = """
    id, queue, name, state, payload, opts, attempts_made, stalled_count,
    progress, result, failed_reason, enqueued_at, seq, delay_until,
    lease_token, lease_at, started_at, finished_at
"""


class JobStore:
    """Durable job records in SQLite.

    The store is the only place that enforces mutual exclusion on a job:
    every state change is a single transaction guarded by the job's current
    state and, for leased jobs, its lease token. Any number of worker
    processes can share one database file.
    """

    def __init__(
        self,
        db_path: Optional[str] = None,
        queue_name: Optional[str] = None,
        busy_timeout: float = 30.0,
    ) -> None:
        """Initialize job storage.

        Args:
            db_path: Path to SQLite database file. Uses settings if not provided.
            queue_name: Queue the records belong to. Uses settings if not provided.
            busy_timeout: Seconds to wait for a competing writer's lock.
        """
        self.db_path = db_path or settings.sqlite_path
        self.queue_name = queue_name or settings.queue_name
        self.busy_timeout = busy_timeout
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        logger.info(
            "job_storage_initialized",
            db_path=self.db_path,
            queue=self.queue_name,
            source="store",
        )

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        # Autocommit mode: transactions are opened explicitly with
        # BEGIN IMMEDIATE so the write lock is taken before any read.
        async with aiosqlite.connect(
            self.db_path, timeout=self.busy_timeout, isolation_level=None
        ) as db:
            db.row_factory = aiosqlite.Row
            yield db

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield db
            except BaseException:
                await db.execute("ROLLBACK")
                raise
            else:
                await db.execute("COMMIT")

    async def initialize(self) -> None:
        """Initialize database schema."""
        async with self._connect() as db:
            await db.execute("PRAGMA journal_mode=WAL")

            await db.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT NOT NULL,
                    queue TEXT NOT NULL,
                    name TEXT NOT NULL,
                    state TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    opts TEXT NOT NULL,
                    attempts_made INTEGER NOT NULL DEFAULT 0,
                    stalled_count INTEGER NOT NULL DEFAULT 0,
                    progress INTEGER NOT NULL DEFAULT 0,
                    result TEXT,
                    failed_reason TEXT,
                    enqueued_at REAL NOT NULL,
                    seq INTEGER NOT NULL,
                    delay_until REAL,
                    lease_token TEXT,
                    lease_at REAL,
                    started_at REAL,
                    finished_at REAL,
                    PRIMARY KEY (queue, id)
                )
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_queue_state_order
                ON jobs(queue, state, enqueued_at ASC, seq ASC)
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS queue_control (
                    queue TEXT PRIMARY KEY,
                    paused INTEGER NOT NULL DEFAULT 0,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

        logger.info("database_initialized", source="store")

    # Queue control

    async def set_paused(self, paused: bool) -> None:
        """Persist the queue-wide pause flag."""
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO queue_control (queue, paused, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(queue) DO UPDATE
                SET paused = excluded.paused, updated_at = CURRENT_TIMESTAMP
                """,
                (self.queue_name, int(paused)),
            )

        logger.info("queue_pause_flag_written", paused=paused, source="store")

    async def is_paused(self) -> bool:
        async with self._connect() as db:
            async with db.execute(
                "SELECT paused FROM queue_control WHERE queue = ?",
                (self.queue_name,),
            ) as cursor:
                row = await cursor.fetchone()
        return bool(row and row["paused"])

    # Job records

    async def insert_job(
        self, job_id: str, name: str, payload: str, opts: str, now: float
    ) -> None:
        """Insert a new waiting job.

        A finished job with the same id is replaced; any other existing job
        with that id is a conflict.

        Args:
            job_id: Caller-supplied or generated job id
            name: Job type (e.g., 'parse')
            payload: JSON payload with job data
            opts: JSON job options (attempts, backoff, ttl)
            now: Enqueue time, epoch seconds

        Raises:
            DuplicateId: If a non-terminal job already uses this id
        """
        async with self._transaction() as db:
            async with db.execute(
                "SELECT state FROM jobs WHERE queue = ? AND id = ?",
                (self.queue_name, job_id),
            ) as cursor:
                existing = await cursor.fetchone()

            if existing and existing["state"] not in TERMINAL_STATES:
                raise DuplicateId(
                    f"Job {job_id} already exists in state {existing['state']}"
                )
            if existing:
                await db.execute(
                    "DELETE FROM jobs WHERE queue = ? AND id = ?",
                    (self.queue_name, job_id),
                )

            async with db.execute(
                "SELECT COALESCE(MAX(seq), 0) + 1 FROM jobs WHERE queue = ?",
                (self.queue_name,),
            ) as cursor:
                seq = (await cursor.fetchone())[0]

            await db.execute(
                """
                INSERT INTO jobs (id, queue, name, state, payload, opts, enqueued_at, seq)
                VALUES (?, ?, ?, 'waiting', ?, ?, ?, ?)
                """,
                (job_id, self.queue_name, name, payload, opts, now, seq),
            )

        logger.info(
            "job_inserted",
            job_id=job_id,
            job_type=name,
            replaced=bool(existing),
            source="store",
        )

    async def lease_next_job(self, token: str, now: float) -> Optional[dict]:
        """Atomically move the oldest eligible job to active.

        Delayed jobs whose backoff has elapsed rejoin the waiting set first.
        They keep their original enqueue time, so a retried job is served in
        its original submission order.

        Args:
            token: Lease token identifying the caller's claim
            now: Current time, epoch seconds

        Returns:
            Job dict or None if the queue is paused or nothing is eligible
        """
        async with self._transaction() as db:
            async with db.execute(
                "SELECT paused FROM queue_control WHERE queue = ?",
                (self.queue_name,),
            ) as cursor:
                control = await cursor.fetchone()
            if control and control["paused"]:
                return None

            await db.execute(
                """
                UPDATE jobs
                SET state = 'waiting', delay_until = NULL
                WHERE queue = ? AND state = 'delayed' AND delay_until <= ?
                """,
                (self.queue_name, now),
            )

            async with db.execute(
                """
                SELECT id FROM jobs
                WHERE queue = ? AND state = 'waiting'
                ORDER BY enqueued_at ASC, seq ASC
                LIMIT 1
                """,
                (self.queue_name,),
            ) as cursor:
                row = await cursor.fetchone()
            if not row:
                return None

            await db.execute(
                """
                UPDATE jobs
                SET state = 'active', lease_token = ?, lease_at = ?,
                    started_at = ?, progress = 0
                WHERE queue = ? AND id = ? AND state = 'waiting'
                """,
                (token, now, now, self.queue_name, row["id"]),
            )

            job = await self._fetch(db, row["id"])

        logger.debug("job_leased", job_id=job["id"], token=token, source="store")
        return job

    async def get_job(self, job_id: str) -> Optional[dict]:
        async with self._connect() as db:
            return await self._fetch(db, job_id)

    async def _fetch(self, db: aiosqlite.Connection, job_id: str) -> Optional[dict]:
        async with db.execute(
            f"SELECT {_JOB_COLUMNS} FROM jobs WHERE queue = ? AND id = ?",
            (self.queue_name, job_id),
        ) as cursor:
            row = await cursor.fetchone()
        return dict(row) if row else None

    async def update_progress(
        self, job_id: str, progress: int, now: float, token: Optional[str] = None
    ) -> Optional[int]:
        """Raise an active job's progress and refresh its lease.

        Progress never decreases within an attempt: a lower value leaves the
        stored value unchanged.

        Returns:
            The stored progress, or None if the job is not active under token
        """
        async with self._transaction() as db:
            cursor = await db.execute(
                f"""
                UPDATE jobs
                SET progress = MAX(progress, ?), lease_at = ?
                WHERE queue = ? AND id = ? AND state = 'active'
                {"AND lease_token = ?" if token else ""}
                """,
                (progress, now, self.queue_name, job_id)
                + ((token,) if token else ()),
            )
            if cursor.rowcount == 0:
                return None
            async with db.execute(
                "SELECT progress FROM jobs WHERE queue = ? AND id = ?",
                (self.queue_name, job_id),
            ) as cursor:
                row = await cursor.fetchone()
        return row["progress"]

    async def extend_lease(self, job_id: str, token: str, now: float) -> bool:
        """Refresh the lease timestamp of an active job held under token."""
        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE jobs SET lease_at = ?
                WHERE queue = ? AND id = ? AND state = 'active' AND lease_token = ?
                """,
                (now, self.queue_name, job_id, token),
            )
            return cursor.rowcount > 0

    async def complete_job(
        self, job_id: str, result: str, now: float, token: Optional[str] = None
    ) -> bool:
        """Move an active job to completed and record its result."""
        async with self._transaction() as db:
            cursor = await db.execute(
                f"""
                UPDATE jobs
                SET state = 'completed', result = ?, progress = 100,
                    finished_at = ?, lease_token = NULL, failed_reason = NULL
                WHERE queue = ? AND id = ? AND state = 'active'
                {"AND lease_token = ?" if token else ""}
                """,
                (result, now, self.queue_name, job_id) + ((token,) if token else ()),
            )
            updated = cursor.rowcount > 0

        if updated:
            logger.info("job_status_updated", job_id=job_id, status="completed", source="store")
        return updated

    async def fail_job(
        self,
        job_id: str,
        reason: str,
        now: float,
        decide_delay: Callable[[int, dict], Optional[float]],
        token: Optional[str] = None,
    ) -> Optional[dict]:
        """Record a failed attempt of an active job.

        The attempt counter is incremented and ``decide_delay`` is called with
        the new count and the job's options. A returned delay (seconds)
        reschedules the job as delayed; None fails it permanently. Read and
        write happen in one transaction.

        Returns:
            Updated job dict, or None if the job is not active under token
        """
        async with self._transaction() as db:
            job = await self._fetch(db, job_id)
            if (
                not job
                or job["state"] != "active"
                or (token and job["lease_token"] != token)
            ):
                return None

            attempts_made = job["attempts_made"] + 1
            delay = decide_delay(attempts_made, json.loads(job["opts"]))

            if delay is None:
                await db.execute(
                    """
                    UPDATE jobs
                    SET state = 'failed', attempts_made = ?, failed_reason = ?,
                        finished_at = ?, lease_token = NULL
                    WHERE queue = ? AND id = ?
                    """,
                    (attempts_made, reason, now, self.queue_name, job_id),
                )
            else:
                await db.execute(
                    """
                    UPDATE jobs
                    SET state = 'delayed', attempts_made = ?, failed_reason = ?,
                        delay_until = ?, lease_token = NULL, lease_at = NULL
                    WHERE queue = ? AND id = ?
                    """,
                    (attempts_made, reason, now + delay, self.queue_name, job_id),
                )

            return await self._fetch(db, job_id)

    async def reclaim_stalled(
        self, cutoff: float, max_stalled_count: int, reason: str, now: float
    ) -> list[dict]:
        """Return or fail active jobs whose lease went quiet before cutoff.

        A stalled job goes back to waiting with its original enqueue time.
        Once its stall count exceeds ``max_stalled_count`` it fails instead.

        Returns:
            Updated job dicts for every reclaimed job
        """
        reclaimed = []

        async with self._transaction() as db:
            async with db.execute(
                """
                SELECT id, stalled_count FROM jobs
                WHERE queue = ? AND state = 'active' AND lease_at < ?
                """,
                (self.queue_name, cutoff),
            ) as cursor:
                rows = await cursor.fetchall()

            for row in rows:
                stalled_count = row["stalled_count"] + 1
                if stalled_count > max_stalled_count:
                    await db.execute(
                        """
                        UPDATE jobs
                        SET state = 'failed', stalled_count = ?, failed_reason = ?,
                            finished_at = ?, lease_token = NULL
                        WHERE queue = ? AND id = ?
                        """,
                        (stalled_count, reason, now, self.queue_name, row["id"]),
                    )
                else:
                    await db.execute(
                        """
                        UPDATE jobs
                        SET state = 'waiting', stalled_count = ?, lease_token = NULL,
                            lease_at = NULL, progress = 0
                        WHERE queue = ? AND id = ?
                        """,
                        (stalled_count, self.queue_name, row["id"]),
                    )
                reclaimed.append(await self._fetch(db, row["id"]))

        return reclaimed

    async def trim_state(self, state: str, keep: int) -> int:
        """Delete all but the newest ``keep`` jobs in a terminal state.

        Returns:
            Number of jobs deleted
        """
        async with self._connect() as db:
            cursor = await db.execute(
                """
                DELETE FROM jobs
                WHERE queue = ? AND state = ? AND id NOT IN (
                    SELECT id FROM jobs
                    WHERE queue = ? AND state = ?
                    ORDER BY finished_at DESC, seq DESC
                    LIMIT ?
                )
                """,
                (self.queue_name, state, self.queue_name, state, max(keep, 0)),
            )
            deleted_count = cursor.rowcount

        if deleted_count:
            logger.info(
                "jobs_trimmed",
                state=state,
                kept=keep,
                deleted_count=deleted_count,
                source="store",
            )
        return deleted_count

    async def purge_jobs(
        self, state: str, older_than: float, limit: Optional[int] = None
    ) -> list[str]:
        """Delete jobs in ``state`` last touched before ``older_than``.

        Terminal jobs are aged by finish time, others by enqueue time.

        Args:
            state: Job state to purge
            older_than: Cutoff, epoch seconds
            limit: Keep at least this many of the newest matching jobs

        Returns:
            Ids of the deleted jobs
        """
        age_column = "finished_at" if state in TERMINAL_STATES else "enqueued_at"

        async with self._transaction() as db:
            async with db.execute(
                f"""
                SELECT id FROM jobs
                WHERE queue = ? AND state = ?
                ORDER BY {age_column} DESC, seq DESC
                """,
                (self.queue_name, state),
            ) as cursor:
                ordered = [row["id"] for row in await cursor.fetchall()]

            protected = set(ordered[:limit]) if limit else set()

            async with db.execute(
                f"""
                SELECT id FROM jobs
                WHERE queue = ? AND state = ? AND {age_column} < ?
                """,
                (self.queue_name, state, older_than),
            ) as cursor:
                candidates = [row["id"] for row in await cursor.fetchall()]

            deleted = [job_id for job_id in candidates if job_id not in protected]
            await db.executemany(
                "DELETE FROM jobs WHERE queue = ? AND id = ?",
                [(self.queue_name, job_id) for job_id in deleted],
            )

        logger.info(
            "jobs_purged",
            state=state,
            deleted_count=len(deleted),
            source="store",
        )
        return deleted

    async def list_jobs(self, state: Optional[str] = None) -> list[dict]:
        """List jobs, oldest first, optionally restricted to one state."""
        query = f"SELECT {_JOB_COLUMNS} FROM jobs WHERE queue = ?"
        params: tuple[Any, ...] = (self.queue_name,)
        if state:
            query += " AND state = ?"
            params += (state,)
        query += " ORDER BY enqueued_at ASC, seq ASC"

        async with self._connect() as db:
            async with db.execute(query, params) as cursor:
                return [dict(row) for row in await cursor.fetchall()]

    async def count_by_state(self) -> dict[str, int]:
        counts = {state: 0 for state in JOB_STATES}
        async with self._connect() as db:
            async with db.execute(
                "SELECT state, COUNT(*) FROM jobs WHERE queue = ? GROUP BY state",
                (self.queue_name,),
            ) as cursor:
                for row in await cursor.fetchall():
                    counts[row[0]] = row[1]
        return counts

    async def queue_position(self, job_id: str) -> Optional[int]:
        """1-based position of a waiting job in lease order."""
        async with self._connect() as db:
            async with db.execute(
                """
                SELECT COUNT(*) FROM jobs AS ahead, jobs AS job
                WHERE job.queue = ? AND job.id = ? AND job.state = 'waiting'
                  AND ahead.queue = job.queue AND ahead.state = 'waiting'
                  AND (ahead.enqueued_at < job.enqueued_at
                       OR (ahead.enqueued_at = job.enqueued_at AND ahead.seq <= job.seq))
                """,
                (self.queue_name, job_id),
            ) as cursor:
                row = await cursor.fetchone()
        return row[0] or None
