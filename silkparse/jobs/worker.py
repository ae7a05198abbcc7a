import asyncio
import os
import socket
import time
import uuid
import structlog
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Protocol

from silkparse.config import settings
from silkparse.errors import JobNotActive, JobTimeout
from silkparse.jobs.queue import Job, JobQueue, isoformat

logger = structlog.get_logger()

ProgressListener = Callable[[str, str, int], None]


class JobProcessor(Protocol):
    async def process(self, job: Job, reporter: "ProgressReporter") -> dict:
        ...

    def record_failure(self, job: Job, error: BaseException, reporter=None, start_time=None):
        ...


class SlotState(str, Enum):
    IDLE = "idle"
    LEASING = "leasing"
    PROCESSING = "processing"
    ACKING = "acking"
    FAILING = "failing"


@dataclass
class WorkerSlot:
    index: int
    state: SlotState = SlotState.IDLE
    job_id: Optional[str] = None
    processed: int = 0

    @property
    def busy(self) -> bool:
        return self.state != SlotState.IDLE


class ProgressReporter:
    """Progress channel for one leased attempt.

    Checkpoints are written through the queue (which keeps the stored value
    monotonic) and recorded as the attempt's step timeline. Listeners are
    called synchronously with ``(job_id, step, percent)``.
    """

    def __init__(
        self,
        queue: JobQueue,
        job: Job,
        token: str,
        deadline: Optional[float] = None,
        listeners: Optional[list[ProgressListener]] = None,
    ) -> None:
        self.queue = queue
        self.job = job
        self.token = token
        self.deadline = deadline
        self.listeners = list(listeners or [])
        self.current = 0
        self.steps: list[dict] = []

    def subscribe(self, listener: ProgressListener) -> None:
        self.listeners.append(listener)

    async def checkpoint(self, step: str, percent: int) -> int:
        """Report reaching ``step`` at ``percent`` complete.

        Raises:
            JobTimeout: If the attempt has run past its deadline
            JobNotActive: If the lease was lost
        """
        if self.deadline is not None and time.monotonic() > self.deadline:
            raise JobTimeout(f"Job {self.job.id} exceeded its processing time limit")

        self.current = await self.queue.progress(
            self.job.id, max(percent, self.current), self.token
        )
        self.steps.append(
            {"step": step, "progress": self.current, "timestamp": isoformat(time.time())}
        )
        for listener in self.listeners:
            listener(self.job.id, step, self.current)
        return self.current


def _default_force_exit() -> None:
    os._exit(1)


class WorkerPool:
    """Fixed set of slots draining the queue concurrently.

    Each slot loops lease -> process -> ack/fail until shutdown. The pool
    also renews the leases of running jobs, reclaims stalled jobs of dead
    workers and periodically logs queue depth.
    """

    def __init__(
        self,
        queue: JobQueue,
        processor: JobProcessor,
        concurrency: Optional[int] = None,
        poll_interval: Optional[float] = None,
        shutdown_deadline: Optional[float] = None,
        shutdown_poll_interval: Optional[float] = None,
        stall_check_interval: Optional[float] = None,
        status_log_interval: Optional[float] = None,
        on_deadline: Callable[[], None] = _default_force_exit,
    ) -> None:
        """Initialize the pool.

        Args:
            queue: JobQueue to lease jobs from
            processor: Runs a leased job and returns its result
            concurrency: Number of slots
            poll_interval: Idle wait between lease attempts (seconds)
            shutdown_deadline: Drain time before the process is killed
            shutdown_poll_interval: Drain polling interval (seconds)
            stall_check_interval: Stalled-job sweep interval (seconds)
            status_log_interval: Queue status log interval (seconds)
            on_deadline: Called when the drain deadline passes
        """
        self.queue = queue
        self.processor = processor
        self.concurrency = concurrency or settings.worker_concurrency
        self.poll_interval = (
            settings.job_poll_interval if poll_interval is None else poll_interval
        )
        self.shutdown_deadline = (
            settings.shutdown_deadline_seconds if shutdown_deadline is None else shutdown_deadline
        )
        self.shutdown_poll_interval = (
            settings.shutdown_poll_interval
            if shutdown_poll_interval is None
            else shutdown_poll_interval
        )
        self.stall_check_interval = (
            queue.stalled_interval_ms / 1000 if stall_check_interval is None else stall_check_interval
        )
        self.status_log_interval = (
            settings.status_log_interval if status_log_interval is None else status_log_interval
        )
        self.on_deadline = on_deadline
        self.worker_id = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
        self.listeners: list[ProgressListener] = []

        self.slots = [WorkerSlot(index=i) for i in range(self.concurrency)]
        self._stopping = asyncio.Event()
        self._slot_tasks: list[asyncio.Task] = []
        self._background_tasks: list[asyncio.Task] = []

    @property
    def busy_slots(self) -> list[WorkerSlot]:
        return [slot for slot in self.slots if slot.busy]

    @property
    def running(self) -> bool:
        return bool(self._slot_tasks) and not self._stopping.is_set()

    def subscribe(self, listener: ProgressListener) -> None:
        """Observe progress checkpoints of every job this pool runs."""
        self.listeners.append(listener)

    def snapshot(self) -> list[dict]:
        return [
            {
                "slot": slot.index,
                "state": slot.state.value,
                "job_id": slot.job_id,
                "processed": slot.processed,
            }
            for slot in self.slots
        ]

    async def start(self) -> None:
        """Start slot tasks and background sweeps.

        Example:
            pool = WorkerPool(queue, processor, concurrency=3)
            await pool.start()
            # ... process runs ...
            await pool.shutdown()
        """
        self._stopping.clear()
        self._slot_tasks = [
            asyncio.create_task(self._slot_loop(slot), name=f"slot-{slot.index}")
            for slot in self.slots
        ]
        self._background_tasks = [
            asyncio.create_task(self._stall_loop(), name="stall-sweeper"),
            asyncio.create_task(self._status_loop(), name="queue-status"),
        ]

        logger.info(
            "worker_started",
            worker_id=self.worker_id,
            concurrency=self.concurrency,
            poll_interval=self.poll_interval,
            source="worker",
        )

    async def _idle_wait(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _slot_loop(self, slot: WorkerSlot) -> None:
        """Lease and process jobs until the pool stops.

        Errors in the loop itself are logged and the slot keeps going.
        """
        logger.info("worker_loop_started", slot=slot.index, source="worker")

        while not self._stopping.is_set():
            try:
                slot.state = SlotState.LEASING
                token = f"{self.worker_id}:{slot.index}:{uuid.uuid4().hex[:8]}"
                job = await self.queue.lease(token)

                if job:
                    await self._run_job(slot, job, token)
                else:
                    # No jobs in queue, wait before polling again
                    slot.state = SlotState.IDLE
                    await self._idle_wait(self.poll_interval)

            except asyncio.CancelledError:
                logger.info("worker_shutting_down", slot=slot.index, source="worker")
                raise

            except Exception as loop_error:
                logger.error(
                    "worker_loop_error",
                    slot=slot.index,
                    error=str(loop_error),
                    error_type=type(loop_error).__name__,
                    source="worker",
                    exc_info=True,
                )
                slot.state = SlotState.IDLE
                slot.job_id = None
                await self._idle_wait(5)

        slot.state = SlotState.IDLE
        logger.info("worker_loop_stopped", slot=slot.index, source="worker")

    async def _run_job(self, slot: WorkerSlot, job: Job, token: str) -> None:
        slot.state = SlotState.PROCESSING
        slot.job_id = job.id

        timeout = job.options.ttl_ms / 1000 if job.options.ttl_ms else None
        reporter = ProgressReporter(
            self.queue,
            job,
            token,
            deadline=time.monotonic() + timeout if timeout else None,
            listeners=self.listeners,
        )

        logger.info(
            "worker_processing_job",
            job_id=job.id,
            slot=slot.index,
            attempt=job.attempts_made + 1,
            source="worker",
        )

        heartbeat = asyncio.create_task(self._heartbeat(job.id, token))
        result: Optional[dict] = None
        error: Optional[BaseException] = None
        try:
            result = await asyncio.wait_for(
                self.processor.process(job, reporter), timeout=timeout
            )
        except asyncio.TimeoutError:
            error = JobTimeout(f"Job exceeded its {timeout:g}s processing timeout")
            await asyncio.to_thread(self.processor.record_failure, job, error, reporter)
        except Exception as job_error:
            error = job_error
        finally:
            heartbeat.cancel()

        try:
            if error is None:
                slot.state = SlotState.ACKING
                await self.queue.ack(job.id, result, token)
                logger.info("worker_job_completed", job_id=job.id, slot=slot.index, source="worker")
            else:
                slot.state = SlotState.FAILING
                error_msg = f"{type(error).__name__}: {str(error)}"
                updated = await self.queue.fail(job.id, error_msg, token)
                logger.error(
                    "worker_job_failed",
                    job_id=job.id,
                    error=error_msg,
                    attempts_made=updated.attempts_made,
                    will_retry=updated.state != "failed",
                    source="worker",
                )
        except JobNotActive:
            # The lease was reclaimed while this slot was still working
            logger.warning("worker_lease_lost", job_id=job.id, slot=slot.index, source="worker")
        finally:
            slot.processed += 1
            slot.state = SlotState.IDLE
            slot.job_id = None

    async def _heartbeat(self, job_id: str, token: str) -> None:
        interval = max(self.queue.stalled_interval_ms / 2000, 0.05)
        while True:
            await asyncio.sleep(interval)
            try:
                if not await self.queue.extend_lease(job_id, token):
                    logger.warning("lease_extension_rejected", job_id=job_id, source="worker")
                    return
            except Exception as e:
                logger.warning("lease_extension_failed", job_id=job_id, error=str(e), source="worker")

    async def _stall_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.queue.reclaim_stalled()
            except Exception as e:
                logger.error("stall_check_failed", error=str(e), source="worker", exc_info=True)
            await self._idle_wait(self.stall_check_interval)

    async def _status_loop(self) -> None:
        while not self._stopping.is_set():
            await self._idle_wait(self.status_log_interval)
            try:
                counts = await self.queue.counts()
                if counts["waiting"] or counts["active"]:
                    logger.info(
                        "queue_status",
                        waiting=counts["waiting"],
                        active=counts["active"],
                        delayed=counts["delayed"],
                        source="worker",
                    )
            except Exception as e:
                logger.warning("queue_status_failed", error=str(e), source="worker")

    async def shutdown(self) -> bool:
        """Stop leasing and drain in-flight jobs.

        Polls until every slot is idle. If slots are still busy after the
        deadline, ``on_deadline`` is called (by default the process exits).

        Returns:
            True if the pool drained cleanly
        """
        self._stopping.set()
        logger.info(
            "worker_shutdown_started",
            busy=len(self.busy_slots),
            deadline_seconds=self.shutdown_deadline,
            source="worker",
        )

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.shutdown_deadline
        drained = True

        while self.busy_slots:
            if loop.time() >= deadline:
                logger.error(
                    "worker_force_shutdown",
                    busy_jobs=[slot.job_id for slot in self.busy_slots],
                    source="worker",
                )
                drained = False
                self.on_deadline()
                break
            logger.info(
                "worker_waiting_for_jobs",
                remaining=len(self.busy_slots),
                source="worker",
            )
            await asyncio.sleep(self.shutdown_poll_interval)

        tasks = self._background_tasks + self._slot_tasks
        if not drained:
            for task in self._slot_tasks:
                task.cancel()
        for task in self._background_tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._slot_tasks = []
        self._background_tasks = []

        logger.info("worker_shutdown_complete", drained=drained, source="worker")
        return drained
