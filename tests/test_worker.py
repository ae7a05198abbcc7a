"""
Tests for the worker pool and the parse job processor.
"""

import asyncio
import time

import pytest
import pytest_asyncio

from conftest import TEST_DPI, FakeRenderer, build_pdf
from silkparse.analyzer import DocumentAnalyzer
from silkparse.errors import JobTimeout, RenderFailure
from silkparse.jobs import (
    JobOptions,
    JobQueue,
    ParseJobProcessor,
    ProgressReporter,
    WorkerPool,
    score_quality,
)
from silkparse.service import ParseService


async def wait_for_state(queue, job_id, states, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        job = await queue.get_job(job_id)
        if job.state in states:
            return job
        await asyncio.sleep(0.02)
    raise AssertionError(f"job {job_id} never reached {states}, last state {job.state}")


@pytest_asyncio.fixture
async def live_queue(store):
    job_queue = JobQueue(store, stalled_interval_ms=30000)
    await job_queue.initialize()
    return job_queue


@pytest.fixture
def renderer():
    return FakeRenderer()


@pytest.fixture
def processor(renderer, results):
    analyzer = DocumentAnalyzer(renderer, dpi=TEST_DPI, min_mask_bytes=16)
    return ParseJobProcessor(analyzer, results)


@pytest.fixture
def service(live_queue, results):
    return ParseService(live_queue, results)


@pytest.fixture
def deadline_calls():
    return []


@pytest_asyncio.fixture
async def pool(live_queue, processor, deadline_calls):
    worker_pool = WorkerPool(
        live_queue,
        processor,
        concurrency=2,
        poll_interval=0.02,
        shutdown_deadline=5.0,
        shutdown_poll_interval=0.02,
        status_log_interval=60.0,
        on_deadline=lambda: deadline_calls.append(True),
    )
    yield worker_pool
    if worker_pool.running:
        await worker_pool.shutdown()


async def submit(service, write_upload, job_id, filename="card.pdf", data=None, **kwargs):
    path = write_upload(job_id, filename, data)
    return await service.submit(str(path), filename, path.stat().st_size, job_id=job_id, **kwargs)


class TestEndToEnd:
    """Jobs processed by a running pool."""

    @pytest.mark.asyncio
    async def test_job_completes_with_manifest(self, pool, service, live_queue, results, write_upload):
        await submit(service, write_upload, "job-1", data=build_pdf(layers=["Gold Foil"]))
        await pool.start()

        job = await wait_for_state(live_queue, "job-1", {"completed"})

        assert job.result["success"] is True
        manifest = await service.result("job-1")
        assert manifest["parsing"]["method"] == "ocg_extraction"
        assert manifest["quality"]["overall"] > 0
        processing = manifest["processing"]
        assert processing["attempt"] == 1
        assert [step["step"] for step in processing["steps"]][:3] == [
            "validation", "initialization", "parsing_start",
        ]
        assert processing["steps"][-1]["step"] == "post_processing"
        assert results.load_error("job-1") is None

    @pytest.mark.asyncio
    async def test_progress_is_monotonic_and_reaches_100(self, pool, service, live_queue, write_upload):
        seen = []
        pool.subscribe(lambda job_id, step, percent: seen.append((step, percent)))
        await submit(service, write_upload, "job-p")
        await pool.start()

        await wait_for_state(live_queue, "job-p", {"completed"})

        percents = [percent for _, percent in seen]
        assert percents == sorted(percents)
        assert seen[0] == ("validation", 5)
        assert seen[-1] == ("cleanup", 100)

    @pytest.mark.asyncio
    async def test_missing_file_fails_after_all_attempts(
        self, pool, service, live_queue, results, write_upload
    ):
        await submit(
            service,
            write_upload,
            "job-c",
            job_options=JobOptions(attempts=2, backoff_delay_ms=20),
        )
        (results.job_dir("job-c") / "card.pdf").unlink()
        await pool.start()

        job = await wait_for_state(live_queue, "job-c", {"failed"})

        assert job.attempts_made == 2
        assert job.failed_reason.startswith("InputMissing:")
        assert results.load_manifest("job-c") is None
        error = results.load_error("job-c")
        assert error["error_type"] == "InputMissing"
        assert "stack" not in error

    @pytest.mark.asyncio
    async def test_invalid_document_fails(self, pool, service, live_queue, write_upload):
        await submit(
            service,
            write_upload,
            "job-invalid",
            data=b"not a document",
            job_options=JobOptions(attempts=1),
        )
        await pool.start()

        job = await wait_for_state(live_queue, "job-invalid", {"failed"})

        assert job.failed_reason.startswith("InvalidInput:")

    @pytest.mark.asyncio
    async def test_slow_job_times_out(self, pool, renderer, service, live_queue, results, write_upload):
        renderer.delay = 1.0
        await submit(
            service,
            write_upload,
            "job-slow",
            job_options=JobOptions(attempts=1, ttl_ms=200),
        )
        await pool.start()

        job = await wait_for_state(live_queue, "job-slow", {"failed"})

        assert job.failed_reason.startswith("JobTimeout:")
        assert results.load_error("job-slow")["error_type"] == "JobTimeout"

    @pytest.mark.asyncio
    async def test_jobs_run_concurrently(self, pool, renderer, service, live_queue, write_upload):
        renderer.delay = 0.5
        for job_id in ("c-1", "c-2"):
            await submit(service, write_upload, job_id)
        await pool.start()

        await wait_for_state(live_queue, "c-1", {"active"})
        await wait_for_state(live_queue, "c-2", {"active"})
        assert len(pool.busy_slots) == 2

        await wait_for_state(live_queue, "c-1", {"completed"})
        await wait_for_state(live_queue, "c-2", {"completed"})


class TestAttemptArtifacts:
    """Files left in the job directory across attempts."""

    @pytest.mark.asyncio
    async def test_success_after_retry_drops_error_record(
        self, processor, renderer, service, live_queue, results, write_upload
    ):
        await submit(
            service,
            write_upload,
            "job-r",
            job_options=JobOptions(attempts=2, backoff_delay_ms=10),
        )

        renderer.page_fails = True
        job = await live_queue.lease("w1")
        with pytest.raises(RenderFailure):
            await processor.process(job, ProgressReporter(live_queue, job, "w1"))
        await live_queue.fail(job.id, "RenderFailure: page render failed", "w1")
        assert results.load_error("job-r")["error_type"] == "RenderFailure"

        await asyncio.sleep(0.05)
        renderer.page_fails = False
        job = await live_queue.lease("w2")
        result = await processor.process(job, ProgressReporter(live_queue, job, "w2"))
        await live_queue.ack(job.id, result, "w2")

        assert (await live_queue.get_job("job-r")).state == "completed"
        assert results.load_manifest("job-r") is not None
        assert results.load_error("job-r") is None

    @pytest.mark.asyncio
    async def test_timeout_after_save_leaves_no_manifest(
        self, processor, service, live_queue, results, write_upload
    ):
        await submit(service, write_upload, "job-t", job_options=JobOptions(attempts=1))
        job = await live_queue.lease("w")
        reporter = ProgressReporter(live_queue, job, "w")

        def expire_on_save(job_id, step, percent):
            if step == "saving":
                reporter.deadline = 0

        reporter.subscribe(expire_on_save)

        with pytest.raises(JobTimeout):
            await processor.process(job, reporter)

        assert results.load_manifest("job-t") is None
        assert results.load_error("job-t")["error_type"] == "JobTimeout"


class TestLeaseHeartbeat:
    @pytest.mark.asyncio
    async def test_long_job_is_not_reclaimed(self, store, processor, renderer, results, write_upload):
        job_queue = JobQueue(store, stalled_interval_ms=200)
        await job_queue.initialize()
        renderer.delay = 0.3
        pool = WorkerPool(
            job_queue,
            processor,
            concurrency=1,
            poll_interval=0.02,
            shutdown_poll_interval=0.02,
            stall_check_interval=0.05,
            on_deadline=lambda: None,
        )
        await submit(ParseService(job_queue, results), write_upload, "job-long")
        await pool.start()

        try:
            job = await wait_for_state(job_queue, "job-long", {"completed", "failed"})
        finally:
            await pool.shutdown()

        assert job.state == "completed"
        assert job.stalled_count == 0


class TestShutdown:
    """Graceful drain and the hard deadline."""

    @pytest.mark.asyncio
    async def test_drain_waits_for_in_flight_job(
        self, pool, renderer, service, live_queue, write_upload, deadline_calls
    ):
        renderer.delay = 0.3
        await submit(service, write_upload, "job-d")
        await pool.start()
        await wait_for_state(live_queue, "job-d", {"active"})

        drained = await pool.shutdown()

        assert drained is True
        assert deadline_calls == []
        assert (await live_queue.get_job("job-d")).state == "completed"
        assert not await live_queue.is_paused()

    @pytest.mark.asyncio
    async def test_no_leases_after_shutdown(self, pool, service, live_queue, write_upload):
        await pool.start()
        await pool.shutdown()

        await submit(service, write_upload, "job-late")
        await asyncio.sleep(0.1)

        assert (await live_queue.get_job("job-late")).state == "waiting"

    @pytest.mark.asyncio
    async def test_deadline_forces_exit(self, live_queue, processor, renderer, service, write_upload):
        renderer.delay = 5.0
        calls = []
        pool = WorkerPool(
            live_queue,
            processor,
            concurrency=1,
            poll_interval=0.02,
            shutdown_deadline=0.2,
            shutdown_poll_interval=0.02,
            on_deadline=lambda: calls.append(True),
        )
        await submit(service, write_upload, "job-hung")
        await pool.start()
        await wait_for_state(live_queue, "job-hung", {"active"})

        drained = await pool.shutdown()

        assert drained is False
        assert calls == [True]


class TestQualityScore:
    def test_weighted_score(self, tmp_path):
        (tmp_path / "albedo_front.png").write_bytes(b"png")
        manifest = {
            "dimensions": {"width": 88.9, "height": 50.8},
            "maps": {
                "albedo_front": "albedo_front.png",
                "foil": [{"mask": "missing.png"}],
            },
            "parsing": {"layers_found": 1, "effects_extracted": 1},
        }

        quality = score_quality(manifest, tmp_path)

        assert quality["dimensions"] == 1.0
        assert quality["layers"] == pytest.approx(0.2)
        assert quality["assets"] == 0.5
        assert quality["effects"] == pytest.approx(0.3)
        assert quality["files"] == 0.5
        assert quality["overall"] == pytest.approx(
            0.2 * 1.0 + 0.2 * 0.2 + 0.25 * 0.5 + 0.2 * 0.3 + 0.15 * 0.5
        )

    def test_invalid_dimensions_score_zero(self, tmp_path):
        quality = score_quality({"dimensions": {"width": 0, "height": 50}}, tmp_path)

        assert quality["dimensions"] == 0.0
        assert quality["overall"] == 0.0
