"""
Tests for the submission, status and result interfaces.
"""

import pytest
import pytest_asyncio

from silkparse.errors import DuplicateId, JobNotFound, ResultNotReady
from silkparse.jobs import JobOptions
from silkparse.service import ParseService


@pytest_asyncio.fixture
async def service(queue, results):
    return ParseService(queue, results)


async def submit(service, job_id="job-1", **kwargs):
    return await service.submit(
        f"/uploads/{job_id}/card.pdf", "card.pdf", 2048, job_id=job_id, **kwargs
    )


class TestSubmit:
    """Tests for job submission."""

    @pytest.mark.asyncio
    async def test_submit_returns_queued(self, service):
        response = await submit(service)

        assert response["id"] == "job-1"
        assert response["status"] == "queued"
        assert response["queue_position"] == 1
        assert response["submitted_at"]

    @pytest.mark.asyncio
    async def test_generated_id(self, service):
        response = await service.submit("/uploads/x/card.pdf", "card.pdf", 10)

        assert len(response["id"]) == 36

    @pytest.mark.asyncio
    async def test_options_merged_over_defaults(self, service, queue):
        await submit(service, options={"dpi": 300}, submitted_by="gateway", user_agent="curl/8")

        payload = (await queue.get_job("job-1")).payload
        assert payload["options"] == {"dpi": 300, "enable_ocg": True, "extract_vector": True}
        assert payload["submitted_by"] == "gateway"
        assert payload["user_agent"] == "curl/8"
        assert payload["version"]
        assert payload["file_size"] == 2048

    @pytest.mark.asyncio
    async def test_duplicate_submission(self, service):
        await submit(service)

        with pytest.raises(DuplicateId):
            await submit(service)

    @pytest.mark.asyncio
    async def test_queue_position_grows(self, service):
        await submit(service, "a")
        response = await submit(service, "b")

        assert response["queue_position"] == 2


class TestStatus:
    """Tests for state reporting."""

    @pytest.mark.asyncio
    async def test_queued(self, service):
        await submit(service)

        status = await service.status("job-1")

        assert status["state"] == "queued"
        assert status["progress"] == 0
        assert status["queue_position"] == 1
        assert status["original_name"] == "card.pdf"

    @pytest.mark.asyncio
    async def test_paused(self, service, queue):
        await submit(service)
        await queue.pause()

        assert (await service.status("job-1"))["state"] == "paused"

    @pytest.mark.asyncio
    async def test_processing(self, service, queue):
        await submit(service)
        await queue.lease("w")
        await queue.progress("job-1", 35, "w")

        status = await service.status("job-1")

        assert status["state"] == "processing"
        assert status["progress"] == 35
        assert status["processing_started_at"]

    @pytest.mark.asyncio
    async def test_delayed_and_failed(self, service, queue, clock):
        await submit(service, job_options=JobOptions(attempts=2, backoff_delay_ms=1000))
        await queue.lease("w")
        await queue.fail("job-1", "RenderFailure: timed out", "w")

        status = await service.status("job-1")
        assert status["state"] == "delayed"
        assert status["attempts"] == 1
        assert status["retry_at"]

        clock.advance(2)
        await queue.lease("w")
        await queue.fail("job-1", "RenderFailure: timed out", "w")

        status = await service.status("job-1")
        assert status["state"] == "failed"
        assert status["error"] == "RenderFailure: timed out"
        assert status["attempts"] == 2

    @pytest.mark.asyncio
    async def test_completed(self, service, queue, clock):
        await submit(service)
        await queue.lease("w")
        clock.advance(3)
        await queue.ack("job-1", {"processing_time_ms": 2950}, "w")

        status = await service.status("job-1")

        assert status["state"] == "completed"
        assert status["progress"] == 100
        assert status["completed_at"]
        assert status["processing_time_ms"] == 2950

    @pytest.mark.asyncio
    async def test_unknown_job(self, service):
        with pytest.raises(JobNotFound):
            await service.status("nope")


class TestResult:
    """Tests for manifest retrieval."""

    @pytest.mark.asyncio
    async def test_not_ready_before_completion(self, service):
        await submit(service)

        with pytest.raises(ResultNotReady):
            await service.result("job-1")

    @pytest.mark.asyncio
    async def test_returns_saved_manifest(self, service, queue, results):
        await submit(service)
        await queue.lease("w")
        results.save_manifest("job-1", {"version": "1.1", "maps": {}})
        await queue.ack("job-1", {"success": True}, "w")

        assert await service.result("job-1") == {"version": "1.1", "maps": {}}

    @pytest.mark.asyncio
    async def test_missing_manifest(self, service, queue):
        await submit(service)
        await queue.lease("w")
        await queue.ack("job-1", {"success": True}, "w")

        with pytest.raises(ResultNotReady):
            await service.result("job-1")
