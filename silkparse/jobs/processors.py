import asyncio
import os
import resource
import time
import traceback
import structlog
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from silkparse.analyzer import DocumentAnalyzer
from silkparse.config import settings
from silkparse.errors import InputMissing
from silkparse.storage import ResultStore

if TYPE_CHECKING:
    from silkparse.jobs.queue import Job
    from silkparse.jobs.worker import ProgressReporter

logger = structlog.get_logger()

PROCESSOR_VERSION = "1.1.0"

# Checkpoints reported while the analyzer runs, keyed by its stage names
STAGE_PROGRESS = {
    "loading": 25,
    "ocg_extraction": 35,
    "layer_detection": 50,
    "texture_generation": 70,
    "material_mapping": 85,
    "finalizing": 88,
}

QUALITY_WEIGHTS = {
    "dimensions": 0.20,
    "layers": 0.20,
    "assets": 0.25,
    "effects": 0.20,
    "files": 0.15,
}


def resource_snapshot() -> dict:
    """Resource usage of the worker process."""
    usage = resource.getrusage(resource.RUSAGE_SELF)
    return {
        "max_rss_kb": usage.ru_maxrss,
        "user_time_s": round(usage.ru_utime, 3),
        "system_time_s": round(usage.ru_stime, 3),
    }


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def score_quality(manifest: dict, assets_dir: Path) -> dict:
    """Post-hoc quality of a manifest.

    Weighted average of five sub-scores: valid dimensions, layer count,
    map count, effect count, and the fraction of referenced asset files
    that exist in ``assets_dir``.

    Args:
        manifest: Analyzer output
        assets_dir: Directory the manifest's asset names resolve against

    Returns:
        Dict with each sub-score and the weighted ``overall`` score
    """
    quality = {key: 0.0 for key in QUALITY_WEIGHTS}
    parsing = manifest.get("parsing") or {}

    dimensions = manifest.get("dimensions") or {}
    if dimensions.get("width", 0) > 0 and dimensions.get("height", 0) > 0:
        quality["dimensions"] = 1.0

    quality["layers"] = min(1.0, parsing.get("layers_found", 0) * 0.2)
    quality["effects"] = min(1.0, parsing.get("effects_extracted", 0) * 0.3)

    maps = manifest.get("maps") or {}
    quality["assets"] = min(1.0, len(maps) * 0.25)

    expected = 0
    existing = 0
    for value in maps.values():
        if isinstance(value, str):
            names = [value]
        elif isinstance(value, list):
            names = [item.get("mask") for item in value if isinstance(item, dict)]
        else:
            continue
        for name in names:
            expected += 1
            if name and (assets_dir / name).exists():
                existing += 1
    quality["files"] = existing / expected if expected else 0.0

    quality["overall"] = round(
        sum(quality[key] * weight for key, weight in QUALITY_WEIGHTS.items()), 4
    )
    return quality


class ParseJobProcessor:
    """Runs one leased parse job from validation to persisted manifest."""

    def __init__(self, analyzer: DocumentAnalyzer, results: ResultStore) -> None:
        self.analyzer = analyzer
        self.results = results

    async def process(self, job: "Job", reporter: "ProgressReporter") -> dict:
        """Process a parse job.

        Validates the input, runs the analyzer with progress checkpoints,
        scores the result, attaches the processing record, persists the
        manifest and removes temporary files.

        Args:
            job: Leased job whose payload names the file to parse
            reporter: Progress channel of the current attempt

        Returns:
            Summary stored as the job's result

        Raises:
            Exception: Any pipeline error, after its error record is written
        """
        start_time = time.monotonic()
        payload = job.payload
        file_path = Path(payload.get("file_path", ""))

        logger.info(
            "processing_job",
            job_id=job.id,
            file=payload.get("original_name"),
            file_size_mb=round((payload.get("file_size") or 0) / 1024 / 1024, 2),
            attempt=job.attempts_made + 1,
            source="processor",
        )

        try:
            await reporter.checkpoint("validation", 5)
            if not await asyncio.to_thread(file_path.is_file):
                raise InputMissing(f"File not found: {file_path}")

            await reporter.checkpoint("initialization", 10)
            assets_dir = self.results.assets_dir(job.id, create=True)

            await reporter.checkpoint("parsing_start", 20)

            async def on_stage(stage: str) -> None:
                await reporter.checkpoint(stage, STAGE_PROGRESS.get(stage, reporter.current))

            manifest = await self.analyzer.analyze(
                job.id,
                file_path,
                assets_dir,
                options=payload.get("options"),
                progress=on_stage,
            )
            await reporter.checkpoint("parsing_complete", 90)

            await reporter.checkpoint("post_processing", 95)
            quality = await asyncio.to_thread(score_quality, manifest, assets_dir)
            manifest["quality"] = quality

            total_time_ms = int((time.monotonic() - start_time) * 1000)
            manifest["processing"] = {
                **manifest.get("parsing", {}),
                "steps": list(reporter.steps),
                "total_time_ms": total_time_ms,
                "attempt": job.attempts_made + 1,
                "worker_pid": os.getpid(),
                "resources": resource_snapshot(),
                "completed_at": _now_iso(),
                "version": PROCESSOR_VERSION,
            }

            await reporter.checkpoint("saving", 98)
            await asyncio.to_thread(self.results.save_manifest, job.id, manifest)

            await reporter.checkpoint("cleanup", 100)
            try:
                await asyncio.to_thread(self.results.clear_error, job.id)
                await asyncio.to_thread(self.results.cleanup_temp_files, job.id)
            except OSError as cleanup_error:
                logger.warning(
                    "temp_cleanup_failed",
                    job_id=job.id,
                    error=str(cleanup_error),
                    source="processor",
                )

            logger.info(
                "job_processed",
                job_id=job.id,
                total_time_seconds=round(total_time_ms / 1000, 2),
                quality=quality["overall"],
                assets_generated=len(manifest.get("maps", {})),
                source="processor",
            )

            return {
                "success": True,
                "job_id": job.id,
                "processing_time_ms": total_time_ms,
                "quality_score": quality,
                "assets_generated": len(manifest.get("maps", {})),
                "confidence": manifest.get("parsing", {}).get("confidence", 0.5),
            }

        except Exception as e:
            logger.error(
                "job_processing_failed",
                job_id=job.id,
                error=str(e),
                error_type=type(e).__name__,
                source="processor",
                exc_info=True,
            )
            await asyncio.to_thread(self.record_failure, job, e, reporter, start_time)
            raise

    def record_failure(
        self,
        job: "Job",
        error: BaseException,
        reporter: Optional["ProgressReporter"] = None,
        start_time: Optional[float] = None,
    ) -> Optional[Path]:
        """Write the error record of a failed attempt next to the job's files.

        A manifest saved before the attempt failed is removed, so a failed
        job never carries a result.
        """
        try:
            self.results.discard_manifest(job.id)
        except OSError as discard_error:
            logger.error(
                "manifest_discard_failed",
                job_id=job.id,
                error=str(discard_error),
                source="processor",
            )

        payload = job.payload
        record = {
            "message": str(error),
            "error_type": type(error).__name__,
            "processing_steps": list(reporter.steps) if reporter else [],
            "processing_time_ms": (
                int((time.monotonic() - start_time) * 1000) if start_time else None
            ),
            "job_id": job.id,
            "original_name": payload.get("original_name"),
            "file_size": payload.get("file_size"),
            "attempt": job.attempts_made + 1,
            "failed_at": _now_iso(),
            "worker_pid": os.getpid(),
            "resources": resource_snapshot(),
        }
        if settings.is_development:
            record["stack"] = "".join(
                traceback.format_exception(type(error), error, error.__traceback__)
            )
        return self.results.save_error(job.id, record)
