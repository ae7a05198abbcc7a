import json
import os
import structlog
from pathlib import Path
from typing import Optional

from silkparse.config import settings
from silkparse.errors import PersistenceFailure

logger = structlog.get_logger()

MANIFEST_FILENAME = "result.json"
ERROR_FILENAME = "error.json"
ASSETS_DIRNAME = "assets"


class ResultStore:
    """Per-job working directories, manifests and error records on disk.

    Layout under the upload directory::

        <job_id>/<original file>
        <job_id>/assets/*.png
        <job_id>/result.json
        <job_id>/error.json
    """

    def __init__(self, upload_dir: Optional[str] = None) -> None:
        self.upload_dir = Path(upload_dir or settings.upload_dir)
        self.upload_dir.mkdir(parents=True, exist_ok=True)

        logger.info("result_store_initialized", upload_dir=str(self.upload_dir), source="results")

    def job_dir(self, job_id: str) -> Path:
        return self.upload_dir / job_id

    def assets_dir(self, job_id: str, create: bool = False) -> Path:
        path = self.job_dir(job_id) / ASSETS_DIRNAME
        if create:
            path.mkdir(parents=True, exist_ok=True)
        return path

    def manifest_path(self, job_id: str) -> Path:
        return self.job_dir(job_id) / MANIFEST_FILENAME

    def error_path(self, job_id: str) -> Path:
        return self.job_dir(job_id) / ERROR_FILENAME

    def _write_json(self, path: Path, data: dict) -> None:
        # Write to a sibling temp file first so readers never see a partial document
        tmp_path = path.with_name(f"{path.name}.tmp")
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(tmp_path, "w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2, default=str)
        os.replace(tmp_path, path)

    def save_manifest(self, job_id: str, manifest: dict) -> Path:
        """Persist the final manifest of a job.

        Args:
            job_id: Job the manifest belongs to
            manifest: Structured analysis result

        Returns:
            Path of the written manifest

        Raises:
            PersistenceFailure: If the manifest cannot be written
        """
        path = self.manifest_path(job_id)
        try:
            self._write_json(path, manifest)
        except OSError as e:
            raise PersistenceFailure(f"Failed to write manifest for {job_id}: {e}") from e

        logger.info("manifest_saved", job_id=job_id, path=str(path), source="results")
        return path

    def discard_manifest(self, job_id: str) -> bool:
        """Remove the manifest of an attempt that failed after saving it."""
        path = self.manifest_path(job_id)
        if not path.exists():
            return False
        path.unlink()
        logger.info("manifest_discarded", job_id=job_id, source="results")
        return True

    def load_manifest(self, job_id: str) -> Optional[dict]:
        path = self.manifest_path(job_id)
        if not path.exists():
            return None
        with open(path, encoding="utf-8") as handle:
            return json.load(handle)

    def save_error(self, job_id: str, record: dict) -> Optional[Path]:
        """Write the error record of a failed attempt.

        Returns:
            Path of the record, or None if it could not be written
        """
        path = self.error_path(job_id)
        try:
            self._write_json(path, record)
        except OSError as e:
            logger.error("error_record_save_failed", job_id=job_id, error=str(e), source="results")
            return None

        logger.info("error_record_saved", job_id=job_id, path=str(path), source="results")
        return path

    def clear_error(self, job_id: str) -> bool:
        """Drop the error record left by an earlier failed attempt."""
        path = self.error_path(job_id)
        if not path.exists():
            return False
        path.unlink()
        logger.info("error_record_cleared", job_id=job_id, source="results")
        return True

    def load_error(self, job_id: str) -> Optional[dict]:
        path = self.error_path(job_id)
        if not path.exists():
            return None
        with open(path, encoding="utf-8") as handle:
            return json.load(handle)

    def cleanup_temp_files(self, job_id: str) -> list[str]:
        """Remove ``temp_*`` and ``*.tmp`` files from a job directory.

        Returns:
            Names of removed files
        """
        removed = []
        job_dir = self.job_dir(job_id)
        if not job_dir.exists():
            return removed

        for entry in job_dir.iterdir():
            if entry.is_file() and (entry.name.startswith("temp_") or entry.name.endswith(".tmp")):
                entry.unlink()
                removed.append(entry.name)

        if removed:
            logger.info("temp_files_cleaned", job_id=job_id, count=len(removed), source="results")
        return removed
