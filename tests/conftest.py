"""
Pytest configuration and fixtures for silkparse tests.
"""

import asyncio
import io
import os
import shutil
import tempfile

# Set test environment variables before importing the package
os.environ["DATA_DIR"] = tempfile.mkdtemp(prefix="silkparse_test_data_")
os.environ["UPLOAD_DIR"] = tempfile.mkdtemp(prefix="silkparse_test_uploads_")
os.environ["ENVIRONMENT"] = "test"
os.environ["LOG_LEVEL"] = "WARNING"

from pathlib import Path
from typing import Optional

import pytest
import pytest_asyncio
from PIL import Image, ImageDraw
from pypdf import PdfWriter
from pypdf.generic import (
    ArrayObject,
    DictionaryObject,
    NameObject,
    RectangleObject,
    TextStringObject,
)

from silkparse.errors import RenderFailure
from silkparse.jobs.queue import JobQueue
from silkparse.storage import JobStore, ResultStore

# Business card at 72 pt/in: 3.5 x 2 in, 88.9 x 50.8 mm
CARD_WIDTH_PT = 252
CARD_HEIGHT_PT = 144
TEST_DPI = 72


def build_pdf(
    layers: Optional[list[str]] = None,
    unnamed_groups: int = 0,
    trimbox: Optional[tuple[float, float, float, float]] = None,
    metadata: Optional[dict] = None,
) -> bytes:
    """Single-page PDF, optionally declaring optional content groups."""
    writer = PdfWriter()
    page = writer.add_blank_page(width=CARD_WIDTH_PT, height=CARD_HEIGHT_PT)
    if trimbox is not None:
        page.trimbox = RectangleObject(trimbox)

    if layers is not None or unnamed_groups:
        groups = ArrayObject()
        for name in layers or []:
            groups.append(
                DictionaryObject(
                    {
                        NameObject("/Type"): NameObject("/OCG"),
                        NameObject("/Name"): TextStringObject(name),
                    }
                )
            )
        for _ in range(unnamed_groups):
            groups.append(DictionaryObject({NameObject("/Type"): NameObject("/OCG")}))
        writer.root_object[NameObject("/OCProperties")] = DictionaryObject(
            {NameObject("/OCGs"): groups}
        )

    if metadata:
        writer.add_metadata(metadata)

    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


def png_bytes(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def page_size(dpi: int) -> tuple[int, int]:
    return int(3.5 * dpi), int(2 * dpi)


def layer_mask(dpi: int, box: tuple[int, int, int, int] = (36, 72, 107, 107)) -> bytes:
    """Transparent raster with one opaque rectangle (inclusive pixel box)."""
    image = Image.new("RGBA", page_size(dpi), (0, 0, 0, 0))
    ImageDraw.Draw(image).rectangle(box, fill=(212, 175, 55, 255))
    return png_bytes(image)


def full_page(dpi: int) -> bytes:
    image = Image.new("RGBA", page_size(dpi), (250, 250, 245, 255))
    ImageDraw.Draw(image).rectangle((20, 20, 80, 60), fill=(30, 60, 120, 255))
    return png_bytes(image)


class FakeRenderer:
    """Renderer double producing Pillow rasters.

    Layer modes:
        content: a transparent mask with one opaque rectangle
        empty: a fully transparent mask
        tiny: output below any usable size
        corrupt: bytes that are not an image
        fail: raises RenderFailure
    """

    def __init__(self, layer_mode: str = "content", page_fails: bool = False, delay: float = 0.0):
        self.layer_mode = layer_mode
        self.page_fails = page_fails
        self.delay = delay
        self.calls: list[tuple[str, Optional[str], int]] = []

    async def render(self, source: Path, selector: Optional[str] = None, dpi: int = 600) -> bytes:
        self.calls.append((Path(source).name, selector, dpi))
        if self.delay:
            await asyncio.sleep(self.delay)

        if selector is None:
            if self.page_fails:
                raise RenderFailure("page render failed")
            return full_page(dpi)

        if self.layer_mode == "fail":
            raise RenderFailure(f"cannot render {selector}")
        if self.layer_mode == "tiny":
            return b"\x89PNG"
        if self.layer_mode == "corrupt":
            return b"not an image " * 20
        if self.layer_mode == "empty":
            return png_bytes(Image.new("RGBA", page_size(dpi), (0, 0, 0, 0)))
        return layer_mask(dpi)


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(scope="session", autouse=True)
def test_dirs():
    """Remove the session directories after all tests."""
    yield {"data": os.environ["DATA_DIR"], "upload": os.environ["UPLOAD_DIR"]}
    shutil.rmtree(os.environ["DATA_DIR"], ignore_errors=True)
    shutil.rmtree(os.environ["UPLOAD_DIR"], ignore_errors=True)


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def store(tmp_path):
    job_store = JobStore(db_path=str(tmp_path / "jobs.db"), queue_name="test_jobs")
    await job_store.initialize()
    return job_store


@pytest_asyncio.fixture
async def queue(store, clock):
    job_queue = JobQueue(
        store,
        remove_on_complete=10,
        remove_on_fail=5,
        stalled_interval_ms=30000,
        max_stalled_count=1,
        clock=clock,
    )
    await job_queue.initialize()
    return job_queue


@pytest.fixture
def results(tmp_path):
    return ResultStore(upload_dir=str(tmp_path / "uploads"))


@pytest.fixture
def sample_pdf_bytes():
    return build_pdf()


@pytest.fixture
def write_upload(results):
    """Write a document into a fresh job directory, as the gateway does."""

    def _write(job_id: str, filename: str, data: Optional[bytes] = None) -> Path:
        job_dir = results.job_dir(job_id)
        job_dir.mkdir(parents=True, exist_ok=True)
        path = job_dir / filename
        path.write_bytes(build_pdf() if data is None else data)
        return path

    return _write
