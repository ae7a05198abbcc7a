import asyncio
import io
import tempfile
import structlog
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional, Protocol

from PIL import Image, ImageEnhance, ImageFilter, ImageOps

from silkparse.config import settings
from silkparse.errors import RenderFailure

logger = structlog.get_logger()

MM_PER_INCH = 25.4
FALLBACK_MASK_ALPHA = 204  # 0.8 opacity


class Renderer(Protocol):
    """Rasterizes a document page to PNG bytes.

    ``selector`` names an optional-content layer to isolate; None renders
    the full page.
    """

    async def render(
        self, source: Path, selector: Optional[str] = None, dpi: int = 600
    ) -> bytes:
        ...


class PdftocairoRenderer:
    """Renderer backed by poppler's ``pdftocairo``.

    pdftocairo cannot switch optional content groups, so a layer render is
    a transparent-background render of the crop box; callers judge whether
    the output is usable.
    """

    def __init__(self, binary: str = "pdftocairo", timeout: Optional[float] = None) -> None:
        self.binary = binary
        self.timeout = timeout or settings.render_timeout_seconds

    def _build_command(
        self, source: Path, output_base: Path, selector: Optional[str], dpi: int
    ) -> list[str]:
        cmd = [self.binary, "-png", "-singlefile", "-r", str(dpi), "-cropbox"]
        if selector is not None:
            cmd.append("-transp")
        cmd.extend([str(source), str(output_base)])
        return cmd

    async def render(
        self, source: Path, selector: Optional[str] = None, dpi: int = 600
    ) -> bytes:
        """Render the first page of ``source``.

        Raises:
            RenderFailure: If the tool is missing, fails, times out or
                produces no image
        """
        with tempfile.TemporaryDirectory(prefix="render_") as tmp_dir:
            output_base = Path(tmp_dir) / "page"
            cmd = self._build_command(source, output_base, selector, dpi)

            logger.debug(
                "render_started",
                document=Path(source).name,
                layer=selector,
                dpi=dpi,
                source="renderer",
            )

            try:
                process = await asyncio.create_subprocess_exec(
                    *cmd,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except FileNotFoundError as e:
                raise RenderFailure(f"{self.binary} is not installed") from e

            try:
                _, stderr = await asyncio.wait_for(
                    process.communicate(), timeout=self.timeout
                )
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
                raise RenderFailure(
                    f"{self.binary} timed out after {self.timeout}s"
                )
            except asyncio.CancelledError:
                process.kill()
                raise

            if process.returncode != 0:
                message = stderr.decode("utf-8", errors="replace").strip()
                raise RenderFailure(
                    f"{self.binary} exited with {process.returncode}: {message[:200]}"
                )

            output = output_base.with_suffix(".png")
            if not output.exists():
                raise RenderFailure(f"{self.binary} produced no output")
            return output.read_bytes()


@dataclass
class Bounds:
    """Axis-aligned box in millimeters, origin at the raster's top-left."""
    x: float
    y: float
    width: float
    height: float

    def to_dict(self) -> dict:
        return asdict(self)


def _encode_png(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def post_process_mask(data: bytes, effect_type: Optional[str]) -> bytes:
    """Approximate an effect mask from a full-page raster.

    foil: brighten, desaturate, sharpen. spotUV: hard threshold at 128 and
    a slight blur. emboss: greyscale height map with stretched contrast.
    Other effects are returned unchanged. Alpha is carried over as-is.
    """
    image = Image.open(io.BytesIO(data))
    image.load()
    alpha = image.getchannel("A") if "A" in image.getbands() else None
    rgb = image.convert("RGB")

    if effect_type == "foil":
        rgb = ImageEnhance.Brightness(rgb).enhance(1.1)
        rgb = ImageEnhance.Color(rgb).enhance(0.8)
        rgb = rgb.filter(ImageFilter.SHARPEN)
    elif effect_type == "spotUV":
        grey = ImageOps.grayscale(rgb).point(lambda value: 255 if value >= 128 else 0)
        rgb = grey.filter(ImageFilter.GaussianBlur(0.5)).convert("RGB")
    elif effect_type == "emboss":
        rgb = ImageOps.autocontrast(ImageOps.grayscale(rgb)).convert("RGB")
    else:
        return data

    if alpha is not None:
        rgb.putalpha(alpha)
    return _encode_png(rgb)


def analyze_alpha(
    data: bytes, dpi: int, threshold: Optional[int] = None
) -> Optional[Bounds]:
    """Bounding box of pixels whose alpha exceeds ``threshold``.

    Pixel coordinates are converted to millimeters at ``dpi`` and rounded to
    two decimals. A raster without an alpha channel counts as fully opaque.
    Returns None when no pixel is above threshold.
    """
    threshold = settings.alpha_threshold if threshold is None else threshold

    image = Image.open(io.BytesIO(data))
    alpha = image.convert("RGBA").getchannel("A")
    significant = alpha.point(lambda value: 255 if value > threshold else 0)
    box = significant.getbbox()

    if box is None:
        return None

    left, top, right, bottom = box
    px_to_mm = MM_PER_INCH / dpi
    return Bounds(
        x=round(left * px_to_mm, 2),
        y=round(top * px_to_mm, 2),
        width=round((right - left) * px_to_mm, 2),
        height=round((bottom - top) * px_to_mm, 2),
    )


def synthesize_mask(dpi: int, width_in: float = 2.0, height_in: float = 1.0) -> bytes:
    """Placeholder mask: a white 2x1 inch rectangle at 80% opacity."""
    size = (max(int(dpi * width_in), 1), max(int(dpi * height_in), 1))
    image = Image.new("RGBA", size, (255, 255, 255, FALLBACK_MASK_ALPHA))
    return _encode_png(image)
