"""Document analysis pipeline.

Turns an uploaded PDF/AI file into a manifest describing the card's
dimensions, its base raster and its print-effect masks. Each stage may
degrade (a layer without a usable mask, a document without declared
layers) without aborting the whole analysis; only an invalid input or a
failed base render fails the job.
"""

import asyncio
import time
import structlog
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from silkparse.analyzer.document import Dimensions, Document
from silkparse.analyzer.effects import (
    EFFECT_TYPES,
    EffectClassifier,
    EffectMatch,
    sanitize_name,
)
from silkparse.analyzer.render import (
    Bounds,
    Renderer,
    analyze_alpha,
    post_process_mask,
    synthesize_mask,
)
from silkparse.config import settings
from silkparse.errors import RenderFailure

logger = structlog.get_logger()

ProgressCallback = Callable[[str], Awaitable[None]]

MANIFEST_VERSION = "1.1"
ISOLATED_MASK_CONFIDENCE = 0.95
FULL_PAGE_MASK_CONFIDENCE = 0.7
FALLBACK_CONFIDENCE = 0.5
BASE_MAP_NAME = "albedo_front"
PAPER_PRESET = "suede_350gsm_16pt"
PAPER_ROUGHNESS = 0.8


def calculate_confidence(layer_count: int, map_count: int) -> float:
    """Overall extraction confidence.

    Grows with the number of effect layers and generated maps, saturates,
    and never reaches full certainty.
    """
    confidence = 0.3
    if layer_count > 0:
        confidence += min(0.4, layer_count * 0.1)
    if map_count > 0:
        confidence += min(0.3, map_count * 0.05)
    return round(min(0.98, confidence), 4)


@dataclass
class Layer:
    """A declared or inferred layer and, for effects, its extracted mask."""
    id: str
    name: str
    classification: str = "none"
    effect_type: Optional[str] = None
    subtype: Optional[str] = None
    side: str = "front"
    mask_file: Optional[str] = None
    bounds: Optional[Bounds] = None
    confidence: float = 0.0
    method: Optional[str] = None
    low_confidence: bool = False

    @property
    def is_effect(self) -> bool:
        return self.classification == "effect"

    @classmethod
    def for_effect(cls, layer_id: str, name: str, match: EffectMatch, **kwargs) -> "Layer":
        return cls(
            id=layer_id,
            name=name,
            classification="effect",
            effect_type=match.effect_type,
            subtype=match.subtype,
            side=match.side,
            **kwargs,
        )

    def to_entry(self) -> dict:
        """Map entry grouped under the layer's effect type."""
        entry = {
            "side": self.side,
            "subtype": self.subtype,
            "mask": self.mask_file,
            "mode": "deboss" if self.subtype == "recessed" else "emboss",
            "bounds": self.bounds.to_dict() if self.bounds else None,
            "confidence": self.confidence,
            "layer": self.name,
        }
        if self.low_confidence:
            entry["low_confidence"] = True
        return entry

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "classification": self.classification,
            "effect_type": self.effect_type,
            "subtype": self.subtype,
            "side": self.side,
            "mask": self.mask_file,
            "bounds": self.bounds.to_dict() if self.bounds else None,
            "confidence": self.confidence,
            "method": self.method,
            "low_confidence": self.low_confidence,
        }


@dataclass
class AnalysisOptions:
    dpi: int
    enable_ocg: bool
    extract_vector: bool


@dataclass
class _RenderSession:
    """Per-document render cache; the full page is rasterized at most once."""
    renderer: Renderer
    source: Path
    dpi: int
    _full_page: Optional[bytes] = field(default=None, repr=False)

    async def full_page(self) -> bytes:
        if self._full_page is None:
            self._full_page = await self.renderer.render(self.source, None, self.dpi)
        return self._full_page

    async def layer(self, name: str) -> bytes:
        return await self.renderer.render(self.source, name, self.dpi)


def default_bounds(index: int) -> Bounds:
    """Nominal placement for an inferred effect without a real mask."""
    return Bounds(x=15 + index * 5, y=35, width=25, height=8)


def build_material_maps(layers: list[Layer], base_maps: dict) -> dict:
    """Merge base rasters with effect layers grouped by effect type."""
    maps: dict[str, Any] = dict(base_maps)
    groups: dict[str, list] = {effect_type: [] for effect_type in EFFECT_TYPES}

    for layer in layers:
        if layer.is_effect and layer.effect_type in groups:
            groups[layer.effect_type].append(layer.to_entry())

    for effect_type, entries in groups.items():
        if entries:
            maps[effect_type] = entries
    return maps


class DocumentAnalyzer:
    """Extracts dimensions, effect layers and rasters from a document.

    The renderer and the effect keyword tables are injected, so the
    pipeline runs unchanged against a fake renderer or a replacement table.
    """

    def __init__(
        self,
        renderer: Renderer,
        classifier: Optional[EffectClassifier] = None,
        dpi: Optional[int] = None,
        enable_ocg: Optional[bool] = None,
        extract_vector: Optional[bool] = None,
        min_mask_bytes: Optional[int] = None,
        alpha_threshold: Optional[int] = None,
    ) -> None:
        self.renderer = renderer
        self.classifier = classifier or EffectClassifier()
        self.dpi = dpi or settings.default_dpi
        self.enable_ocg = settings.enable_ocg if enable_ocg is None else enable_ocg
        self.extract_vector = settings.extract_vector if extract_vector is None else extract_vector
        self.min_mask_bytes = settings.min_mask_bytes if min_mask_bytes is None else min_mask_bytes
        self.alpha_threshold = (
            settings.alpha_threshold if alpha_threshold is None else alpha_threshold
        )

        logger.info(
            "analyzer_initialized",
            dpi=self.dpi,
            enable_ocg=self.enable_ocg,
            extract_vector=self.extract_vector,
            source="analyzer",
        )

    def resolve_options(self, options: Optional[dict]) -> AnalysisOptions:
        options = options or {}
        return AnalysisOptions(
            dpi=int(options.get("dpi") or self.dpi),
            enable_ocg=bool(options.get("enable_ocg", self.enable_ocg)),
            extract_vector=bool(options.get("extract_vector", self.extract_vector)),
        )

    async def analyze(
        self,
        job_id: str,
        file_path: Path,
        assets_dir: Path,
        options: Optional[dict] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> dict:
        """Run the full analysis of one document.

        Args:
            job_id: Job the analysis belongs to, recorded in the manifest
            file_path: Source PDF/AI file
            assets_dir: Directory receiving mask and raster assets
            options: Per-job overrides: ``dpi``, ``enable_ocg``, ``extract_vector``
            progress: Awaited with a stage name at each pipeline milestone

        Returns:
            Manifest dictionary

        Raises:
            InputMissing: If the file is gone
            InvalidInput: If the file is not a readable PDF container
            RenderFailure: If the base raster cannot be rendered
        """
        start_time = time.monotonic()
        file_path = Path(file_path)
        assets_dir = Path(assets_dir)
        opts = self.resolve_options(options)

        async def report(stage: str) -> None:
            if progress is not None:
                await progress(stage)

        logger.info(
            "analysis_started",
            job_id=job_id,
            file=file_path.name,
            dpi=opts.dpi,
            source="analyzer",
        )

        await report("loading")
        assets_dir.mkdir(parents=True, exist_ok=True)
        document = await asyncio.to_thread(Document.open, file_path)
        dimensions = document.dimensions()
        session = _RenderSession(self.renderer, file_path, opts.dpi)

        logger.info(
            "dimensions_extracted",
            job_id=job_id,
            width_mm=dimensions.width,
            height_mm=dimensions.height,
            source="analyzer",
        )

        await report("ocg_extraction")
        layer_names = document.layer_names() if opts.enable_ocg else []

        await report("layer_detection")
        if layer_names:
            method = "ocg_extraction"
            layers = await self._extract_layers(job_id, layer_names, session, assets_dir)
        else:
            logger.info(
                "no_declared_layers",
                job_id=job_id,
                ocg_enabled=opts.enable_ocg,
                source="analyzer",
            )
            method = "filename_fallback"
            layers = await self._fallback_layers(job_id, file_path.name, assets_dir, opts.dpi)

        effect_layers = [layer for layer in layers if layer.is_effect]

        await report("texture_generation")
        base_maps = await self._generate_base_maps(job_id, session, assets_dir)
        diecut = self._process_diecut(job_id, effect_layers, opts)

        await report("material_mapping")
        maps = build_material_maps(effect_layers, base_maps)
        manifest = self._assemble_manifest(
            job_id=job_id,
            document=document,
            dimensions=dimensions,
            layers=layers,
            maps=maps,
            diecut=diecut,
            method=method,
            dpi=opts.dpi,
            declared=len(layer_names),
            elapsed_ms=int((time.monotonic() - start_time) * 1000),
        )

        await report("finalizing")
        logger.info(
            "analysis_completed",
            job_id=job_id,
            effects=len(effect_layers),
            maps=len(maps),
            confidence=manifest["parsing"]["confidence"],
            parse_time_ms=manifest["parsing"]["parse_time_ms"],
            source="analyzer",
        )
        return manifest

    async def _extract_layers(
        self,
        job_id: str,
        names: list[str],
        session: _RenderSession,
        assets_dir: Path,
    ) -> list[Layer]:
        layers: list[Layer] = []

        for index, name in enumerate(names):
            match = self.classifier.classify(name)
            if match is None:
                logger.debug("non_effect_layer_skipped", job_id=job_id, layer=name, source="analyzer")
                layers.append(Layer(id=f"layer_{index}", name=name))
                continue

            try:
                layer = await self._render_effect_layer(index, name, match, session, assets_dir)
            except Exception as e:
                logger.warning(
                    "layer_processing_failed",
                    job_id=job_id,
                    layer=name,
                    effect_type=match.effect_type,
                    error=str(e),
                    error_type=type(e).__name__,
                    source="analyzer",
                )
                continue

            logger.info(
                "effect_layer_extracted",
                job_id=job_id,
                layer=name,
                effect_type=layer.effect_type,
                subtype=layer.subtype,
                method=layer.method,
                confidence=layer.confidence,
                source="analyzer",
            )
            layers.append(layer)

        return layers

    async def _render_effect_layer(
        self,
        index: int,
        name: str,
        match: EffectMatch,
        session: _RenderSession,
        assets_dir: Path,
    ) -> Layer:
        mask_path = assets_dir / f"{sanitize_name(name)}_{index}.png"

        data: Optional[bytes] = None
        try:
            data = await session.layer(name)
        except RenderFailure as e:
            logger.warning("isolated_render_failed", layer=name, error=str(e), source="analyzer")

        if data is not None and len(data) > self.min_mask_bytes:
            method, confidence = "isolated", ISOLATED_MASK_CONFIDENCE
        else:
            page = await session.full_page()
            data = await asyncio.to_thread(post_process_mask, page, match.effect_type)
            method, confidence = "full_page", FULL_PAGE_MASK_CONFIDENCE

        await asyncio.to_thread(mask_path.write_bytes, data)
        bounds = await asyncio.to_thread(analyze_alpha, data, session.dpi, self.alpha_threshold)

        low_confidence = bounds is None
        if low_confidence:
            logger.warning("mask_has_no_content", layer=name, source="analyzer")
            bounds = Bounds(0.0, 0.0, 0.0, 0.0)

        return Layer.for_effect(
            f"layer_{index}",
            name,
            match,
            mask_file=mask_path.name,
            bounds=bounds,
            confidence=confidence,
            method=method,
            low_confidence=low_confidence,
        )

    async def _fallback_layers(
        self, job_id: str, filename: str, assets_dir: Path, dpi: int
    ) -> list[Layer]:
        layers: list[Layer] = []

        for index, match in enumerate(self.classifier.classify_filename(filename)):
            mask_path = assets_dir / f"fallback_{match.effect_type}_{index}.png"
            try:
                data = await asyncio.to_thread(synthesize_mask, dpi)
                await asyncio.to_thread(mask_path.write_bytes, data)
            except (OSError, ValueError) as e:
                logger.warning(
                    "fallback_layer_failed",
                    job_id=job_id,
                    keyword=match.keyword,
                    error=str(e),
                    source="analyzer",
                )
                continue

            layers.append(
                Layer.for_effect(
                    f"fallback_{index}",
                    match.keyword,
                    match,
                    mask_file=mask_path.name,
                    bounds=default_bounds(index),
                    confidence=FALLBACK_CONFIDENCE,
                    method="fallback",
                )
            )

        logger.info(
            "fallback_layers_inferred",
            job_id=job_id,
            filename=filename,
            count=len(layers),
            source="analyzer",
        )
        return layers

    async def _generate_base_maps(
        self, job_id: str, session: _RenderSession, assets_dir: Path
    ) -> dict:
        # A back side would need per-page rendering; only the front is produced.
        filename = f"{BASE_MAP_NAME}.png"
        data = await session.full_page()
        await asyncio.to_thread((assets_dir / filename).write_bytes, data)

        logger.info("base_map_generated", job_id=job_id, map=BASE_MAP_NAME, source="analyzer")
        return {BASE_MAP_NAME: filename}

    def _process_diecut(
        self, job_id: str, layers: list[Layer], opts: AnalysisOptions
    ) -> Optional[dict]:
        diecut_layers = [layer for layer in layers if layer.effect_type == "diecut"]
        if not diecut_layers:
            return None

        if opts.extract_vector:
            logger.info("diecut_vector_extraction_unavailable", job_id=job_id, source="analyzer")

        return {"mask": diecut_layers[0].mask_file, "vector": None}

    def _assemble_manifest(
        self,
        job_id: str,
        document: Document,
        dimensions: Dimensions,
        layers: list[Layer],
        maps: dict,
        diecut: Optional[dict],
        method: str,
        dpi: int,
        declared: int,
        elapsed_ms: int,
    ) -> dict:
        effect_count = sum(1 for layer in layers if layer.is_effect)

        return {
            "version": MANIFEST_VERSION,
            "units": "mm",
            "coords": {"origin": "bottom-left", "dpi": dpi},
            "dimensions": dimensions.to_dict(),
            "pages": document.page_count,
            "maps": maps,
            "diecut": diecut,
            "materials": {
                "paper": {
                    "preset": PAPER_PRESET,
                    "roughness": PAPER_ROUGHNESS,
                    "thickness": dimensions.thickness,
                }
            },
            "layers": [layer.to_dict() for layer in layers],
            "parsing": {
                "method": method,
                "parse_time_ms": elapsed_ms,
                "confidence": calculate_confidence(effect_count, len(maps)),
                "layers_declared": declared,
                "layers_found": effect_count,
                "effects_extracted": effect_count,
                "maps_generated": len(maps),
                "dpi": dpi,
            },
            "metadata": {
                "original_file": document.name,
                "file_size": len(document.data),
                "job_id": job_id,
            },
        }
