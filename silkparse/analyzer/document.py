import io
import re
import structlog
from dataclasses import asdict, dataclass
from pathlib import Path

from pypdf import PdfReader
from pypdf.errors import PyPdfError

from silkparse.errors import InputMissing, InvalidInput

logger = structlog.get_logger()

PDF_SIGNATURE = b"%PDF-"
POINT_TO_MM = 0.352778
CARD_THICKNESS_MM = 0.35

# Raw-byte patterns for layer names that are not reachable through the catalog
_LAYER_NAME_PATTERNS = (
    re.compile(r"Layer[\"\s]+([^\"'\n\r]+)", re.IGNORECASE),
    re.compile(r"OCG[\"\s]*\(([^)]+)\)", re.IGNORECASE),
    re.compile(r"layerName[\"\s]*[:=][\"\s]*([^\"'\n\r]+)", re.IGNORECASE),
)
_LAYER_SCAN_LINE_LIMIT = 20


@dataclass
class Dimensions:
    """Physical card size in millimeters."""
    width: float
    height: float
    thickness: float = CARD_THICKNESS_MM

    @property
    def is_valid(self) -> bool:
        return self.width > 0 and self.height > 0

    def to_dict(self) -> dict:
        return asdict(self)


def is_pdf_bytes(data: bytes) -> bool:
    """Check the container signature (AI files are PDF based)."""
    return data[:8].startswith(PDF_SIGNATURE)


def points_to_mm(value: float) -> float:
    return round(float(value) * POINT_TO_MM, 2)


class Document:
    """Read-only view of a PDF/AI document.

    Wraps ``pypdf.PdfReader`` and exposes only what the analyzer needs:
    page geometry and declared optional-content layer names.
    """

    def __init__(self, data: bytes, name: str = "document.pdf") -> None:
        """Load a document from bytes.

        Args:
            data: Raw file content
            name: Filename, used in log context only

        Raises:
            InvalidInput: If the bytes are not a readable PDF container
        """
        if not is_pdf_bytes(data):
            raise InvalidInput("File is not a valid PDF or AI file")

        self.data = data
        self.name = name
        try:
            self.reader = PdfReader(io.BytesIO(data))
            self.page_count = len(self.reader.pages)
        except (PyPdfError, ValueError, KeyError) as e:
            raise InvalidInput(f"Unreadable document: {e}") from e

        if self.page_count == 0:
            raise InvalidInput("Document has no pages")

        logger.info(
            "document_loaded",
            document=name,
            pages=self.page_count,
            size=len(data),
            source="analyzer",
        )

    @classmethod
    def open(cls, path: Path) -> "Document":
        try:
            data = Path(path).read_bytes()
        except FileNotFoundError as e:
            raise InputMissing(f"File not found: {path}") from e
        except OSError as e:
            raise InvalidInput(f"Cannot read {path}: {e}") from e
        return cls(data, Path(path).name)

    def dimensions(self) -> Dimensions:
        """Card dimensions of the first page.

        The tightest defined box wins (trim > crop > media); a degenerate
        box falls through to the next one.
        """
        page = self.reader.pages[0]
        boxes = (("trim", page.trimbox), ("crop", page.cropbox), ("media", page.mediabox))

        for box_name, box in boxes:
            width, height = float(box.width), float(box.height)
            if width > 0 and height > 0:
                logger.debug("page_box_selected", box=box_name, source="analyzer")
                return Dimensions(points_to_mm(width), points_to_mm(height))

        logger.warning("all_page_boxes_degenerate", document=self.name, source="analyzer")
        return Dimensions(0.0, 0.0)

    def _catalog(self):
        return self.reader.trailer["/Root"]

    @property
    def has_optional_content(self) -> bool:
        try:
            return "/OCProperties" in self._catalog()
        except (PyPdfError, KeyError):
            return False

    def layer_names(self) -> list[str]:
        """Declared optional-content group names, in declaration order.

        Names come from ``/OCProperties /OCGs``; when the catalog declares
        optional content but the groups carry no readable names, the raw
        bytes are scanned instead.
        """
        if not self.has_optional_content:
            return []

        names = self._catalog_layer_names()
        if not names:
            names = self._scan_layer_names()
        return names

    def _catalog_layer_names(self) -> list[str]:
        names: list[str] = []
        try:
            properties = self._catalog()["/OCProperties"]
            groups = properties["/OCGs"] if "/OCGs" in properties else []
            for ref in groups:
                group = ref.get_object()
                if "/Name" in group:
                    name = str(group["/Name"]).strip()
                    if name and name not in names:
                        names.append(name)
        except (PyPdfError, KeyError, TypeError, AttributeError) as e:
            logger.warning("ocg_catalog_read_failed", error=str(e), source="analyzer")
        return names

    def _scan_layer_names(self) -> list[str]:
        text = self.data.decode("latin-1")
        lines = [
            line for line in re.split(r"[\r\n]+", text)
            if "Layer" in line or "OCG" in line
        ][:_LAYER_SCAN_LINE_LIMIT]

        names: list[str] = []
        for line in lines:
            for pattern in _LAYER_NAME_PATTERNS:
                match = pattern.search(line)
                if not match:
                    continue
                name = match.group(1).strip()
                if 2 < len(name) < 100 and name not in names:
                    names.append(name)
        return names

