"""Barcode label rendering."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from reportlab.graphics import renderPDF, renderSVG
from reportlab.graphics.barcode import createBarcodeDrawing
from reportlab.graphics.shapes import Drawing
from reportlab.lib.units import inch
from reportlab.pdfgen import canvas

from .errors import RenderFailure
from .logging import get_logger

TEMPLATES_DIR = Path(__file__).parent / "templates"
LABEL_TEMPLATE = "label.html"
BARCODE_SYMBOLOGY = "Code128"

_CAPTION_FONT = "Helvetica"
_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


@dataclass(frozen=True)
class LabelLayout:
    """Physical label geometry, in inches."""

    width: float = 1.0
    height: float = 0.75
    margin: float = 0.04
    caption_ratio: float = 0.3

    @property
    def page_size(self) -> tuple[float, float]:
        return self.width * inch, self.height * inch


def barcode_drawing(text: str, width: float, height: float) -> Drawing:
    """Return a Code 128 drawing of ``text`` scaled to ``width`` x ``height`` points."""

    if not text:
        raise RenderFailure("Barcode text must not be empty")
    try:
        return createBarcodeDrawing(
            BARCODE_SYMBOLOGY,
            value=text,
            humanReadable=False,
            quiet=False,
            width=width,
            height=height,
        )
    except Exception as exc:
        raise RenderFailure(f"Cannot encode {text!r} as {BARCODE_SYMBOLOGY}: {exc}") from exc


def barcode_svg(text: str, width: float = 2 * inch, height: float = 0.5 * inch) -> str:
    """Render a barcode as an SVG document."""

    drawing = barcode_drawing(text, width, height)
    return renderSVG.drawToString(drawing)


def label_filename(label_type: str, address: str) -> str:
    return _UNSAFE_FILENAME_CHARS.sub("_", f"{label_type}_{address}") + ".pdf"


class LabelRenderer:
    """Render fixed-size PDF labels for a device."""

    def __init__(self, output_dir: Path, layout: LabelLayout = LabelLayout()) -> None:
        self.output_dir = output_dir
        self.layout = layout
        self.logger = get_logger("tibbo.labels")

    def render(self, label_type: str, address: str) -> Path:
        """Write a label PDF and return its path.

        The barcode encodes ``address``; the caption shows the label type and
        the address in text. Raises :class:`RenderFailure` on any error.
        """

        output = self.output_dir / label_filename(label_type, address)
        page_width, page_height = self.layout.page_size
        margin = self.layout.margin * inch
        caption_height = page_height * self.layout.caption_ratio
        barcode_width = page_width - 2 * margin
        barcode_height = page_height - caption_height - 2 * margin

        drawing = barcode_drawing(address, barcode_width, barcode_height)
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            pdf = canvas.Canvas(str(output), pagesize=(page_width, page_height))
            pdf.setTitle(f"{label_type} {address}")
            renderPDF.draw(drawing, pdf, margin, margin + caption_height)
            font_size = caption_height / 2.4
            pdf.setFont(_CAPTION_FONT, font_size)
            pdf.drawCentredString(page_width / 2, margin + font_size * 1.2, label_type)
            pdf.drawCentredString(page_width / 2, margin + font_size * 0.1, address)
            pdf.showPage()
            pdf.save()
        except Exception as exc:
            raise RenderFailure(f"Failed to write label {output}: {exc}") from exc

        self.logger.debug(
            "Rendered label",
            extra={"label_type": label_type, "address": address, "path": str(output)},
        )
        return output
