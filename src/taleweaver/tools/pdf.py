"""PDF generation tool using reportlab."""

import logging
import tempfile
from io import BytesIO
from pathlib import Path
from typing import BinaryIO, Iterator, Sequence
from xml.sax.saxutils import escape

import requests
from PIL import Image as PILImage
from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER, TA_JUSTIFY
from reportlab.lib.pagesizes import LETTER
from reportlab.lib.styles import ParagraphStyle
from reportlab.lib.units import inch, mm
from reportlab.platypus import Flowable, Image, PageBreak, Paragraph, SimpleDocTemplate, Spacer

from ..config import settings
from ..models import IllustratedChapter, split_paragraphs

logger = logging.getLogger(__name__)

PLACEHOLDER_TEXT = "[Illustration unavailable]"


def escape_text(text: str) -> str:
    """Escape reportlab paragraph markup, keeping single line breaks."""
    return escape(text.strip()).replace("\n", "<br/>")


def fit_within(width: float, height: float, max_width: float, max_height: float) -> tuple[float, float]:
    """Scale (width, height) to fit the bounding box, preserving aspect ratio."""
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid image size {width}x{height}")
    scale = min(max_width / width, max_height / height)
    return width * scale, height * scale


class StoryPDFBuilder:
    """
    Render illustrated stories into paginated PDFs.

    Layout:
      * A title page with the story name, large and centered.
      * One section per chapter: heading, illustration, justified body text.
      * A page break between chapters (none after the last one).
    """

    def __init__(
        self,
        page_size: tuple[float, float] = LETTER,
        margin_mm: float = 18.0,
        image_box: tuple[float, float] = (5.5 * inch, 4.5 * inch),
        request_timeout: float | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.page_size = page_size
        self.margin = margin_mm * mm
        self.image_box = image_box
        self.request_timeout = request_timeout or settings.image_download_timeout
        self.session = session or requests.Session()

        self.title_style = ParagraphStyle(
            name="StoryTitle",
            fontName="Helvetica-Bold",
            fontSize=32,
            leading=38,
            alignment=TA_CENTER,
            spaceBefore=2 * inch,
        )
        self.heading_style = ParagraphStyle(
            name="ChapterHeading",
            fontName="Helvetica-Bold",
            fontSize=20,
            leading=24,
            alignment=TA_CENTER,
            spaceAfter=14,
        )
        self.body_style = ParagraphStyle(
            name="Body",
            fontName="Times-Roman",
            fontSize=12,
            leading=18,
            alignment=TA_JUSTIFY,
            spaceAfter=10,
        )
        self.placeholder_style = ParagraphStyle(
            name="ImagePlaceholder",
            fontName="Helvetica-Oblique",
            fontSize=11,
            leading=14,
            alignment=TA_CENTER,
            textColor=colors.HexColor("#8A8A8A"),
            borderColor=colors.HexColor("#BBBBBB"),
            borderWidth=1,
            borderPadding=18,
            spaceBefore=18,
            spaceAfter=28,
        )

    # ------------------------------------------------------------------ images

    def fetch_image(self, url: str) -> Image:
        """Download and decode an illustration sized to the image box."""
        response = self.session.get(url, timeout=self.request_timeout)
        response.raise_for_status()

        with PILImage.open(BytesIO(response.content)) as picture:
            picture.load()
            if picture.mode not in ("RGB", "L"):
                picture = picture.convert("RGB")
            width, height = fit_within(picture.width, picture.height, *self.image_box)
            buffer = BytesIO()
            picture.save(buffer, format="PNG")
        buffer.seek(0)
        return Image(buffer, width=width, height=height)

    def image_or_placeholder(self, chapter: IllustratedChapter) -> Flowable:
        if not chapter.image_url:
            logger.warning(f"Chapter {chapter.chapter.index} has no illustration")
            return Paragraph(PLACEHOLDER_TEXT, self.placeholder_style)
        try:
            return self.fetch_image(chapter.image_url)
        except Exception as e:
            logger.warning(f"Illustration for chapter {chapter.chapter.index} failed: {e}")
            return Paragraph(PLACEHOLDER_TEXT, self.placeholder_style)

    # ------------------------------------------------------------------ layout

    def build_flowables(self, title: str, chapters: Sequence[IllustratedChapter]) -> list[Flowable]:
        flowables: list[Flowable] = [Paragraph(escape_text(title or "Untitled Story"), self.title_style)]
        if chapters:
            flowables.append(PageBreak())

        for position, illustrated in enumerate(chapters):
            chapter = illustrated.chapter
            flowables.append(Paragraph(escape_text(chapter.name), self.heading_style))
            flowables.append(self.image_or_placeholder(illustrated))
            flowables.append(Spacer(1, 12))
            for block in split_paragraphs(chapter.content):
                flowables.append(Paragraph(escape_text(block), self.body_style))
            if position < len(chapters) - 1:
                flowables.append(PageBreak())

        return flowables

    def render(self, title: str, chapters: Sequence[IllustratedChapter], output: BinaryIO | str) -> None:
        """Lay out the story and write the PDF to ``output``."""
        document = SimpleDocTemplate(
            output,
            pagesize=self.page_size,
            leftMargin=self.margin,
            rightMargin=self.margin,
            topMargin=self.margin,
            bottomMargin=self.margin,
            title=title,
        )
        document.build(self.build_flowables(title, chapters))
        logger.info(f"Rendered '{title}' with {len(chapters)} chapters")

    def render_bytes(self, title: str, chapters: Sequence[IllustratedChapter]) -> bytes:
        buffer = BytesIO()
        self.render(title, chapters, buffer)
        return buffer.getvalue()

    def write(self, path: Path | str, title: str, chapters: Sequence[IllustratedChapter]) -> Path:
        output_file = Path(path)
        output_file.parent.mkdir(parents=True, exist_ok=True)
        with open(output_file, "wb") as f:
            self.render(title, chapters, f)
        return output_file

    def iter_chunks(
        self,
        title: str,
        chapters: Sequence[IllustratedChapter],
        chunk_size: int | None = None,
    ) -> Iterator[bytes]:
        """
        Render into a spooled temporary file and yield it back in chunks.

        reportlab writes the finished document in one call at save time, so
        no bytes are available before layout completes. Documents larger
        than ``pdf_spool_max_size`` go to disk instead of staying in memory
        as a response buffer. Rendering starts on the first ``next()``.
        """
        chunk_size = chunk_size or settings.pdf_stream_chunk_size
        with tempfile.SpooledTemporaryFile(max_size=settings.pdf_spool_max_size) as spool:
            self.render(title, chapters, spool)
            spool.seek(0)
            while True:
                chunk = spool.read(chunk_size)
                if not chunk:
                    return
                yield chunk


def render_pdf_bytes(title: str, chapters: Sequence[IllustratedChapter]) -> bytes:
    """Render the whole document in memory."""
    return StoryPDFBuilder().render_bytes(title, chapters)


def iter_pdf_chunks(title: str, chapters: Sequence[IllustratedChapter]) -> Iterator[bytes]:
    """Render the document, yielding bytes incrementally."""
    return StoryPDFBuilder().iter_chunks(title, chapters)


def write_pdf(path: Path | str, title: str, chapters: Sequence[IllustratedChapter]) -> Path:
    """Render the document to a file."""
    return StoryPDFBuilder().write(path, title, chapters)
