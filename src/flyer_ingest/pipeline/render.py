"""Split flyer PDFs into per-page raster images with PyMuPDF."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Optional

import fitz  # PyMuPDF

from ..config import RenderConfig
from ..errors import RenderError
from ..logging import get_logger

LOG = get_logger("pipeline-render")


@dataclass
class RenderedPage:
    index: int
    image: Optional[bytes]
    width: int
    height: int
    mime_type: str
    error: Optional[RenderError] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.image is not None


def _open_document(pdf_bytes: bytes, max_bytes: int) -> fitz.Document:
    if not pdf_bytes:
        raise RenderError("empty PDF input", document_scope=True)
    if len(pdf_bytes) > max_bytes:
        raise RenderError(f"PDF is {len(pdf_bytes)} bytes, above limit {max_bytes}", document_scope=True)
    if b"%PDF-" not in pdf_bytes[:1024]:
        raise RenderError("missing %PDF header", document_scope=True)
    try:
        doc = fitz.open(stream=pdf_bytes, filetype="pdf")
    except (RuntimeError, ValueError) as exc:
        raise RenderError(f"PDF could not be opened: {exc}", document_scope=True) from exc
    if doc.needs_pass:
        doc.close()
        raise RenderError("PDF is password protected", document_scope=True)
    if doc.page_count == 0:
        doc.close()
        raise RenderError("PDF has no pages", document_scope=True)
    return doc


def page_count(pdf_bytes: bytes, *, max_bytes: int = RenderConfig.max_pdf_bytes) -> int:
    doc = _open_document(pdf_bytes, max_bytes)
    try:
        return doc.page_count
    finally:
        doc.close()


class PdfRenderer:
    def __init__(self, config: RenderConfig) -> None:
        self.config = config

    @property
    def mime_type(self) -> str:
        return "image/jpeg" if self.config.image_format == "jpeg" else "image/png"

    def render(self, pdf_bytes: bytes) -> Iterator[RenderedPage]:
        """Return a lazy, single-pass iterator over the document's pages.

        Document-scoped problems raise RenderError here, before any page is
        produced. Page-scoped problems come back as a RenderedPage whose
        `error` is set, so the caller can fail that page and keep going.
        """
        doc = _open_document(pdf_bytes, self.config.max_pdf_bytes)
        LOG.debug(f"Opened PDF with {doc.page_count} page(s) ({len(pdf_bytes)} bytes)")
        return self._pages(doc)

    def _pages(self, doc: fitz.Document) -> Iterator[RenderedPage]:
        zoom = self.config.dpi / 72.0
        matrix = fitz.Matrix(zoom, zoom)
        limit = self.config.max_page_dimension
        try:
            for index in range(doc.page_count):
                try:
                    page = doc.load_page(index)
                    rect = page.rect
                    width = int(round(rect.width * zoom))
                    height = int(round(rect.height * zoom))
                    if width > limit or height > limit:
                        raise RenderError(
                            f"page {index} would render at {width}x{height}px, above limit {limit}px",
                            page_index=index,
                        )
                    pix = page.get_pixmap(matrix=matrix, alpha=False)
                    if self.config.image_format == "jpeg":
                        image = pix.tobytes("jpeg", jpg_quality=self.config.jpeg_quality)
                    else:
                        image = pix.tobytes("png")
                    width, height = pix.width, pix.height
                    pix = None
                except RenderError as exc:
                    LOG.warning(str(exc))
                    yield RenderedPage(index, None, 0, 0, self.mime_type, error=exc)
                    continue
                except (RuntimeError, ValueError) as exc:
                    LOG.warning(f"Decode failure on page {index}: {exc}")
                    err = RenderError(f"page {index} could not be decoded: {exc}", page_index=index)
                    yield RenderedPage(index, None, 0, 0, self.mime_type, error=err)
                    continue
                yield RenderedPage(index, image, width, height, self.mime_type)
        finally:
            doc.close()
