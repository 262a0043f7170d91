"""Text extraction strategies keyed by bookmark content type."""

from __future__ import annotations

import io
import logging
from typing import Protocol

from bs4 import BeautifulSoup
from pypdf import PdfReader

from enricher.queue import ContentError
from enricher.schemas import ContentType

LOGGER = logging.getLogger(__name__)


class ContentExtractionError(ContentError):
    """Stored content could not be decoded into text."""


class TextExtractor(Protocol):
    def extract(self, data: bytes) -> str: ...


class HtmlTextExtractor:
    """Visible text of an HTML document with scripts and styles removed."""

    def extract(self, data: bytes) -> str:
        soup = BeautifulSoup(data, "html.parser")
        for node in soup(["script", "style"]):
            node.decompose()
        root = soup.body or soup
        return root.get_text(separator="\n")


class PdfTextExtractor:
    """Embedded text layer of a PDF; scanned pages yield nothing."""

    def extract(self, data: bytes) -> str:
        try:
            reader = PdfReader(io.BytesIO(data))
            pages = [page.extract_text() or "" for page in reader.pages]
        except Exception as exc:  # noqa: BLE001
            raise ContentExtractionError(f"Unreadable PDF: {exc}") from exc
        LOGGER.debug("Extracted text from %s PDF pages", len(pages))
        return "\n\n".join(pages)


_HTML = HtmlTextExtractor()
_PDF = PdfTextExtractor()

EXTRACTORS: dict[ContentType, TextExtractor] = {
    ContentType.ARTICLE: _HTML,
    ContentType.VIDEO: _HTML,
    ContentType.IMAGE: _HTML,
    ContentType.FILE: _PDF,
    ContentType.DOCUMENT: _PDF,
}


def extractor_for(content_type: ContentType) -> TextExtractor:
    return EXTRACTORS.get(content_type, _HTML)
