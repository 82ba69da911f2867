import logging
import re
import time
import unicodedata

import pymupdf

from opsflow.core.errors import DocumentProcessingError

logger = logging.getLogger(__name__)

_TEXT_MIME_TYPES = {"text/plain", "text/csv"}


class DocumentProcessor:
    def __init__(self, max_size_bytes: int = 10 * 1024 * 1024):
        self._max_size_bytes = max_size_bytes

    def extract_text(self, content: bytes, mime_type: str, filename: str = "") -> str:
        """Return normalized text for an attachment; images yield an empty string."""
        if len(content) > self._max_size_bytes:
            raise DocumentProcessingError(
                f"Attachment {filename or '<unnamed>'} exceeds {self._max_size_bytes} bytes"
            )

        start = time.perf_counter()
        normalized_mime = (mime_type or "").split(";", 1)[0].strip().lower()
        if normalized_mime == "application/pdf" or filename.lower().endswith(".pdf"):
            raw_text = self._extract_pdf_text(content)
        elif normalized_mime in _TEXT_MIME_TYPES:
            raw_text = content.decode("utf-8", errors="replace")
        else:
            return ""

        text = self._normalize_text(raw_text)
        logger.info(
            "Attachment text extracted",
            extra={
                "event": "attachment_text_extracted",
                "attachment_filename": filename,
                "mime_type": normalized_mime,
                "chars": len(text),
                "extraction_ms": int((time.perf_counter() - start) * 1000),
            },
        )
        return text

    @staticmethod
    def _extract_pdf_text(content: bytes) -> str:
        try:
            pages: list[str] = []
            with pymupdf.open(stream=content, filetype="pdf") as doc:
                for page in doc:
                    pages.append(page.get_text("text"))
        except (pymupdf.FileDataError, RuntimeError, ValueError) as exc:
            raise DocumentProcessingError("Invalid or corrupted PDF file") from exc
        return "\n".join(pages)

    @staticmethod
    def _normalize_text(text: str) -> str:
        text = unicodedata.normalize("NFKC", text)
        text = re.sub(r"[\t\r\f\v]+", " ", text)
        text = re.sub(r"\n{3,}", "\n\n", text)
        text = re.sub(r"[ ]{2,}", " ", text)
        return text.strip()
