"""Upload text extraction for PDF, DOCX, plain text and images."""
from __future__ import annotations

import io
import logging
import mimetypes
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from knowledgebase.errors import ExtractionError, UnsupportedFileTypeError
from knowledgebase.services import ocr_service
from knowledgebase.services.pdf_service import MIN_TEXT_LENGTH_FOR_OCR_PER_PAGE, extract_pdf_pages

try:
    from docx import Document as DocxDocument
except Exception:
    DocxDocument = None

logger = logging.getLogger(__name__)

IMAGE_EXTS = (".png", ".jpg", ".jpeg", ".webp", ".gif", ".bmp", ".tif", ".tiff")


@dataclass
class ExtractionResult:
    file_type: str
    ocr_status: str
    content: List[Dict[str, str]] = field(default_factory=list)

    @property
    def content_length(self) -> int:
        return sum(len(item.get("text") or "") for item in self.content)


def guess_mime_type(filename: str, mime_type: Optional[str] = None) -> str:
    if mime_type and mime_type != "application/octet-stream":
        return mime_type
    guessed, _ = mimetypes.guess_type(filename or "")
    return guessed or "application/octet-stream"


def detect_file_type(filename: str, mime_type: Optional[str] = None) -> str:
    name = (filename or "").lower()
    mime = guess_mime_type(filename, mime_type)
    if name.endswith(".pdf"):
        return "pdf"
    if name.endswith(".docx"):
        return "docx"
    if name.endswith(".txt"):
        return "text"
    if mime.startswith("image/") or name.endswith(IMAGE_EXTS):
        return "image"
    raise UnsupportedFileTypeError(f"Unsupported file type: {os.path.basename(filename or '')}")


def extract_docx_text(data: bytes) -> str:
    if DocxDocument is None:
        raise ExtractionError("python-docx not available")
    try:
        document = DocxDocument(io.BytesIO(data))
    except Exception as e:
        logger.error("Error extracting text from DOCX: %s", e)
        raise ExtractionError("Failed to parse the Word file.") from e

    parts = [p.text for p in document.paragraphs]
    for table in document.tables:
        for row in table.rows:
            cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
            if cells:
                parts.append("\t".join(cells))
    return "\n".join(parts).strip()


def extract_plain_text(data: bytes) -> str:
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError:
        return data.decode("latin-1", errors="replace")


def extract_image_text(data: bytes, mime_type: str) -> str:
    text, err = ocr_service.ocr_image(data, mime_type)
    if err:
        raise ExtractionError(f"OCR failed: {err}")
    return text


def extract_text_from_file(
    filename: str,
    data: bytes,
    mime_type: Optional[str] = None,
    threshold: int = MIN_TEXT_LENGTH_FOR_OCR_PER_PAGE,
) -> ExtractionResult:
    file_type = detect_file_type(filename, mime_type)

    if file_type == "pdf":
        pages, status = extract_pdf_pages(data, threshold)
        return ExtractionResult(file_type, status, pages)

    if file_type == "docx":
        text = extract_docx_text(data)
        return ExtractionResult(file_type, "text_only", [{"name": "Document Content", "text": text}])

    if file_type == "text":
        text = extract_plain_text(data)
        return ExtractionResult(file_type, "text_only", [{"name": "Text Content", "text": text}])

    text = extract_image_text(data, guess_mime_type(filename, mime_type))
    return ExtractionResult(file_type, "ocr_applied", [{"name": "Image Content", "text": text}])
