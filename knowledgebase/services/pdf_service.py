"""PDF page extraction and the resumable OCR rescan.

Text comes from PyPDF2 page by page. Pages whose trimmed text is shorter than
MIN_TEXT_LENGTH_FOR_OCR_PER_PAGE are rendered with PyMuPDF and handed to an
OCR callable.
"""
from __future__ import annotations

import io
import logging
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import PyPDF2

from knowledgebase.errors import ExtractionError

try:
    import fitz  # PyMuPDF
except Exception:
    fitz = None

logger = logging.getLogger(__name__)

MIN_TEXT_LENGTH_FOR_OCR_PER_PAGE = 100

Page = Dict[str, str]
OcrFunc = Callable[[bytes, str], Tuple[str, str]]
ProgressFunc = Callable[[str], None]


def page_name(index: int) -> str:
    return f"Page {index + 1}"


def needs_ocr(text: Optional[str], threshold: int = MIN_TEXT_LENGTH_FOR_OCR_PER_PAGE) -> bool:
    return len((text or "").strip()) < threshold


def recommend_ocr(pages: List[Page], threshold: int = MIN_TEXT_LENGTH_FOR_OCR_PER_PAGE) -> bool:
    """Average trimmed characters per page below threshold."""
    if not pages:
        return False
    total = sum(len((p.get("text") or "").strip()) for p in pages)
    return (total / len(pages)) < threshold


def _page_text(page) -> str:
    # Collapse the line breaks PyPDF2 inserts between text runs
    raw = page.extract_text() or ""
    return " ".join(raw.split("\n"))


def extract_pdf_pages(data: bytes, threshold: int = MIN_TEXT_LENGTH_FOR_OCR_PER_PAGE) -> Tuple[List[Page], str]:
    """Return per-page text and ``ocr_recommended`` or ``text_only``."""
    try:
        reader = PyPDF2.PdfReader(io.BytesIO(data))
        pages: List[Page] = []
        for i, page in enumerate(reader.pages):
            pages.append({"name": page_name(i), "text": _page_text(page)})
    except Exception as e:
        logger.error("Error parsing PDF: %s", e)
        raise ExtractionError("Could not parse the PDF file.") from e

    status = "ocr_recommended" if recommend_ocr(pages, threshold) else "text_only"
    return pages, status


def render_ready() -> Tuple[bool, str]:
    if fitz is None:
        return False, "PyMuPDF not available"
    return True, ""


def render_page_image(doc: Any, index: int, dpi: int = 192) -> bytes:
    """Render one page to JPEG bytes for OCR."""
    page = doc.load_page(index)
    pix = page.get_pixmap(dpi=dpi, alpha=False)
    return pix.tobytes("jpeg")


def rescan_pdf_pages(
    data: bytes,
    existing: Optional[List[Page]],
    ocr_page: OcrFunc,
    on_progress: Optional[ProgressFunc] = None,
    threshold: int = MIN_TEXT_LENGTH_FOR_OCR_PER_PAGE,
    dpi: int = 192,
) -> Iterator[Tuple[int, Page]]:
    """
    Walk the PDF page by page, yielding ``(page_index, page)``.

    Pages that already have enough stored text are yielded unchanged, so a
    rescan interrupted halfway can simply be started again. Sparse pages are
    re-extracted and, if still sparse, rendered and sent to ``ocr_page``. When
    OCR fails the standard text is kept.
    """
    existing = existing or []
    progress = on_progress or (lambda msg: None)

    try:
        reader = PyPDF2.PdfReader(io.BytesIO(data))
        total = len(reader.pages)
    except Exception as e:
        logger.error("Error opening PDF for rescan: %s", e)
        raise ExtractionError("An error occurred while processing the PDF.") from e

    doc = None
    try:
        for index in range(total):
            number = index + 1
            progress(f"Analyzing page {number} / {total}...")

            stored = existing[index] if index < len(existing) else None
            if stored and not needs_ocr(stored.get("text"), threshold):
                progress(f"Page {number} / {total}: keeping existing text")
                yield index, stored
                continue

            try:
                text = _page_text(reader.pages[index])
            except Exception as e:
                logger.warning("Text extraction failed for page %d: %s", number, e)
                text = ""

            if needs_ocr(text, threshold):
                progress(f"Running OCR on page {number} / {total}...")
                try:
                    if doc is None:
                        ok, msg = render_ready()
                        if not ok:
                            raise RuntimeError(msg)
                        doc = fitz.open(stream=data, filetype="pdf")
                    image = render_page_image(doc, index, dpi=dpi)
                    ocr_text, err = ocr_page(image, "image/jpeg")
                    if err:
                        raise RuntimeError(err)
                    text = ocr_text
                except Exception as e:
                    logger.warning("OCR failed for page %d, keeping extracted text: %s", number, e)

            yield index, {"name": page_name(index), "text": text}
    finally:
        if doc is not None:
            doc.close()
