"""
OCR rescans of stored PDFs and import of blobs uploaded straight to S3.
"""
from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from flask import current_app

from knowledgebase import db
from knowledgebase.errors import ExtractionError, UnsupportedFileTypeError
from knowledgebase.models import ROOT_FOLDER_ID, FileType, KnowledgeFile, OcrStatus, generate_id
from knowledgebase.services import knowledge_service, ocr_service
from knowledgebase.services.extraction_service import (
    detect_file_type,
    extract_text_from_file,
    guess_mime_type,
)
from knowledgebase.services.pdf_service import rescan_pdf_pages
from knowledgebase.services.storage_service import BACKEND_S3, get_storage

logger = logging.getLogger(__name__)

ProgressFunc = Callable[[str], None]

SYNC_FILE_TYPES = ("pdf", "docx", "text")


def _noop(_msg: str) -> None:
    pass


def rescan_single_pdf(kf: KnowledgeFile, on_progress: Optional[ProgressFunc] = None) -> KnowledgeFile:
    """
    Re-extract a stored PDF, running OCR on pages with too little text.
    Pages that already have enough text are kept as they are.
    """
    if kf.type != FileType.PDF.value or not kf.storage_path:
        raise ExtractionError("Only stored PDF files can be rescanned")

    progress = on_progress or _noop
    data = knowledge_service.load_file_bytes(kf)

    pages: List[Dict[str, str]] = [dict(p) for p in (kf.content or [])]
    for index, page in rescan_pdf_pages(
        data,
        kf.content or [],
        ocr_service.ocr_image,
        on_progress=progress,
        threshold=current_app.config.get("MIN_TEXT_LENGTH_FOR_OCR_PER_PAGE", 100),
        dpi=current_app.config.get("OCR_RENDER_DPI", 192),
    ):
        while len(pages) <= index:
            pages.append({"name": f"Page {len(pages) + 1}", "text": ""})
        pages[index] = page

    # Assign a fresh list so the JSON column is marked dirty
    kf.content = pages
    kf.recompute_content_length()
    kf.ocr_status = OcrStatus.OCR_APPLIED.value
    kf.last_ocr_scan = datetime.now(timezone.utc)
    db.session.commit()
    return kf


def rescan_file_by_id(file_id: str, on_progress: Optional[ProgressFunc] = None) -> Dict[str, object]:
    kf = knowledge_service.get_file(file_id)
    return rescan_single_pdf(kf, on_progress).to_dict()


def rescan_all_pdfs(on_progress: Optional[ProgressFunc] = None) -> Dict[str, int]:
    progress = on_progress or _noop
    pdf_files = KnowledgeFile.query.filter_by(type=FileType.PDF.value).order_by(KnowledgeFile.created_at).all()
    stats = {"rescanned": 0, "errors": 0}

    if not pdf_files:
        progress("No PDF files to rescan.")
        return stats

    total = len(pdf_files)
    progress(f"Processing 0 / {total} PDFs...")
    for i, kf in enumerate(pdf_files):
        try:
            rescan_single_pdf(kf, lambda p, i=i, name=kf.name: progress(f"[{i + 1}/{total}] {name}: {p}"))
            stats["rescanned"] += 1
        except Exception:
            db.session.rollback()
            logger.exception("Rescan failed for %s", kf.name)
            stats["errors"] += 1
    return stats


def sync_storage(on_progress: Optional[ProgressFunc] = None) -> Dict[str, int]:
    """
    Import blobs that exist in the bucket but have no metadata row.
    New files land in the root folder; unsupported types are skipped.
    """
    progress = on_progress or _noop
    stats = {"synced": 0, "skipped": 0, "errors": 0}
    storage = get_storage()
    if storage.is_local_mode:
        progress("Storage sync is only available with S3.")
        return stats

    keys = storage.list_unmanaged_keys()
    known = {row[0] for row in db.session.query(KnowledgeFile.storage_path).all() if row[0]}
    knowledge_service.ensure_root_folder()
    threshold = current_app.config.get("MIN_TEXT_LENGTH_FOR_OCR_PER_PAGE", 100)

    for n, key in enumerate(keys, start=1):
        progress(f"Checking {n} / {len(keys)}: {key}")
        if key in known:
            stats["skipped"] += 1
            continue
        name = os.path.basename(key)
        try:
            file_type = detect_file_type(name)
        except UnsupportedFileTypeError:
            stats["skipped"] += 1
            continue
        if file_type not in SYNC_FILE_TYPES:
            stats["skipped"] += 1
            continue

        try:
            data = storage.load(key, BACKEND_S3)
            mime = guess_mime_type(name)
            result = extract_text_from_file(name, data, mime, threshold=threshold)
            db.session.add(KnowledgeFile(
                id=generate_id(),
                name=name,
                type=result.file_type,
                mime_type=mime,
                folder_id=ROOT_FOLDER_ID,
                content=result.content,
                content_length=result.content_length,
                is_locked=False,
                storage_path=key,
                storage_backend=BACKEND_S3,
                ocr_status=result.ocr_status,
            ))
            db.session.commit()
            known.add(key)
            stats["synced"] += 1
        except Exception:
            db.session.rollback()
            logger.exception("Sync failed for %s", key)
            stats["errors"] += 1
    return stats
