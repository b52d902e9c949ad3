"""
Folder tree and file operations, chat context assembly and search.
"""
from __future__ import annotations

import html
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from flask import current_app

from knowledgebase import db
from knowledgebase.errors import InvalidMoveError, LockedError, NotFoundError, StorageError
from knowledgebase.models import ROOT_FOLDER_ID, Folder, KnowledgeFile, OcrStatus, generate_id
from knowledgebase.services.extraction_service import extract_text_from_file, guess_mime_type
from knowledgebase.services.storage_service import get_storage

logger = logging.getLogger(__name__)

SNIPPET_RADIUS = 40
CONTEXT_SEPARATOR = "\n\n---\n\n"
HIGHLIGHT_OPEN = '<strong class="highlight">'
HIGHLIGHT_CLOSE = "</strong>"


# ============ Folders ============

def ensure_root_folder() -> Folder:
    root = db.session.get(Folder, ROOT_FOLDER_ID)
    if root is None:
        root = Folder(id=ROOT_FOLDER_ID, name=current_app.config.get("ROOT_FOLDER_NAME") or "My Knowledge", parent_id=None)
        db.session.add(root)
        db.session.commit()
    return root


def list_folders() -> List[Folder]:
    ensure_root_folder()
    return Folder.query.order_by(Folder.created_at).all()


def get_folder(folder_id: str) -> Folder:
    folder = db.session.get(Folder, folder_id) if folder_id else None
    if folder is None:
        if folder_id == ROOT_FOLDER_ID:
            return ensure_root_folder()
        raise NotFoundError("Folder not found")
    return folder


def create_folder(name: str, parent_id: Optional[str] = None) -> Folder:
    name = (name or "").strip()
    if not name:
        raise InvalidMoveError("Folder name is required")
    if not parent_id:
        logger.info("Folder %r created without a parent, using root", name)
        parent_id = ROOT_FOLDER_ID
    parent = get_folder(parent_id)
    folder = Folder(id=generate_id(), name=name, parent_id=parent.id, is_locked=False)
    db.session.add(folder)
    db.session.commit()
    return folder


def rename_folder(folder_id: str, name: str) -> Folder:
    folder = get_folder(folder_id)
    name = (name or "").strip()
    if not name:
        raise InvalidMoveError("Folder name is required")
    folder.name = name
    db.session.commit()
    return folder


def toggle_folder_lock(folder_id: str) -> Folder:
    folder = get_folder(folder_id)
    folder.is_locked = not folder.is_locked
    db.session.commit()
    return folder


def is_descendant(folder_id: str, ancestor_id: str, folders: Optional[Iterable[Folder]] = None) -> bool:
    """True when ``folder_id`` sits somewhere below ``ancestor_id``."""
    parents = {f.id: f.parent_id for f in (folders if folders is not None else Folder.query.all())}
    seen: Set[str] = set()
    parent = parents.get(folder_id)
    while parent and parent not in seen:
        if parent == ancestor_id:
            return True
        seen.add(parent)
        parent = parents.get(parent)
    return False


def move_folder(folder_id: str, target_id: str) -> Folder:
    if folder_id == ROOT_FOLDER_ID:
        raise InvalidMoveError("The root folder cannot be moved")
    if folder_id == target_id:
        raise InvalidMoveError("A folder cannot be moved into itself")
    folder = get_folder(folder_id)
    target = get_folder(target_id)
    if is_descendant(target.id, folder.id):
        raise InvalidMoveError("A folder cannot be moved into one of its own subfolders")
    if folder.parent_id != target.id:
        folder.parent_id = target.id
        db.session.commit()
    return folder


def collect_subtree(folder_id: str) -> Tuple[List[str], List[KnowledgeFile]]:
    """Folder ids in the subtree (breadth first, starting at ``folder_id``) and the files inside."""
    children: Dict[Optional[str], List[str]] = {}
    for f in Folder.query.all():
        children.setdefault(f.parent_id, []).append(f.id)

    ordered = [folder_id]
    i = 0
    while i < len(ordered):
        for child in children.get(ordered[i], []):
            if child not in ordered:
                ordered.append(child)
        i += 1

    files = KnowledgeFile.query.filter(KnowledgeFile.folder_id.in_(ordered)).all()
    return ordered, files


def delete_folder(folder_id: str) -> Dict[str, int]:
    if folder_id == ROOT_FOLDER_ID:
        raise InvalidMoveError("The root folder cannot be deleted")
    folder = get_folder(folder_id)
    if folder.is_locked:
        raise LockedError("Locked folders cannot be deleted")

    folder_ids, files = collect_subtree(folder.id)
    folders = Folder.query.filter(Folder.id.in_(folder_ids)).all()
    if any(f.is_locked for f in files) or any(f.is_locked for f in folders):
        raise LockedError("The folder contains locked items and cannot be deleted")

    storage = get_storage()
    for f in files:
        storage.delete(f.storage_path, f.storage_backend)
        db.session.delete(f)
    db.session.flush()

    # Deepest folders first so parents never outlive their children mid-flush
    by_id = {f.id: f for f in folders}
    for fid in reversed(folder_ids):
        if fid in by_id:
            db.session.delete(by_id[fid])
            db.session.flush()
    db.session.commit()
    return {"folders": len(folder_ids), "files": len(files)}


def find_or_create_folder_path(relative_dir: str, target_folder_id: str) -> str:
    """
    Resolve "a/b/c" below the target folder, creating missing folders.
    Existing siblings with the same name are reused.
    """
    current = get_folder(target_folder_id or ROOT_FOLDER_ID).id
    for part in [p for p in re.split(r"[\\/]+", relative_dir or "") if p.strip()]:
        existing = Folder.query.filter_by(name=part, parent_id=current).first()
        if existing is None:
            existing = Folder(id=generate_id(), name=part, parent_id=current, is_locked=False)
            db.session.add(existing)
            db.session.flush()
        current = existing.id
    db.session.commit()
    return current


# ============ Files ============

def get_file(file_id: str) -> KnowledgeFile:
    f = db.session.get(KnowledgeFile, file_id) if file_id else None
    if f is None:
        raise NotFoundError("File not found")
    return f


def add_file(filename: str, data: bytes, folder_id: str, mime_type: Optional[str] = None) -> KnowledgeFile:
    """Extract text, store the blob and persist the metadata."""
    folder = get_folder(folder_id or ROOT_FOLDER_ID)
    threshold = current_app.config.get("MIN_TEXT_LENGTH_FOR_OCR_PER_PAGE", 100)
    mime = guess_mime_type(filename, mime_type)
    result = extract_text_from_file(filename, data, mime, threshold=threshold)

    file_id = generate_id()
    storage_path, backend = get_storage().save(file_id, filename, data, mime)

    kf = KnowledgeFile(
        id=file_id,
        name=filename,
        type=result.file_type,
        mime_type=mime,
        folder_id=folder.id,
        content=result.content,
        content_length=result.content_length,
        is_locked=False,
        storage_path=storage_path,
        storage_backend=backend,
        ocr_status=result.ocr_status,
    )
    if result.ocr_status == OcrStatus.OCR_APPLIED.value:
        kf.last_ocr_scan = datetime.now(timezone.utc)
    db.session.add(kf)
    db.session.commit()
    logger.info("Stored %s (%s, %d chars, %s)", filename, kf.type, kf.content_length, kf.ocr_status)
    return kf


def load_file_bytes(kf: KnowledgeFile) -> bytes:
    if not kf.storage_path:
        raise NotFoundError("Stored file not found")
    try:
        return get_storage().load(kf.storage_path, kf.storage_backend)
    except FileNotFoundError:
        logger.warning("Blob missing for %s at %s", kf.id, kf.storage_path)
        raise NotFoundError("Stored file not found")
    except Exception as e:
        code = str(((getattr(e, "response", None) or {}).get("Error") or {}).get("Code") or "")
        if code in ("NoSuchKey", "404"):
            raise NotFoundError("Stored file not found") from e
        logger.error("Could not load blob %s (%s): %s", kf.storage_path, kf.storage_backend, e)
        raise StorageError("Could not load the stored file") from e


def move_file(file_id: str, target_folder_id: str) -> KnowledgeFile:
    kf = get_file(file_id)
    target = get_folder(target_folder_id)
    if kf.folder_id != target.id:
        kf.folder_id = target.id
        db.session.commit()
    return kf


def toggle_file_lock(file_id: str) -> KnowledgeFile:
    kf = get_file(file_id)
    kf.is_locked = not kf.is_locked
    db.session.commit()
    return kf


def delete_file(file_id: str) -> None:
    kf = get_file(file_id)
    if kf.is_locked:
        raise LockedError("Locked files cannot be deleted")
    get_storage().delete(kf.storage_path, kf.storage_backend)
    db.session.delete(kf)
    db.session.commit()


# ============ Chat context ============

def build_knowledge_context(files: Iterable[KnowledgeFile], limit: Optional[int] = None) -> str:
    blocks: List[str] = []
    for f in files:
        for item in f.content or []:
            blocks.append(f"[Document: {f.name}, Location: {item.get('name', '')}]\n{item.get('text') or ''}")
    context = CONTEXT_SEPARATOR.join(blocks)
    if limit and len(context) > limit:
        logger.warning("Knowledge context clipped from %d to %d characters", len(context), limit)
        context = context[:limit]
    return context


def match_sources(sources: List[Dict[str, str]], files: Iterable[KnowledgeFile]) -> List[Dict[str, str]]:
    """Map model-cited document names back to file ids."""
    by_name = {}
    for f in files:
        by_name.setdefault(f.name, f.id)
    out = []
    for src in sources or []:
        name = str(src.get("document") or "")
        out.append({
            "document_name": name,
            "file_id": by_name.get(name, "unknown"),
            "location": str(src.get("location") or ""),
        })
    return out


def parse_page_number(location: Optional[str]) -> int:
    m = re.search(r"Page (\d+)", location or "")
    return int(m.group(1)) if m else 1


# ============ Search ============

def _highlight(escaped_text: str, term: str) -> str:
    pattern = re.compile(re.escape(html.escape(term)), flags=re.IGNORECASE)
    return pattern.sub(lambda m: f"{HIGHLIGHT_OPEN}{m.group(0)}{HIGHLIGHT_CLOSE}", escaped_text)


def make_snippet(text: str, index: int, term_length: int, radius: int = SNIPPET_RADIUS) -> str:
    start = max(0, index - radius)
    end = min(len(text), index + term_length + radius)
    term = text[index:index + term_length]
    snippet = _highlight(html.escape(text[start:end]), term)
    if start > 0:
        snippet = "..." + snippet
    if end < len(text):
        snippet += "..."
    return snippet


def search_files(term: Optional[str], folder_id: Optional[str] = None) -> List[Dict[str, Any]]:
    """
    Empty term: the folder's files. Otherwise every content item containing the
    term (case-insensitive) yields a result with a highlighted snippet; files
    without content hits fall back to matching on the file name.
    """
    needle = (term or "").strip().lower()
    if not needle:
        query = KnowledgeFile.query.filter_by(folder_id=folder_id or ROOT_FOLDER_ID)
        return [{"id": f.id, "file": f.to_dict(), "snippet": ""} for f in query.order_by(KnowledgeFile.created_at).all()]

    folder_names = {f.id: f.name for f in Folder.query.all()}
    results: List[Dict[str, Any]] = []
    for f in KnowledgeFile.query.order_by(KnowledgeFile.created_at).all():
        hits = []
        for item in f.content or []:
            text = item.get("text") or ""
            index = text.lower().find(needle)
            if index == -1:
                continue
            location = item.get("name") or ""
            slug = re.sub(r"\s", "-", location)
            hits.append({
                "id": f"{f.id}-{slug}",
                "file": f.to_dict(),
                "snippet": make_snippet(text, index, len(needle)),
                "location": location,
                "folder_name": folder_names.get(f.folder_id),
            })

        if hits:
            results.extend(hits)
        elif needle in (f.name or "").lower():
            index = f.name.lower().find(needle)
            results.append({
                "id": f.id,
                "file": f.to_dict(),
                "snippet": _highlight(html.escape(f.name), f.name[index:index + len(needle)]),
                "folder_name": folder_names.get(f.folder_id),
            })
    return results
