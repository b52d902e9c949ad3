"""
API Blueprint - folders, files, search, OCR rescans and the knowledge base chat

Every endpoint answers JSON of the form {"ok": true, ...} or
{"ok": false, "error": "..."}.
"""
import base64
import binascii
import io
import ipaddress
import os
import socket
from typing import Any, Dict, List
from urllib.parse import urlparse

import requests
from flask import Blueprint, Response, current_app, jsonify, request, send_file
from flask_login import current_user
from werkzeug.exceptions import HTTPException

from knowledgebase import db
from knowledgebase.auth import approved_required, log_audit_event
from knowledgebase.errors import ExtractionError, KnowledgeBaseError
from knowledgebase.jobs import fail_if_stale, get_job, start_job
from knowledgebase.models import ROOT_FOLDER_ID, ChatMessage, FileType, KnowledgeFile, generate_id
from knowledgebase.services import knowledge_service, ocr_service, openai_service, rescan_service

api_bp = Blueprint('api', __name__)

NO_CONTEXT_MESSAGE = "The knowledge base does not contain any extracted text yet. Upload documents first."


@api_bp.errorhandler(KnowledgeBaseError)
def handle_knowledge_base_error(e):
    return jsonify({"ok": False, "error": e.message}), e.status_code


@api_bp.errorhandler(Exception)
def handle_unexpected_error(e):
    if isinstance(e, HTTPException):
        return jsonify({"ok": False, "error": e.description}), e.code
    db.session.rollback()
    current_app.logger.exception(f"Unhandled error on {request.path}")
    return jsonify({"ok": False, "error": "Internal server error"}), 500


def _payload() -> Dict[str, Any]:
    return request.get_json(silent=True) or {}


# ============ Folders ============

@api_bp.route("/folders", methods=["GET"])
@approved_required
def list_folders():
    folders = knowledge_service.list_folders()
    return jsonify({"ok": True, "folders": [f.to_dict() for f in folders]})


@api_bp.route("/folders", methods=["POST"])
@approved_required
def create_folder():
    payload = _payload()
    folder = knowledge_service.create_folder(payload.get("name"), payload.get("parent_id"))
    return jsonify({"ok": True, "folder": folder.to_dict()}), 201


@api_bp.route("/folders/<folder_id>", methods=["PATCH"])
@approved_required
def rename_folder(folder_id):
    folder = knowledge_service.rename_folder(folder_id, _payload().get("name"))
    return jsonify({"ok": True, "folder": folder.to_dict()})


@api_bp.route("/folders/<folder_id>/move", methods=["POST"])
@approved_required
def move_folder(folder_id):
    target_id = (_payload().get("target_folder_id") or "").strip()
    if not target_id:
        return jsonify({"ok": False, "error": "Missing target_folder_id"}), 400
    folder = knowledge_service.move_folder(folder_id, target_id)
    return jsonify({"ok": True, "folder": folder.to_dict()})


@api_bp.route("/folders/<folder_id>/lock", methods=["POST"])
@approved_required
def toggle_folder_lock(folder_id):
    folder = knowledge_service.toggle_folder_lock(folder_id)
    return jsonify({"ok": True, "folder": folder.to_dict()})


@api_bp.route("/folders/<folder_id>", methods=["DELETE"])
@approved_required
def delete_folder(folder_id):
    removed = knowledge_service.delete_folder(folder_id)
    log_audit_event('folder_deleted', f'Folder {folder_id} deleted ({removed["files"]} files)')
    return jsonify({"ok": True, "deleted": removed})


# ============ Files ============

def _store_uploads(items: List[Dict[str, Any]]):
    stored: List[Dict[str, Any]] = []
    errors: List[Dict[str, str]] = []
    for item in items:
        upload = item["file"]
        name = item["name"]
        try:
            kf = knowledge_service.add_file(name, upload.read(), item["folder_id"], upload.mimetype)
            stored.append(kf.to_dict())
        except KnowledgeBaseError as e:
            db.session.rollback()
            current_app.logger.warning(f"Failed to process {name}: {e.message}")
            errors.append({"name": name, "error": e.message})
        except Exception as e:
            db.session.rollback()
            current_app.logger.exception(f"Failed to process or upload {name}")
            errors.append({"name": name, "error": f"{type(e).__name__}: {e}"})

    if stored:
        log_audit_event('files_uploaded', f'{len(stored)} file(s) uploaded')
    status = 201 if stored or not errors else 422
    return jsonify({"ok": bool(stored) or not errors, "files": stored, "errors": errors}), status


@api_bp.route("/files", methods=["POST"])
@approved_required
def upload_files():
    uploads = request.files.getlist("files") or request.files.getlist("file")
    if not uploads:
        return jsonify({"ok": False, "error": "No file uploaded"}), 400
    folder_id = (request.form.get("folder_id") or ROOT_FOLDER_ID).strip()
    knowledge_service.get_folder(folder_id)

    items = [{"file": u, "name": os.path.basename(u.filename or "upload"), "folder_id": folder_id} for u in uploads]
    return _store_uploads(items)


@api_bp.route("/folders/<folder_id>/upload", methods=["POST"])
@approved_required
def upload_folder(folder_id):
    """
    Upload a directory. ``paths`` carries each file's relative path
    (e.g. "manuals/printers/setup.pdf"); intermediate folders are created
    below the target folder.
    """
    uploads = request.files.getlist("files")
    if not uploads:
        return jsonify({"ok": False, "error": "No file uploaded"}), 400
    knowledge_service.get_folder(folder_id)
    paths = request.form.getlist("paths")

    items = []
    for i, upload in enumerate(uploads):
        relative = (paths[i] if i < len(paths) else "") or upload.filename or ""
        relative = relative.replace("\\", "/").strip("/")
        if not relative:
            continue
        directory, name = os.path.split(relative)
        target = knowledge_service.find_or_create_folder_path(directory, folder_id) if directory else folder_id
        items.append({"file": upload, "name": name, "folder_id": target})
    return _store_uploads(items)


@api_bp.route("/files", methods=["GET"])
@approved_required
def list_files():
    folder_id = (request.args.get("folder_id") or ROOT_FOLDER_ID).strip()
    results = knowledge_service.search_files(request.args.get("q"), folder_id)
    return jsonify({"ok": True, "results": results})


@api_bp.route("/files/<file_id>", methods=["GET"])
@approved_required
def get_file(file_id):
    kf = knowledge_service.get_file(file_id)
    data = kf.to_dict(include_content=True)
    data["current_page"] = knowledge_service.parse_page_number(request.args.get("location"))
    return jsonify({"ok": True, "file": data})


@api_bp.route("/files/<file_id>/raw", methods=["GET"])
@approved_required
def download_file(file_id):
    kf = knowledge_service.get_file(file_id)
    data = knowledge_service.load_file_bytes(kf)
    return send_file(io.BytesIO(data), mimetype=kf.mime_type or "application/octet-stream",
                     download_name=kf.name, as_attachment=False)


@api_bp.route("/files/<file_id>/move", methods=["POST"])
@approved_required
def move_file(file_id):
    target_id = (_payload().get("target_folder_id") or "").strip()
    if not target_id:
        return jsonify({"ok": False, "error": "Missing target_folder_id"}), 400
    kf = knowledge_service.move_file(file_id, target_id)
    return jsonify({"ok": True, "file": kf.to_dict()})


@api_bp.route("/files/<file_id>/lock", methods=["POST"])
@approved_required
def toggle_file_lock(file_id):
    kf = knowledge_service.toggle_file_lock(file_id)
    return jsonify({"ok": True, "file": kf.to_dict()})


@api_bp.route("/files/<file_id>", methods=["DELETE"])
@approved_required
def delete_file(file_id):
    knowledge_service.delete_file(file_id)
    log_audit_event('file_deleted', f'File {file_id} deleted')
    return jsonify({"ok": True})


@api_bp.route("/files/<file_id>/rescan", methods=["POST"])
@approved_required
def rescan_file(file_id):
    """Rescan a PDF; OCR runs only on pages with too little text"""
    kf = knowledge_service.get_file(file_id)
    if kf.type != FileType.PDF.value:
        raise ExtractionError("Only PDF files can be rescanned")
    job_id = start_job('rescan_file', rescan_service.rescan_file_by_id, kf.id,
                       user_id=current_user.id, target_id=kf.id)
    return jsonify({"ok": True, "job_id": job_id, "job": get_job(job_id)}), 202


# ============ Jobs ============

@api_bp.route("/jobs/<job_id>", methods=["GET"])
@approved_required
def job_status(job_id):
    job = fail_if_stale((job_id or "").strip())
    if not job:
        return jsonify({"ok": False, "error": "Unknown job_id"}), 404
    return jsonify({"ok": True, **job})


# ============ Chat ============

def _bot_message(text: str, sources=None) -> ChatMessage:
    msg = ChatMessage(id=generate_id(), user_id=current_user.id, sender="bot", text=text, sources=sources)
    db.session.add(msg)
    db.session.commit()
    return msg


@api_bp.route("/chat", methods=["POST"])
@approved_required
def chat():
    payload = _payload()
    question = (payload.get("message") or payload.get("question") or "").strip()
    if not question:
        return jsonify({"ok": False, "error": "Missing question"}), 400

    user_msg = ChatMessage(id=generate_id(), user_id=current_user.id, sender="user", text=question)
    db.session.add(user_msg)
    db.session.commit()

    files = KnowledgeFile.query.order_by(KnowledgeFile.created_at).all()
    context = knowledge_service.build_knowledge_context(files, current_app.config.get("CHAT_CONTEXT_LIMIT"))
    if not context.strip():
        bot = _bot_message(NO_CONTEXT_MESSAGE)
        return jsonify({"ok": False, "error": NO_CONTEXT_MESSAGE, "message": bot.to_dict()}), 400

    result, err = openai_service.answer_from_knowledge_base(question, context)
    if err or result is None:
        current_app.logger.error(f"Knowledge base answer failed: {err}")
        bot = _bot_message(f"Sorry, the AI assistant failed to answer: {err or 'unknown error'}")
        return jsonify({"ok": False, "error": err or "Answer failed", "message": bot.to_dict()}), 502

    sources = knowledge_service.match_sources(result.get("sources") or [], files)
    bot = _bot_message(result.get("answer") or "", sources)
    return jsonify({"ok": True, "question": user_msg.to_dict(), "message": bot.to_dict()})


@api_bp.route("/chat/history", methods=["GET"])
@approved_required
def chat_history():
    messages = current_user.chat_messages.order_by(ChatMessage.created_at).all()
    return jsonify({"ok": True, "messages": [m.to_dict() for m in messages]})


@api_bp.route("/chat/history", methods=["DELETE"])
@approved_required
def clear_chat_history():
    deleted = ChatMessage.query.filter_by(user_id=current_user.id).delete()
    db.session.commit()
    return jsonify({"ok": True, "deleted": deleted})


# ============ OCR and proxy ============

@api_bp.route("/ocr", methods=["POST"])
@approved_required
def ocr():
    payload = _payload()
    image_b64 = payload.get("image") or ""
    mime_type = payload.get("mimeType") or payload.get("mime_type") or ""
    if not image_b64 or not mime_type:
        return jsonify({"ok": False, "error": "Missing image or mimeType"}), 400
    try:
        image = base64.b64decode(image_b64, validate=True)
    except (binascii.Error, ValueError):
        return jsonify({"ok": False, "error": "Image is not valid base64"}), 400

    text, err = ocr_service.ocr_image(image, mime_type)
    if err:
        return jsonify({"ok": False, "error": "Failed to process OCR", "details": err}), 502
    return jsonify({"ok": True, "text": text or ""})


def _is_public_host(hostname) -> bool:
    """False for loopback, private, link-local and reserved addresses (cloud metadata included)."""
    if not hostname:
        return False
    try:
        addresses = {ipaddress.ip_address(hostname)}
    except ValueError:
        try:
            infos = socket.getaddrinfo(hostname, None)
        except socket.gaierror:
            # Unresolvable hosts fail in requests with a 502
            return True
        addresses = {ipaddress.ip_address(info[4][0].split("%", 1)[0]) for info in infos}
    return not any(
        a.is_private or a.is_loopback or a.is_link_local or a.is_reserved or a.is_multicast or a.is_unspecified
        for a in addresses
    )


@api_bp.route("/proxy", methods=["GET"])
@approved_required
def proxy():
    """Fetch a remote PDF on behalf of the viewer"""
    url = (request.args.get("url") or "").strip()
    if not url:
        return jsonify({"ok": False, "error": "URL is required"}), 400
    if urlparse(url).scheme not in ("http", "https"):
        return jsonify({"ok": False, "error": "Only http and https URLs are supported"}), 400
    if not _is_public_host(urlparse(url).hostname):
        return jsonify({"ok": False, "error": "URL host is not allowed"}), 400

    try:
        upstream = requests.get(url, timeout=current_app.config.get("PROXY_TIMEOUT", 30))
    except requests.RequestException as e:
        current_app.logger.error(f"Proxy error for {url}: {e}")
        return jsonify({"ok": False, "error": "Failed to proxy request"}), 502

    if not upstream.ok:
        return jsonify({"ok": False, "error": f"Failed to fetch resource: {upstream.reason}"}), upstream.status_code

    resp = Response(upstream.content, mimetype="application/pdf")
    resp.headers["Cache-Control"] = "public, max-age=3600"
    return resp
