"""
Admin Blueprint - user approval, roles, storage sync and bulk OCR rescans
"""
from flask import Blueprint, jsonify, request
from flask_login import current_user

from knowledgebase import db
from knowledgebase.auth import admin_required, log_audit_event
from knowledgebase.jobs import start_job
from knowledgebase.models import User, UserStatus
from knowledgebase.services import rescan_service

admin_bp = Blueprint('admin', __name__)

VALID_STATUSES = {s.value for s in UserStatus}


def _get_user(user_id):
    return db.session.get(User, user_id)


@admin_bp.route('/users', methods=['GET'])
@admin_required
def list_users():
    users = User.query.order_by(User.created_at).all()
    return jsonify({"ok": True, "users": [u.to_dict() for u in users]})


@admin_bp.route('/users/<int:user_id>/status', methods=['POST'])
@admin_required
def update_user_status(user_id):
    payload = request.get_json(silent=True) or {}
    status = (payload.get('status') or '').strip().lower()
    if status not in VALID_STATUSES:
        return jsonify({"ok": False, "error": f"Invalid status: {status or 'missing'}"}), 400

    user = _get_user(user_id)
    if not user:
        return jsonify({"ok": False, "error": "User not found"}), 404
    if user.id == current_user.id and status != UserStatus.APPROVED.value:
        return jsonify({"ok": False, "error": "You cannot revoke your own access"}), 400

    user.status = status
    db.session.commit()
    log_audit_event('user_status_changed', f'User {user.email} set to {status}')
    return jsonify({"ok": True, "user": user.to_dict()})


@admin_bp.route('/users/<int:user_id>/admin', methods=['POST'])
@admin_required
def update_user_admin(user_id):
    payload = request.get_json(silent=True) or {}
    if 'is_admin' not in payload:
        return jsonify({"ok": False, "error": "Missing is_admin"}), 400
    is_admin = bool(payload.get('is_admin'))

    user = _get_user(user_id)
    if not user:
        return jsonify({"ok": False, "error": "User not found"}), 404
    if user.id == current_user.id and not is_admin:
        return jsonify({"ok": False, "error": "You cannot remove your own administrator role"}), 400

    user.is_admin = is_admin
    db.session.commit()
    log_audit_event('user_role_changed', f'User {user.email} admin={is_admin}')
    return jsonify({"ok": True, "user": user.to_dict()})


@admin_bp.route('/sync', methods=['POST'])
@admin_required
def sync_storage():
    """Import files that were uploaded directly to the bucket"""
    job_id = start_job('sync', rescan_service.sync_storage, user_id=current_user.id)
    log_audit_event('storage_sync', f'Storage sync started ({job_id})')
    return jsonify({"ok": True, "job_id": job_id}), 202


@admin_bp.route('/rescan', methods=['POST'])
@admin_required
def rescan_all():
    """OCR rescan of every stored PDF"""
    job_id = start_job('rescan_all', rescan_service.rescan_all_pdfs, user_id=current_user.id)
    log_audit_event('rescan_all', f'Rescan of all PDFs started ({job_id})')
    return jsonify({"ok": True, "job_id": job_id}), 202
