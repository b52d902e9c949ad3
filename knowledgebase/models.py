"""
Database Models

Key Models:
- User: Account with an approval status (pending/approved/rejected)
- Folder: Node in the knowledge folder tree
- KnowledgeFile: Uploaded document with its extracted per-page text
- Job: Background rescan/sync task - persisted so status polls work across workers
- ChatMessage: Question and answer history with cited sources
- AuditLog: Who did what
"""
import enum
import random
import string
import time
from datetime import datetime, timezone

from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash

from knowledgebase import db

ROOT_FOLDER_ID = "root"

_BASE36 = string.digits + string.ascii_lowercase


def _to_base36(n: int) -> str:
    if n == 0:
        return "0"
    out = []
    while n:
        n, r = divmod(n, 36)
        out.append(_BASE36[r])
    return "".join(reversed(out))


def generate_id() -> str:
    """Short unique id: base36 millisecond timestamp plus a random base36 tail."""
    tail = "".join(random.choice(_BASE36) for _ in range(11))
    return _to_base36(int(time.time() * 1000)) + tail


def _now():
    return datetime.now(timezone.utc)


def _iso(dt):
    return dt.isoformat() if dt else None


class UserStatus(enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class FileType(enum.Enum):
    PDF = "pdf"
    IMAGE = "image"
    TEXT = "text"
    DOCX = "docx"


class OcrStatus(enum.Enum):
    NOT_SCANNED = "not_scanned"
    TEXT_ONLY = "text_only"
    OCR_APPLIED = "ocr_applied"
    OCR_RECOMMENDED = "ocr_recommended"


class JobStatus(enum.Enum):
    WAITING = "waiting"
    PROCESSING = "processing"
    COMPLETE = "complete"
    ERROR = "error"


class User(UserMixin, db.Model):
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    status = db.Column(db.String(20), default=UserStatus.PENDING.value, nullable=False)
    is_admin = db.Column(db.Boolean, default=False, nullable=False)
    has_completed_setup = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_now)
    last_login_at = db.Column(db.DateTime(timezone=True))

    chat_messages = db.relationship('ChatMessage', back_populates='user', lazy='dynamic',
                                    cascade='all, delete-orphan')

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)

    @property
    def is_approved(self):
        return self.status == UserStatus.APPROVED.value

    def to_dict(self):
        return {
            'uid': self.id,
            'email': self.email,
            'status': self.status,
            'is_admin': bool(self.is_admin),
            'has_completed_setup': bool(self.has_completed_setup),
            'created_at': _iso(self.created_at),
            'last_login_at': _iso(self.last_login_at),
        }


class Folder(db.Model):
    __tablename__ = 'folders'

    id = db.Column(db.String(64), primary_key=True, default=generate_id)
    name = db.Column(db.String(255), nullable=False)
    parent_id = db.Column(db.String(64), db.ForeignKey('folders.id'), nullable=True, index=True)
    is_locked = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_now)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'parent_id': self.parent_id,
            'is_locked': bool(self.is_locked),
        }


class KnowledgeFile(db.Model):
    """
    An uploaded document.

    ``content`` holds one ``{"name", "text"}`` item per location: "Page N" for
    PDFs, a single item for DOCX, plain text and images. The blob itself lives
    in the object store under ``storage_path``.
    """
    __tablename__ = 'files'

    id = db.Column(db.String(64), primary_key=True, default=generate_id)
    name = db.Column(db.String(255), nullable=False)
    type = db.Column(db.String(20), nullable=False)
    mime_type = db.Column(db.String(100))
    folder_id = db.Column(db.String(64), db.ForeignKey('folders.id'), nullable=False, index=True)
    content = db.Column(db.JSON, default=list)
    content_length = db.Column(db.Integer, default=0)
    is_locked = db.Column(db.Boolean, default=False, nullable=False)
    storage_path = db.Column(db.String(500))
    storage_backend = db.Column(db.String(20), default='s3')
    ocr_status = db.Column(db.String(30), default=OcrStatus.NOT_SCANNED.value)
    last_ocr_scan = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), default=_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=_now, onupdate=_now)

    folder = db.relationship('Folder')

    def recompute_content_length(self):
        self.content_length = sum(len((item or {}).get('text') or '') for item in (self.content or []))
        return self.content_length

    def to_dict(self, include_content=False):
        result = {
            'id': self.id,
            'name': self.name,
            'type': self.type,
            'mime_type': self.mime_type,
            'folder_id': self.folder_id,
            'content_length': self.content_length or 0,
            'page_count': len(self.content or []),
            'is_locked': bool(self.is_locked),
            'storage_path': self.storage_path,
            'storage_backend': self.storage_backend,
            'ocr_status': self.ocr_status,
            'last_ocr_scan': _iso(self.last_ocr_scan),
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }
        if include_content:
            result['content'] = list(self.content or [])
        return result


class Job(db.Model):
    """
    Background task (rescan or storage sync), persisted so any worker can
    answer status polls.
    """
    __tablename__ = 'jobs'

    id = db.Column(db.String(100), primary_key=True)
    kind = db.Column(db.String(30), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    target_id = db.Column(db.String(64))  # File id for single-file rescans

    status = db.Column(db.String(20), default=JobStatus.WAITING.value, index=True)
    progress = db.Column(db.Integer, default=0)  # 0-100
    message = db.Column(db.Text)  # Latest human readable progress line
    result = db.Column(db.JSON)
    error = db.Column(db.Text)

    created_at = db.Column(db.DateTime(timezone=True), default=_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=_now, onupdate=_now)
    heartbeat_at = db.Column(db.DateTime(timezone=True))

    def to_dict(self):
        return {
            'id': self.id,
            'kind': self.kind,
            'target_id': self.target_id,
            'status': self.status,
            'progress': self.progress or 0,
            'message': self.message,
            'result': self.result,
            'error': self.error,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
            'heartbeat_at': _iso(self.heartbeat_at),
        }

    def update_from_dict(self, data):
        for key in ('kind', 'user_id', 'target_id', 'status', 'progress', 'message', 'result', 'error'):
            if key in data:
                setattr(self, key, data[key])
        if data.get('heartbeat'):
            self.heartbeat_at = _now()


class ChatMessage(db.Model):
    __tablename__ = 'chat_messages'

    id = db.Column(db.String(64), primary_key=True, default=generate_id)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    sender = db.Column(db.String(10), nullable=False)  # user or bot
    text = db.Column(db.Text, nullable=False, default='')
    sources = db.Column(db.JSON)
    created_at = db.Column(db.DateTime(timezone=True), default=_now)

    user = db.relationship('User', back_populates='chat_messages')

    def to_dict(self):
        result = {
            'id': self.id,
            'sender': self.sender,
            'text': self.text,
            'timestamp': int(self.created_at.timestamp() * 1000) if self.created_at else None,
        }
        if self.sources is not None:
            result['sources'] = self.sources
        return result


class AuditLog(db.Model):
    __tablename__ = 'audit_logs'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'))
    event_type = db.Column(db.String(100), nullable=False)
    event_description = db.Column(db.Text)
    ip_address = db.Column(db.String(45))
    created_at = db.Column(db.DateTime(timezone=True), default=_now)
