"""
Authentication routes and utilities

The first account ever registered becomes an approved administrator. Every
later account starts out pending until an administrator approves it.
"""
from datetime import datetime, timezone
from functools import wraps

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required, login_user, logout_user

from knowledgebase import db, login_manager
from knowledgebase.models import AuditLog, User, UserStatus

auth_bp = Blueprint('auth', __name__)

MIN_PASSWORD_LENGTH = 8


@login_manager.user_loader
def load_user(user_id):
    """Load user by ID"""
    return db.session.get(User, int(user_id))


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({"ok": False, "error": "Authentication required"}), 401


def approved_required(f):
    """Logged in and approved by an administrator"""
    @wraps(f)
    @login_required
    def decorated_function(*args, **kwargs):
        if not current_user.is_approved:
            return jsonify({"ok": False, "error": "Account is awaiting approval"}), 403
        return f(*args, **kwargs)
    return decorated_function


def admin_required(f):
    """Approved administrator only"""
    @wraps(f)
    @approved_required
    def decorated_function(*args, **kwargs):
        if not current_user.is_admin:
            return jsonify({"ok": False, "error": "Administrator access required"}), 403
        return f(*args, **kwargs)
    return decorated_function


def log_audit_event(event_type, description):
    """Log audit event"""
    try:
        audit_log = AuditLog(
            user_id=current_user.id if current_user.is_authenticated else None,
            event_type=event_type,
            event_description=description,
            ip_address=request.remote_addr,
        )
        db.session.add(audit_log)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        current_app.logger.warning(f'Could not write audit event {event_type}: {e}')


def _credentials():
    payload = request.get_json(silent=True) or request.form
    email = (payload.get('email') or '').strip().lower()
    password = payload.get('password') or ''
    return email, password


@auth_bp.route('/register', methods=['POST'])
def register():
    """User registration"""
    email, password = _credentials()

    if not email or not password:
        return jsonify({"ok": False, "error": "Email and password are required."}), 400
    if '@' not in email:
        return jsonify({"ok": False, "error": "Invalid email address."}), 400
    if len(password) < MIN_PASSWORD_LENGTH:
        return jsonify({"ok": False, "error": f"Password must be at least {MIN_PASSWORD_LENGTH} characters."}), 400
    if User.query.filter_by(email=email).first():
        return jsonify({"ok": False, "error": "Email already registered."}), 409

    first_user = User.query.count() == 0
    user = User(
        email=email,
        status=UserStatus.APPROVED.value if first_user else UserStatus.PENDING.value,
        is_admin=first_user,
        has_completed_setup=False,
    )
    user.set_password(password)

    try:
        db.session.add(user)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f'Registration failed for {email}: {e}')
        return jsonify({"ok": False, "error": "Registration failed."}), 500

    if first_user:
        # First admin goes straight in
        login_user(user)
    log_audit_event('user_registered', f'User {email} registered')
    return jsonify({"ok": True, "user": user.to_dict()}), 201


@auth_bp.route('/login', methods=['POST'])
def login():
    """User login"""
    email, password = _credentials()
    payload = request.get_json(silent=True) or request.form
    remember = str(payload.get('remember') or '').lower() in {'1', 'true', 'yes', 'on'}

    user = User.query.filter_by(email=email).first()
    if not user or not user.check_password(password):
        return jsonify({"ok": False, "error": "Invalid email or password."}), 401

    if user.status == UserStatus.PENDING.value:
        return jsonify({"ok": False, "error": "Your account is awaiting administrator approval.",
                        "status": user.status}), 403
    if user.status == UserStatus.REJECTED.value:
        return jsonify({"ok": False, "error": "Your account request was rejected.",
                        "status": user.status}), 403

    login_user(user, remember=remember)
    user.last_login_at = datetime.now(timezone.utc)
    db.session.commit()
    log_audit_event('user_login', f'User {email} logged in')
    return jsonify({"ok": True, "user": user.to_dict()})


@auth_bp.route('/logout', methods=['POST'])
@login_required
def logout():
    """User logout"""
    log_audit_event('user_logout', f'User {current_user.email} logged out')
    logout_user()
    return jsonify({"ok": True, "message": "You have been logged out."})


@auth_bp.route('/me')
@login_required
def me():
    return jsonify({"ok": True, "user": current_user.to_dict()})


@auth_bp.route('/setup/status')
def setup_status():
    """Whether the first administrator still has to be created"""
    has_admin = User.query.filter_by(is_admin=True).first() is not None
    return jsonify({"ok": True, "needs_first_admin": not has_admin})


@auth_bp.route('/setup/complete', methods=['POST'])
@approved_required
def complete_setup():
    current_user.has_completed_setup = True
    db.session.commit()
    return jsonify({"ok": True, "user": current_user.to_dict()})
