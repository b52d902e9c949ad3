"""
Knowledge Base Application Factory
"""
import logging
from datetime import datetime, timezone

from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_login import LoginManager
from flask_wtf.csrf import CSRFProtect

from knowledgebase.config import get_config

db = SQLAlchemy()
migrate = Migrate()
login_manager = LoginManager()
csrf = CSRFProtect()


def _configure_logging(app: Flask) -> None:
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    app.logger.setLevel(level)


def create_app(config_name=None):
    app = Flask(__name__)
    app.config.from_object(get_config(config_name))
    _configure_logging(app)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    csrf.init_app(app)

    # Register blueprints
    from knowledgebase.auth import auth_bp
    from knowledgebase.admin import admin_bp
    from knowledgebase.api import api_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(admin_bp, url_prefix='/admin')
    app.register_blueprint(api_bp, url_prefix='/api')

    # JSON clients don't send CSRF tokens
    csrf.exempt(auth_bp)
    csrf.exempt(admin_bp)
    csrf.exempt(api_bp)

    @app.route('/healthz')
    def healthz():
        """Health check for load balancers and monitoring"""
        try:
            from sqlalchemy import text
            db.session.execute(text('SELECT 1'))
            db_status = "ok"
        except Exception as e:
            db_status = f"error: {e}"

        from knowledgebase.services.storage_service import get_storage
        from knowledgebase.services.ocr_service import ocr_ready

        ocr_ok, ocr_msg = ocr_ready()
        return jsonify({
            "status": "ok" if db_status == "ok" else "degraded",
            "version": app.config["APP_VERSION"],
            "database": db_status,
            "storage": "local" if get_storage().is_local_mode else "s3",
            "ocr": "ok" if ocr_ok else ocr_msg,
            "timestamp": datetime.now(timezone.utc).isoformat()
        })

    @app.route('/version')
    def version():
        """Version and build info"""
        return jsonify({
            "version": app.config["APP_VERSION"],
            "build_time": app.config["BUILD_TIME"],
            "git_commit": app.config["GIT_COMMIT"],
            "features": {
                "ocr_engine": app.config["OCR_ENGINE"],
                "rescan": True,
                "chat": True,
                "storage_sync": True,
            }
        })

    with app.app_context():
        from sqlalchemy import inspect

        # Only create tables if they don't exist (safe for existing DB)
        inspector = inspect(db.engine)
        if not inspector.get_table_names():
            app.logger.info('No tables found, creating...')
            db.create_all()

    return app
