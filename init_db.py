"""
Initialize database tables.
Run this on first deploy instead of flask db upgrade.

Set RESET_DB=1 environment variable to drop and recreate all tables.
"""
import os

from knowledgebase import create_app, db
from knowledgebase.services.knowledge_service import ensure_root_folder


def init_db():
    """Create all database tables and the root folder."""
    app = create_app(os.getenv('FLASK_ENV', 'production'))

    with app.app_context():
        if os.getenv('RESET_DB', '').strip() in ('1', 'true', 'yes'):
            app.logger.warning("RESET_DB is set - dropping all tables...")
            db.drop_all()

        app.logger.info("Creating database tables...")
        db.create_all()
        root = ensure_root_folder()
        app.logger.info(f"Database ready (root folder: {root.name})")


if __name__ == '__main__':
    init_db()
