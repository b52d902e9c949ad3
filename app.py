"""
WSGI entry point

    gunicorn app:app
"""
import os

from knowledgebase import create_app

app = create_app(os.getenv("FLASK_ENV", "default"))

if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.getenv("PORT", "5000")))
