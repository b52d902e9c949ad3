"""
Test Configuration and Fixtures
"""
import io

import fitz  # PyMuPDF
import pytest

from knowledgebase import create_app, db
from knowledgebase.models import User, UserStatus
from knowledgebase.services import ocr_service, openai_service

LONG_TEXT = (
    "The quarterly maintenance procedure requires the operator to inspect the filter, "
    "replace worn gaskets and record the pressure readings in the logbook."
)


def make_pdf(pages):
    """Build a PDF in memory; each entry is the text of one page ("" for a blank page)."""
    doc = fitz.open()
    for text in pages:
        page = doc.new_page()
        if text:
            page.insert_textbox(fitz.Rect(72, 72, 540, 770), text, fontsize=11, fontname="helv")
    data = doc.tobytes()
    doc.close()
    return data


def make_docx(paragraphs):
    from docx import Document

    document = Document()
    for p in paragraphs:
        document.add_paragraph(p)
    buf = io.BytesIO()
    document.save(buf)
    return buf.getvalue()


@pytest.fixture(scope='function')
def app(tmp_path):
    """Create application for testing"""
    app = create_app('testing')
    app.config['LOCAL_STORAGE_DIR'] = str(tmp_path / 'files')

    with app.app_context():
        db.create_all()

    yield app

    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client"""
    return app.test_client()


def _create_user(app, email, password, status=UserStatus.APPROVED.value, is_admin=False):
    with app.app_context():
        user = User(email=email, status=status, is_admin=is_admin)
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        return user.id


@pytest.fixture(scope='function')
def admin_user(app):
    return _create_user(app, 'admin@example.com', 'adminpassword123', is_admin=True)


@pytest.fixture(scope='function')
def test_user(app, admin_user):
    return _create_user(app, 'user@example.com', 'userpassword123')


@pytest.fixture(scope='function')
def pending_user(app, admin_user):
    return _create_user(app, 'pending@example.com', 'pendingpassword123', status=UserStatus.PENDING.value)


@pytest.fixture(scope='function')
def admin_client(client, admin_user):
    """Client logged in as an administrator"""
    response = client.post('/login', json={'email': 'admin@example.com', 'password': 'adminpassword123'})
    assert response.status_code == 200
    return client


@pytest.fixture(scope='function')
def authenticated_client(app, test_user):
    """Client logged in as an approved, non-admin user"""
    client = app.test_client()
    response = client.post('/login', json={'email': 'user@example.com', 'password': 'userpassword123'})
    assert response.status_code == 200
    return client


class FakeOcr:
    """Stands in for the hosted OCR call and records what it was sent."""

    def __init__(self, text="Recognised text from the scanned page. " * 4, error=""):
        self.text = text
        self.error = error
        self.calls = []

    def __call__(self, image, mime_type="image/jpeg"):
        self.calls.append((image, mime_type))
        if self.error:
            return "", self.error
        return self.text, ""


@pytest.fixture
def fake_ocr(monkeypatch):
    fake = FakeOcr()
    monkeypatch.setattr(ocr_service, 'ocr_image', fake)
    return fake


@pytest.fixture
def fake_answer(monkeypatch):
    calls = []

    def answer(question, context):
        calls.append((question, context))
        return {
            "answer": "1. Inspect the filter.\n2. Replace the gaskets.",
            "sources": [
                {"document": "manual.pdf", "location": "Page 1"},
                {"document": "missing.pdf", "location": "Page 3"},
            ],
        }, ""

    monkeypatch.setattr(openai_service, 'answer_from_knowledge_base', answer)
    return calls
