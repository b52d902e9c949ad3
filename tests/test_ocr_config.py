"""
OCR Engine Selection and Configuration Tests
"""
import pytest

from knowledgebase import config as kb_config
from knowledgebase.services import ocr_service, openai_service


@pytest.fixture
def ctx(app):
    with app.app_context():
        yield app


class TestOcrEngine:
    """Test OCR_ENGINE dispatch"""

    def test_default_engine_is_hosted(self, ctx, monkeypatch):
        """Images go to the hosted vision model by default"""
        ctx.config['OCR_ENGINE'] = 'openai'
        calls = []
        monkeypatch.setattr(openai_service, 'ocr_image', lambda image, mime: calls.append(mime) or ('hosted', ''))

        assert ocr_service.engine() == 'openai'
        assert ocr_service.ocr_image(b'img', 'image/png') == ('hosted', '')
        assert calls == ['image/png']

    def test_tesseract_engine(self, ctx, monkeypatch):
        """OCR_ENGINE=tesseract runs pytesseract instead of the hosted model"""
        ctx.config['OCR_ENGINE'] = ' Tesseract '
        monkeypatch.setattr(openai_service, 'ocr_image', lambda image, mime: pytest.fail('hosted OCR called'))
        monkeypatch.setattr(ocr_service, 'tesseract_image', lambda image: ('local text', ''))

        assert ocr_service.engine() == 'tesseract'
        assert ocr_service.ocr_image(b'img', 'image/png') == ('local text', '')

    def test_tesseract_readiness(self, ctx, monkeypatch):
        """ocr_ready reports the tesseract check when that engine is selected"""
        ctx.config['OCR_ENGINE'] = 'tesseract'
        monkeypatch.setattr(ocr_service, 'pytesseract', None)

        assert ocr_service.ocr_ready() == (False, 'pytesseract not available')
        assert ocr_service.tesseract_image(b'img') == ('', 'pytesseract not available')

    def test_engine_from_environment_outside_app(self, monkeypatch):
        """Without an app context the engine comes from the environment"""
        monkeypatch.setenv('OCR_ENGINE', 'tesseract')
        assert ocr_service.engine() == 'tesseract'


class FakeSsm:
    def __init__(self, value=None, error=None):
        self.value = value
        self.error = error
        self.names = []

    def get_parameter(self, Name, WithDecryption):
        self.names.append(Name)
        if self.error:
            raise self.error
        return {'Parameter': {'Value': self.value}}


class TestGetParameter:
    """Test environment and Parameter Store lookups"""

    def test_environment_wins(self, monkeypatch):
        """An environment variable is used before Parameter Store is asked"""
        ssm = FakeSsm(value='from-ssm')
        monkeypatch.setenv('OPENAI_API_KEY', 'from-env')
        monkeypatch.setenv('USE_PARAMETER_STORE', '1')
        monkeypatch.setattr(kb_config.boto3, 'client', lambda *a, **k: ssm)

        assert kb_config.get_parameter('openai-api-key') == 'from-env'
        assert ssm.names == []

    def test_parameter_store(self, monkeypatch):
        """With USE_PARAMETER_STORE the value is read below PARAMETER_STORE_PATH"""
        ssm = FakeSsm(value='from-ssm')
        monkeypatch.delenv('OPENAI_API_KEY', raising=False)
        monkeypatch.setenv('USE_PARAMETER_STORE', '1')
        monkeypatch.setenv('PARAMETER_STORE_PATH', '/kb/test/')
        monkeypatch.setattr(kb_config.boto3, 'client', lambda *a, **k: ssm)

        assert kb_config.get_parameter('openai-api-key') == 'from-ssm'
        assert ssm.names == ['/kb/test/openai-api-key']

    def test_parameter_store_failure_uses_default(self, monkeypatch):
        """Parameter Store errors fall back to the default"""
        monkeypatch.delenv('OPENAI_API_KEY', raising=False)
        monkeypatch.setenv('USE_PARAMETER_STORE', '1')
        monkeypatch.setattr(kb_config.boto3, 'client', lambda *a, **k: FakeSsm(error=RuntimeError('denied')))

        assert kb_config.get_parameter('openai-api-key', 'fallback') == 'fallback'

    def test_parameter_store_disabled(self, monkeypatch):
        """Without USE_PARAMETER_STORE only the environment is consulted"""
        monkeypatch.delenv('OPENAI_API_KEY', raising=False)
        monkeypatch.delenv('USE_PARAMETER_STORE', raising=False)
        monkeypatch.setattr(kb_config.boto3, 'client', lambda *a, **k: pytest.fail('ssm called'))

        assert kb_config.get_parameter('openai-api-key', 'fallback') == 'fallback'


class TestDatabaseUrl:
    """Test DATABASE_URL handling"""

    def test_postgres_scheme_rewritten(self, monkeypatch):
        """postgres:// URLs are rewritten for SQLAlchemy"""
        monkeypatch.setenv('DATABASE_URL', 'postgres://kb:secret@db:5432/kb')
        assert kb_config._database_url() == 'postgresql://kb:secret@db:5432/kb'

    def test_default_sqlite(self, monkeypatch):
        """Without DATABASE_URL a local SQLite file is used"""
        monkeypatch.delenv('DATABASE_URL', raising=False)
        assert kb_config._database_url() == 'sqlite:///knowledgebase.db'

    def test_get_config(self):
        """Unknown environment names fall back to the default config"""
        assert kb_config.get_config('testing') is kb_config.TestingConfig
        assert kb_config.get_config('staging') is kb_config.DevelopmentConfig
