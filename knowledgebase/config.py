"""
Knowledge Base Configuration
Supports AWS Parameter Store for production secrets
"""
import logging
import os
import tempfile
from typing import Optional

try:
    import boto3
except ImportError:
    boto3 = None

logger = logging.getLogger(__name__)


def get_parameter(name: str, default: str = "") -> str:
    """Get parameter from AWS Parameter Store or environment"""
    # Environment variable takes precedence
    env_key = name.upper().replace("-", "_").replace("/", "_")
    if env_key in os.environ:
        return os.environ[env_key]

    if boto3 and os.environ.get("USE_PARAMETER_STORE"):
        try:
            ssm = boto3.client("ssm", region_name=os.environ.get("AWS_REGION", "us-west-2"))
            path = os.environ.get("PARAMETER_STORE_PATH", "/knowledgebase/prod/")
            response = ssm.get_parameter(Name=f"{path}{name}", WithDecryption=True)
            return response["Parameter"]["Value"]
        except Exception as e:
            logger.warning("Could not load %s from Parameter Store: %s", name, e)

    return default


def _database_url() -> str:
    url = os.environ.get("DATABASE_URL", "sqlite:///knowledgebase.db")
    # Fix Render's postgres:// URL
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    return url


class Config:
    """Base configuration"""
    # Flask
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-change-in-production")

    # Database
    SQLALCHEMY_DATABASE_URI = _database_url()
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}

    # Session
    SESSION_PERMANENT = False
    PERMANENT_SESSION_LIFETIME = 86400

    # Security
    WTF_CSRF_ENABLED = True
    WTF_CSRF_TIME_LIMIT = 3600

    # File uploads
    MAX_CONTENT_LENGTH = int(os.environ.get("MAX_CONTENT_LENGTH", str(100 * 1024 * 1024)))

    # OpenAI
    OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY", "")
    OPENAI_MODEL = os.environ.get("OPENAI_MODEL", "gpt-4.1")
    OPENAI_OCR_MODEL = os.environ.get("OPENAI_OCR_MODEL", "")

    # OCR
    OCR_ENGINE = os.environ.get("OCR_ENGINE", "openai")  # openai or tesseract
    OCR_RENDER_DPI = int(os.environ.get("OCR_RENDER_DPI", "192"))
    MIN_TEXT_LENGTH_FOR_OCR_PER_PAGE = int(os.environ.get("MIN_TEXT_LENGTH_FOR_OCR_PER_PAGE", "100"))

    # AWS
    AWS_REGION = os.environ.get("AWS_REGION", "us-west-2")
    AWS_S3_BUCKET = os.environ.get("AWS_S3_BUCKET", "")
    S3_PREFIX = os.environ.get("S3_PREFIX", "files/")
    LOCAL_STORAGE_DIR = os.environ.get("LOCAL_STORAGE_DIR", "/tmp/knowledgebase_files")

    # Knowledge base
    ROOT_FOLDER_NAME = os.environ.get("ROOT_FOLDER_NAME", "My Knowledge")
    CHAT_CONTEXT_LIMIT = int(os.environ.get("CHAT_CONTEXT_LIMIT", "900000"))
    PROXY_TIMEOUT = int(os.environ.get("PROXY_TIMEOUT", "30"))

    # Background jobs run in daemon threads unless inline
    JOBS_INLINE = False
    # A processing job without a heartbeat for this long is treated as dead
    JOB_STALE_SECONDS = int(os.environ.get("JOB_STALE_SECONDS", "300"))

    # Logging
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # App Version
    APP_VERSION = os.environ.get("APP_VERSION", "2026.10")
    BUILD_TIME = os.environ.get("BUILD_TIME", "")
    GIT_COMMIT = os.environ.get("GIT_COMMIT", "")


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    TESTING = False
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "DEBUG")


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    TESTING = False

    # Override with Parameter Store in production
    SECRET_KEY = get_parameter("secret-key", Config.SECRET_KEY)
    OPENAI_API_KEY = get_parameter("openai-api-key", Config.OPENAI_API_KEY)
    AWS_S3_BUCKET = get_parameter("aws-s3-bucket", Config.AWS_S3_BUCKET)


class TestingConfig(Config):
    """Testing configuration"""
    DEBUG = True
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    WTF_CSRF_ENABLED = False
    AWS_S3_BUCKET = ""
    OPENAI_API_KEY = ""
    JOBS_INLINE = True
    LOCAL_STORAGE_DIR = os.path.join(tempfile.gettempdir(), "knowledgebase_test_files")


config = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
    "default": DevelopmentConfig,
}


def get_config(env: Optional[str] = None):
    """Get configuration class by environment name"""
    env = env or os.environ.get("FLASK_ENV", "development")
    return config.get(env, config["default"])
