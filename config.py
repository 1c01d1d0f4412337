"""Environment-aware configuration for the Flask application."""
import json
import os


def _static_credentials() -> dict:
    """Parse STATIC_CREDENTIALS ({"token": {"subject_id": ..., "role": ...}}) from the environment."""
    raw = os.getenv("STATIC_CREDENTIALS", "")
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


class BaseConfig:
    def __init__(self) -> None:
        # Defaults for local dev: SQLite db and a non-empty secret. Override via env for production.
        self.SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key-change-me")
        db_url = os.getenv("DATABASE_URL")
        if db_url and "db_host" not in db_url:
            self.SQLALCHEMY_DATABASE_URI = db_url
        else:
            self.SQLALCHEMY_DATABASE_URI = os.getenv(
                "SQLITE_URL",
                f"sqlite:///{os.path.join(os.getcwd(), 'instance', 'app.db')}",
            )
        self.SQLALCHEMY_TRACK_MODIFICATIONS = False
        self.SQLALCHEMY_ENGINE_OPTIONS = {
            "pool_size": int(os.getenv("DB_POOL_SIZE", 10)),
            "max_overflow": int(os.getenv("DB_MAX_OVERFLOW", 20)),
            "pool_timeout": int(os.getenv("DB_POOL_TIMEOUT", 30)),
            "pool_recycle": int(os.getenv("DB_POOL_RECYCLE", 1800)),
        }
        self.PREFERRED_URL_SCHEME = os.getenv("PREFERRED_URL_SCHEME", "https")
        # The API authenticates with bearer tokens, so CSRF only guards non-API form posts.
        self.WTF_CSRF_ENABLED = True
        self.WTF_CSRF_TIME_LIMIT = 3600
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self.LOG_DIR = os.getenv("LOG_DIR", os.path.join(os.getcwd(), "logs"))
        self.MAX_CONTENT_LENGTH = int(os.getenv("MAX_REQUEST_BYTES", 2 * 1024 * 1024))

        # Accountability policy
        self.JUSTIFICATION_MIN_LENGTH = int(os.getenv("JUSTIFICATION_MIN_LENGTH", 10))
        self.STRICT_STATUS_TRANSITIONS = os.getenv("STRICT_STATUS_TRANSITIONS", "false").lower() == "true"

        # Identity
        self.IDENTITY_PROVIDER = os.getenv("IDENTITY_PROVIDER", "database").lower()
        self.STATIC_CREDENTIALS = _static_credentials()
        self.API_TOKEN_BYTES = int(os.getenv("API_TOKEN_BYTES", 32))
        self.DEFAULT_ADMIN_EMAIL = os.getenv("DEFAULT_ADMIN_EMAIL", "admin@example.org")
        self.DEFAULT_ADMIN_PASSWORD = os.getenv("DEFAULT_ADMIN_PASSWORD", "")

        # Listings
        self.REPORTS_PER_PAGE = int(os.getenv("REPORTS_PER_PAGE", 20))
        self.MAX_REPORTS_PER_PAGE = int(os.getenv("MAX_REPORTS_PER_PAGE", 100))
        self.TIMELINE_PREVIEW_LIMIT = int(os.getenv("TIMELINE_PREVIEW_LIMIT", 10))
        self.AUDIT_LOGS_PER_PAGE = int(os.getenv("AUDIT_LOGS_PER_PAGE", 50))


class DevelopmentConfig(BaseConfig):
    def __init__(self) -> None:
        super().__init__()
        self.DEBUG = True
        self.ENV = "development"


class ProductionConfig(BaseConfig):
    def __init__(self) -> None:
        super().__init__()
        self.DEBUG = False
        self.ENV = "production"


class TestingConfig(BaseConfig):
    def __init__(self) -> None:
        super().__init__()
        self.TESTING = True
        self.DEBUG = False
        self.ENV = "testing"
        self.SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", "sqlite:///:memory:")
        # SQLite in-memory engines use a static pool that rejects sizing options.
        self.SQLALCHEMY_ENGINE_OPTIONS = {}
        self.WTF_CSRF_ENABLED = False
        self.LOG_LEVEL = "WARNING"
        self.DEFAULT_ADMIN_PASSWORD = ""
