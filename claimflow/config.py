import os


def _env_bool(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).lower() in {"1", "true", "yes"}


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key")
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", "sqlite:///claimflow.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    ENGINE_BASE_URL = os.environ.get("ENGINE_BASE_URL", "http://localhost:8080/flowable-rest/service")
    ENGINE_USERNAME = os.environ.get("ENGINE_USERNAME", "rest-admin")
    ENGINE_PASSWORD = os.environ.get("ENGINE_PASSWORD", "test")
    ENGINE_TIMEOUT_SECONDS = float(os.environ.get("ENGINE_TIMEOUT_SECONDS", 10))
    PLACEHOLDER_TIMEOUT_SECONDS = float(os.environ.get("PLACEHOLDER_TIMEOUT_SECONDS", ENGINE_TIMEOUT_SECONDS * 3))
    ENGINE_VERIFY_TLS = _env_bool("ENGINE_VERIFY_TLS", "true")
    COMPAT_PROCESS_KEY = os.environ.get("COMPAT_PROCESS_KEY", "expenseApproval")

    HIGH_VALUE_THRESHOLD = os.environ.get("HIGH_VALUE_THRESHOLD", "100000")
    FALLBACK_ADMIN_EMAIL = os.environ.get("FALLBACK_ADMIN_EMAIL", "admin@claimflow.local")
    FALLBACK_FINANCE_EMAIL = os.environ.get("FALLBACK_FINANCE_EMAIL", "finance.director@claimflow.local")
    FALLBACK_COMPLIANCE_EMAIL = os.environ.get("FALLBACK_COMPLIANCE_EMAIL", "compliance.director@claimflow.local")
    FINANCE_DEPARTMENT = os.environ.get("FINANCE_DEPARTMENT", "Finance")
    COMPLIANCE_DEPARTMENT = os.environ.get("COMPLIANCE_DEPARTMENT", "Compliance")
    FUNCTIONAL_HEAD_TITLES = {
        "Technology": "CTO",
        "Finance": "CFO",
        "HR": "COO",
        "Trading": "CEO",
        "Risk": "CRO",
        "Compliance": "CCO",
    }
    DEFAULT_FUNCTIONAL_HEAD_TITLE = "COO"

    DEFAULT_PAGE_SIZE = int(os.environ.get("DEFAULT_PAGE_SIZE", 20))
    IDENTITY_SYNC_MAX_ATTEMPTS = int(os.environ.get("IDENTITY_SYNC_MAX_ATTEMPTS", 3))


class DevelopmentConfig(Config):
    DEBUG = True
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "DEBUG")


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    ENGINE_TIMEOUT_SECONDS = 1.0
    PLACEHOLDER_TIMEOUT_SECONDS = 3.0


class ProductionConfig(Config):
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", "postgresql://localhost/claimflow")


config_by_name = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
}
