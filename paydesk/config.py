import os
from dotenv import dotenv_values

DB_CONNECT_TIMEOUT_SECONDS = int(os.getenv("DB_CONNECT_TIMEOUT_SECONDS", "5"))
DB_POOL_TIMEOUT_SECONDS = int(os.getenv("DB_POOL_TIMEOUT_SECONDS", "10"))
DB_STATEMENT_TIMEOUT_MS = int(os.getenv("DB_STATEMENT_TIMEOUT_MS", "5000"))
DB_LOCK_TIMEOUT_MS = int(os.getenv("DB_LOCK_TIMEOUT_MS", "3000"))

def engine_options(url):
    """
    Engine options with bounded waits. On Postgres a stalled statement or a
    row-lock wait errors out (OperationalError) instead of blocking the request.
    """
    opts = {"pool_pre_ping": True}
    if url and url.startswith(("postgres://", "postgresql")):
        opts["pool_timeout"] = DB_POOL_TIMEOUT_SECONDS
        opts["connect_args"] = {
            "connect_timeout": DB_CONNECT_TIMEOUT_SECONDS,
            "options": f"-c statement_timeout={DB_STATEMENT_TIMEOUT_MS} -c lock_timeout={DB_LOCK_TIMEOUT_MS}",
        }
    return opts

class BaseConfig:
    # Secrets (env in prod; dev/test may use defaults)
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-not-secure")
    WTF_CSRF_SECRET_KEY = SECRET_KEY

    # Database (env in prod; dev/test may use default)
    _ENV_FALLBACK = dotenv_values(".env")
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL") or _ENV_FALLBACK.get("DATABASE_URL") or "sqlite:///:memory:"
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = engine_options(SQLALCHEMY_DATABASE_URI)

    # Logging / misc
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:5000")
    DASHBOARD_BASE_URL = os.getenv("DASHBOARD_BASE_URL", "https://dash.bertrandgroup.ca")

    # --- Field-level encryption ---
    # base64 of exactly 32 bytes; generate with `flask vault generate-key`
    ENCRYPTION_KEY = os.getenv("ENCRYPTION_KEY")

    # --- Rate limiting ---
    # Durable counter store; unset → in-process fallback with stricter limits
    REDIS_URL = os.getenv("REDIS_URL")
    REDIS_TIMEOUT_SECONDS = float(os.getenv("REDIS_TIMEOUT_SECONDS", "0.5"))
    RATE_LIMIT_SWEEP_PROBABILITY = float(os.getenv("RATE_LIMIT_SWEEP_PROBABILITY", "0.01"))

    # --- Stripe ---
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
    STRIPE_WEBHOOK_TOLERANCE = int(os.getenv("STRIPE_WEBHOOK_TOLERANCE", "300"))
    STRIPE_ENVIRONMENT = os.getenv("STRIPE_ENVIRONMENT", "development")
    DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "CAD")

    # --- Notifications (Pushover) ---
    PUSHOVER_API_TOKEN = os.getenv("PUSHOVER_API_TOKEN")
    PUSHOVER_USER_KEY = os.getenv("PUSHOVER_USER_KEY")
    PUSHOVER_TIMEOUT_SECONDS = float(os.getenv("PUSHOVER_TIMEOUT_SECONDS", "5"))
    NOTIFY_ASYNC = (os.getenv("NOTIFY_ASYNC", "true").lower() == "true")

    # --- Lead intake (Formspree) ---
    FORMSPREE_WEBHOOK_SECRET = os.getenv("FORMSPREE_WEBHOOK_SECRET")
    INTAKE_MAX_BODY_BYTES = 100 * 1024

    # --- Error reporting ---
    SENTRY_DSN = os.getenv("SENTRY_DSN")
    SENTRY_TRACES_SAMPLE_RATE = float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.0"))

class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "DEBUG")

class StagingConfig(BaseConfig):
    DEBUG = False
    STRIPE_ENVIRONMENT = os.getenv("STRIPE_ENVIRONMENT", "staging")

class ProductionConfig(BaseConfig):
    DEBUG = False
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "WARNING")
    STRIPE_ENVIRONMENT = os.getenv("STRIPE_ENVIRONMENT", "production")
    # REQUIRE env vars in production (fail fast if missing)
    SECRET_KEY = os.environ.get("SECRET_KEY")
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL")
    SQLALCHEMY_ENGINE_OPTIONS = engine_options(SQLALCHEMY_DATABASE_URI)

class TestingConfig(BaseConfig):
    TESTING = True
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = os.environ.get("TEST_DATABASE_URL", "sqlite:///:memory:")
    SQLALCHEMY_ENGINE_OPTIONS = engine_options(SQLALCHEMY_DATABASE_URI)
    STRIPE_ENVIRONMENT = "development"
    NOTIFY_ASYNC = False
    REDIS_URL = None

_ENV_MAP = {
    "development": DevelopmentConfig,
    "staging": StagingConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
}

def get_config():
    env = os.environ.get("APP_ENV", "development").lower()
    return _ENV_MAP.get(env, DevelopmentConfig)
