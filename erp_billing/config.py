import os


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return float(raw)


class BaseConfig:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-not-secure")
    WTF_CSRF_SECRET_KEY = SECRET_KEY

    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL") or "sqlite:///:memory:"
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Flask-Limiter default: off globally; prefer per-route limits
    RATELIMIT_DEFAULT = None

    APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:5000")

    # --- Stripe ---
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_PUBLISHABLE_KEY = os.getenv("STRIPE_PUBLISHABLE_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
    STRIPE_API_VERSION = os.getenv("STRIPE_API_VERSION")  # None -> library default
    # Retries apply to reads and writes; the library reuses idempotency keys on retry
    STRIPE_MAX_NETWORK_RETRIES = _env_int("STRIPE_MAX_NETWORK_RETRIES", 2)
    STRIPE_WEBHOOK_TOLERANCE = _env_int("STRIPE_WEBHOOK_TOLERANCE", 300)

    # --- Subscriptions ---
    DEFAULT_TRIAL_DAYS = _env_int("DEFAULT_TRIAL_DAYS", 15)

    # --- Enterprise (dynamic) pricing, major units except the AI credit price ---
    ENTERPRISE_PLAN_CODE = os.getenv("ENTERPRISE_PLAN_CODE", "enterprise")
    ENTERPRISE_CURRENCY = os.getenv("ENTERPRISE_CURRENCY", "usd")
    ENTERPRISE_BASE_PRICE = _env_float("ENTERPRISE_BASE_PRICE", 99.0)
    ENTERPRISE_MODULE_UNIT_PRICE = _env_float("ENTERPRISE_MODULE_UNIT_PRICE", 10.0)
    ENTERPRISE_BRANCH_UNIT_PRICE = _env_float("ENTERPRISE_BRANCH_UNIT_PRICE", 5.0)
    ENTERPRISE_USER_UNIT_PRICE = _env_float("ENTERPRISE_USER_UNIT_PRICE", 2.0)
    ENTERPRISE_AI_CREDIT_UNIT_PRICE_MINOR = _env_float("ENTERPRISE_AI_CREDIT_UNIT_PRICE_MINOR", 1.0)


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "DEBUG")


class ProductionConfig(BaseConfig):
    DEBUG = False
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "WARNING")
    # Read lazily so importing this module never fails; create_app() enforces presence
    SECRET_KEY = os.environ.get("SECRET_KEY")
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL")


class TestingConfig(BaseConfig):
    TESTING = True
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = os.environ.get("TEST_DATABASE_URL", "sqlite:///:memory:")
    WTF_CSRF_ENABLED = False
    RATELIMIT_ENABLED = False


_ENV_MAP = {
    "development": DevelopmentConfig,
    "staging": ProductionConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
}


def get_config():
    env = os.environ.get("APP_ENV", "development").lower()
    return _ENV_MAP.get(env, DevelopmentConfig)
