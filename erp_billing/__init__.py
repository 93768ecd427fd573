import os
from flask import Flask, jsonify, request

# Load .env only for local/dev. In prod, env vars come from the platform.
if os.getenv("APP_ENV", "development") != "production":
    from dotenv import load_dotenv
    load_dotenv(".env", override=False)


from .config import get_config
from .extensions import db, migrate, csrf, limiter
from .observability import init_logging, init_sentry
from .billing.client import EXTENSION_KEY, build_client
from .billing.errors import BillingError


def create_app(config_object=None):
    app = Flask(__name__)

    # Rate limit storage: in-process for dev/test, Redis for prod-like envs
    app_env = (os.getenv("APP_ENV", "development") or "development").lower()
    use_redis = app_env in ("staging", "production")
    storage_uri = os.environ.get("REDIS_URL") if use_redis else "memory://"
    if use_redis and not storage_uri:
        raise RuntimeError("REDIS_URL is required in staging/production for rate limiting")
    app.config["RATELIMIT_STORAGE_URI"] = storage_uri
    app.config.setdefault("RATELIMIT_HEADERS_ENABLED", True)

    app.config.from_object(config_object or get_config())
    app.config["APP_ENV"] = app_env

    def _require(name: str):
        val = os.getenv(name) or app.config.get(name)
        if not val:
            raise RuntimeError(f"Missing required environment variable: {name}")
        return val

    if app_env in ("staging", "production"):
        # Enforced at startup, not at import time
        _require("SECRET_KEY")
        _require("DATABASE_URL")
        _require("STRIPE_SECRET_KEY")
        _require("STRIPE_WEBHOOK_SECRET")

    init_logging(app)
    init_sentry(app)

    db.init_app(app)
    migrate.init_app(app, db, directory="migrations")
    csrf.init_app(app)
    limiter.init_app(app)

    from .blueprints.webhooks import bp as webhooks_bp
    from .blueprints.billing.routes import billing_bp

    # JSON API authenticates upstream; CSRF applies to browser forms only
    csrf.exempt(billing_bp)
    app.register_blueprint(billing_bp, url_prefix="/billing")
    app.register_blueprint(webhooks_bp, url_prefix="/webhooks")

    @limiter.exempt
    @app.get("/healthz")
    def healthz():
        return {"status": "ok"}, 200

    @app.errorhandler(BillingError)
    def handle_billing_error(e: BillingError):
        return jsonify({"success": False, "error": e.user_message, "code": e.code}), e.http_status

    @app.errorhandler(404)
    def not_found(e):
        return {"error": "not_found", "code": 404}, 404

    @app.errorhandler(500)
    def server_error(e):
        return {"error": "internal_error", "code": 500}, 500

    # 429 Too Many Requests with Retry-After
    @app.errorhandler(429)
    def too_many_requests(e):
        retry_after = getattr(e, "retry_after", None)
        headers = {}
        payload = {"success": False, "error": "rate_limited", "code": 429}
        if retry_after is not None:
            headers["Retry-After"] = str(int(retry_after))
            payload["retry_after"] = int(retry_after)
        app.logger.warning("billing.rate_limited", extra={"path": request.path})
        return (payload, 429, headers)

    from .cli import register_cli
    register_cli(app)

    # One Stripe client per process, shared by every request
    client = build_client(app.config)
    app.extensions[EXTENSION_KEY] = client
    if client is None:
        app.logger.warning("Stripe secret key missing; billing features will not work")

    return app
