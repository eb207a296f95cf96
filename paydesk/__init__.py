import os
from flask import Flask, jsonify

# Load .env only for local/dev. In prod, env vars come from the platform.
if os.getenv("APP_ENV", "development") != "production":
    from dotenv import load_dotenv
    load_dotenv(".env", override=False)


from .config import get_config
from .errors import RateLimitExceeded
from .extensions import db, migrate, csrf
from .security import init_security
from .observability import init_logging, init_sentry, structured

def create_app():
    app = Flask(__name__)

    # Config: clean, explicit, class-based
    app.config.from_object(get_config())

    # --- Required env validation for prod-like envs (staging/production) ---
    def _require(name: str):
        val = os.getenv(name) or app.config.get(name)
        if not val:
            raise RuntimeError(f"Missing required environment variable: {name}")
        return val

    env_key = (os.getenv("APP_ENV", "development") or "development").lower()
    if env_key in ("staging", "production"):
        # Enforce hard requirements at startup (not at import time)
        _require("SECRET_KEY")
        _require("DATABASE_URL")
        _require("STRIPE_WEBHOOK_SECRET")
        _require("ENCRYPTION_KEY")

    # --- Observability & Security ---
    init_logging(app)
    init_sentry(app)

    # Apply HTTPS, HSTS & CSP only in staging/production
    if env_key in ("staging", "production"):
        init_security(app)

    # Init extensions
    db.init_app(app)
    migrate.init_app(app, db, directory="migrations")
    csrf.init_app(app)

    # App-owned services (rate limiter counter store, notification dispatch)
    from .services.rate_limit import init_rate_limiter, rate_limit_headers
    from .services.notifier import init_notifier
    init_rate_limiter(app)
    init_notifier(app)

    if env_key in ("staging", "production"):
        # Fail at boot rather than on the first encrypted write
        from .services.vault import Vault
        Vault(app.config.get("ENCRYPTION_KEY"))

    # Webhooks
    from .blueprints.webhooks import bp as webhooks_bp
    app.register_blueprint(webhooks_bp, url_prefix="/webhooks")

    # Health
    @app.get("/healthz")
    def healthz():
        return {"status": "ok"}, 200

    # Error handlers: JSON only, no internal detail
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "not_found", "code": 404}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "method_not_allowed", "code": 405}, 405

    @app.errorhandler(500)
    def server_error(e):
        return {"error": "internal_error", "code": 500}, 500

    # CSRF error handler (clean 400 instead of generic 500)
    from flask_wtf.csrf import CSRFError
    @app.errorhandler(CSRFError)
    def handle_csrf_error(e):
        return {"error": "csrf_failed", "code": 400}, 400

    # 429 Too Many Requests with Retry-After and remaining/reset headers
    @app.errorhandler(RateLimitExceeded)
    def too_many_requests(e):
        retry_after = e.result.retry_after()
        headers = {**rate_limit_headers(e.result), "Retry-After": str(retry_after)}
        app.logger.warning(structured("rate_limited", preset=e.preset, fallback=e.result.fallback))
        resp = jsonify({"error": "rate_limited", "code": 429, "retry_after": retry_after})
        return resp, 429, headers

    # CLI commands (ops-grade utilities)
    from .cli import register_cli
    register_cli(app)

    # Ensure the Stripe SDK is initialized for every worker/process.
    import stripe

    key = app.config.get("STRIPE_SECRET_KEY")
    if key:
        stripe.api_key = key
    else:
        app.logger.warning(
            "Stripe secret key missing; checkout link creation will not work"
        )

    return app
