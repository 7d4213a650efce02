"""
ClawPay - autonomous agent rewards service.

Discovers AI agents doing useful work, evaluates them, queues USDC rewards
and settles them on Solana from delegated sender wallets.

Run:
    flask --app app run            (development)
    gunicorn "app:create_app()"    (production)
"""

import atexit
import logging

from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.exceptions import HTTPException

import config
from errors import ClawPayError, RateLimitError
from services import build_services

logger = logging.getLogger("clawpay")


def setup_logging(level=logging.INFO):
    root = logging.getLogger()
    if not any(getattr(h, "_clawpay", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S"
        ))
        handler._clawpay = True
        root.addHandler(handler)
    root.setLevel(level)


def register_error_handlers(app):
    @app.errorhandler(ClawPayError)
    def handle_clawpay_error(e):
        if e.status_code >= 500:
            logger.error("request failed | path=%s error=%s", request.path, e.message)
        response = jsonify(e.to_dict())
        response.status_code = e.status_code
        if isinstance(e, RateLimitError):
            response.headers.update(e.headers)
        return response

    # Flask-Limiter (IP-level limits on the public blueprints)
    @app.errorhandler(429)
    def ratelimit_handler(e):
        logger.warning("rate limit exceeded | ip=%s path=%s", request.remote_addr, request.path)
        return jsonify({
            "success": False,
            "error": "rate_limited",
            "message": "Too many requests. Please slow down and try again later.",
            "retry_after": e.description if hasattr(e, "description") else "60 seconds"
        }), 429

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        return jsonify({"success": False, "error": e.name.lower().replace(" ", "_"),
                        "message": e.description}), e.code

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        logger.exception("unhandled error | path=%s", request.path)
        return jsonify({"success": False, "error": "internal_error", "message": "Internal server error"}), 500


def create_app(overrides=None, services=None):
    """
    Build the Flask app.

    overrides: dict merged over config.load_config().
    services: prebuilt services.Services (tests); built from config otherwise.
    """
    setup_logging()
    app = Flask(__name__)
    app.config.update(config.load_config())
    if overrides:
        app.config.update(overrides)
    cfg = dict(app.config)

    services = services or build_services(cfg)
    app.extensions["clawpay"] = services

    CORS(app, origins=cfg["CORS_ORIGINS"])

    limiter = Limiter(
        app=app,
        key_func=get_remote_address,
        default_limits=[l.strip() for l in cfg["GLOBAL_RATE_LIMITS"].split(";") if l.strip()],
        storage_uri="memory://",
        strategy="fixed-window",
        headers_enabled=True,
    )

    from api_admin import admin_bp
    from api_agents import agent_api_bp, agents_bp
    from api_bounties import bounties_bp
    from api_claims import claims_bp
    from api_reputation import reputation_bp
    app.register_blueprint(admin_bp)
    app.register_blueprint(agents_bp)
    app.register_blueprint(agent_api_bp)
    app.register_blueprint(bounties_bp)
    app.register_blueprint(claims_bp)
    app.register_blueprint(reputation_bp)

    # The agent surface has its own per-key quota.
    limiter.exempt(agent_api_bp)
    limiter.limit("10 per minute")(claims_bp)  # Claims hit the chain - strict limit

    register_error_handlers(app)

    @app.route("/health", methods=["GET"])
    @limiter.exempt
    def health():
        scheduler = services.scheduler
        return jsonify({
            "status": "ok",
            "scheduler_running": scheduler.running,
            "last_cycle": scheduler.last_run,
            "vault": getattr(services.chain, "vault_address", None),
        })

    if cfg["SCHEDULER_ENABLED"]:
        services.scheduler.start()
        atexit.register(services.shutdown)

    logger.info("clawpay app ready | scheduler=%s", cfg["SCHEDULER_ENABLED"])
    return app
