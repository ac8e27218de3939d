"""
Factory for the POS Simulator API Service (REST).
Serves host, viewer and receipt-backend proxy endpoints under /api/pos-sim.
"""

from __future__ import annotations

import atexit

from flask import Flask, jsonify
from flask_cors import CORS

from pos_sim.config import AppConfig, load_config, validate_required_env_vars
from pos_sim.db import init_db, init_engine
from pos_sim.error_handlers import register_error_handlers
from pos_sim.logging_config import configure_logging
from pos_sim.models import Base
from pos_sim.services.session_registry import SessionRegistry
from pos_sim_api.routes import api_bp

REGISTRY_EXTENSION = "pos_sim_registry"


def create_app(
    config: AppConfig | None = None, registry: SessionRegistry | None = None
) -> Flask:
    if config is None:
        # Validate all required environment variables (fail-fast)
        validate_required_env_vars()
        config = load_config("pos-sim-api")

    app = Flask(__name__)
    configure_logging(config.app_name, config.log_level)

    # Database
    init_engine(config)
    init_db(Base.metadata)

    # Basic Config
    app.config["SECRET_KEY"] = config.secret_key
    app.config["APP_NAME"] = "POS Simulator API"
    app.config["POS_SIM_CONFIG"] = config

    if registry is None:
        registry = SessionRegistry(config)
        atexit.register(registry.shutdown)
    app.extensions[REGISTRY_EXTENSION] = registry

    app.register_blueprint(api_bp, url_prefix="/api/pos-sim")

    # Error Handlers
    register_error_handlers(app)

    # CORS
    if config.allowed_origins:
        CORS(app, resources={r"/api/*": {"origins": config.allowed_origins}})

    @app.route("/health")
    def health():
        return jsonify({"status": "ok", "service": config.app_name}), 200

    return app
