"""
POS Simulator API - Modular Blueprint Structure

Session endpoints drive the host and the customer viewer; receipt endpoints
proxy the trusted receipt backend.
"""

from flask import Blueprint, current_app, request

from pos_sim.config import AppConfig
from pos_sim.errors import FeatureDisabledError
from pos_sim.services.session_registry import SessionRegistry

# Create main API blueprint
api_bp = Blueprint("pos_sim_api", __name__)


def get_registry() -> SessionRegistry:
    return current_app.extensions["pos_sim_registry"]


def get_config() -> AppConfig:
    return current_app.config["POS_SIM_CONFIG"]


@api_bp.before_request
def require_feature_gate():
    if request.endpoint == "pos_sim_api.health_check":
        return None
    if not get_config().pos_sim_enabled:
        raise FeatureDisabledError("POS simulator not enabled")
    return None


# Import and register sub-blueprints
from .receipts import receipts_bp  # noqa: E402
from .sessions import sessions_bp  # noqa: E402

api_bp.register_blueprint(sessions_bp)
api_bp.register_blueprint(receipts_bp)


# Health check endpoint
@api_bp.get("/health")
def health_check():
    """Simple health check endpoint"""
    return {"status": "ok", "service": "pos-sim", "enabled": get_config().pos_sim_enabled}, 200
