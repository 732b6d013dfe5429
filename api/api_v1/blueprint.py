from flask import Blueprint

from api.api_v1.admin import admin_v1_bp
from api.api_v1.changes import changes_v1_bp
from api.api_v1.curation import curation_v1_bp
from api.api_v1.entities import entities_v1_bp


def create_api_v1_blueprint(
    *, enable_admin: bool = True, enable_curation: bool = True
) -> Blueprint:
    """Create the /v1 blueprint and register sub-blueprints (respecting feature flags)."""

    v1_bp = Blueprint("api_v1", __name__, url_prefix="/v1")
    v1_bp.register_blueprint(entities_v1_bp)
    v1_bp.register_blueprint(changes_v1_bp)

    if enable_curation:
        v1_bp.register_blueprint(curation_v1_bp)

    if enable_admin:
        v1_bp.register_blueprint(admin_v1_bp)

    return v1_bp
