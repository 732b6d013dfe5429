from flask import Blueprint, jsonify

from api.api_v1.blueprint import create_api_v1_blueprint


def create_api_blueprint(
    *, enable_admin: bool = True, enable_curation: bool = True
) -> Blueprint:
    """Create the main API blueprint and register versioned APIs.

    Keep this as the single registration point to avoid double-registering routes.
    """
    api_bp = Blueprint("api", __name__)

    @api_bp.get("/healthz")
    def healthz():
        return jsonify({"status": "ok"})

    api_bp.register_blueprint(
        create_api_v1_blueprint(enable_admin=enable_admin, enable_curation=enable_curation)
    )

    return api_bp
