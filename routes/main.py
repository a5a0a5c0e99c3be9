"""
Main routes (health check).
"""

from flask import Blueprint, current_app

main_bp = Blueprint("main", __name__)


@main_bp.route("/health", methods=["GET"])
def health():
    """
    Health check endpoint.

    Reports engine lifecycle, connectivity, queue and cache state. Returns
    503 when the engine has not been started.
    """
    engine = current_app.config.get("SCAN_ENGINE")
    if engine is None:
        return {"status": "unavailable", "message": "Scan engine not configured"}, 503

    details = engine.health()
    healthy = details["engine_started"]
    details["status"] = "ok" if healthy else "stopped"
    return details, 200 if healthy else 503
