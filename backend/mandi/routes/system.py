# Overview: Health endpoint for load balancers and deploy checks.

import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy import text

from ..extensions import db

system_bp = Blueprint("system", __name__)


@system_bp.get("/health")
def health():
    """Liveness plus a database round trip."""
    start_time = time.time()
    try:
        db.session.execute(text("SELECT 1"))
        database = {"status": "healthy", "latency_ms": round((time.time() - start_time) * 1000, 2)}
        status_code = 200
    except Exception:
        current_app.logger.exception("Database health check failed")
        database = {"status": "unhealthy", "error": "Database error"}
        status_code = 503
    return jsonify({
        "status": database["status"],
        "checks": {"database": database},
    }), status_code
