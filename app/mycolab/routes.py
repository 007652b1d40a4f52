from flask import Blueprint, jsonify

from app.mycolab.security import ensure_csrf_token

bp = Blueprint("routes", __name__)


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON."""
    return {"ok": True}


@bp.get("/healthz")
def healthz():
    """
    Fast health check for load balancer probes. No DB access, minimal overhead.
    """
    return "ok", 200


@bp.get("/csrf-token")
def csrf_token():
    """Token for the X-CSRF-Token header on mutating API calls."""
    return jsonify({"csrf_token": ensure_csrf_token()})
