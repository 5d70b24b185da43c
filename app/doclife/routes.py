from flask import Blueprint, current_app
from sqlalchemy import text

from app.doclife.db import db_session

bp = Blueprint("routes", __name__)


@bp.get("/health")
def health():
    """Health check endpoint with a database round-trip. Returns JSON."""
    s = db_session()
    try:
        s.execute(text("SELECT 1"))
    except Exception as e:
        current_app.logger.exception("Health check DB ping failed: %s", e)
        return {"ok": False, "database": "unreachable"}, 503
    return {"ok": True, "database": "ok"}


@bp.get("/healthz")
def healthz():
    """
    Fast health check for probes. No DB access, minimal overhead.
    """
    return "ok", 200
