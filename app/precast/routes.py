from flask import Blueprint, current_app
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.precast.db import db_session

bp = Blueprint("routes", __name__)


@bp.get("/")
def index():
    return {
        "service": "precast-documents",
        "endpoints": {
            "documents": "/api/documents/",
            "folders": "/api/documents/folders",
            "workflows": "/api/documents/workflows",
            "login": "/auth/login",
        },
    }


@bp.get("/health")
def health():
    """Readiness check: confirms the database answers. Returns JSON."""
    try:
        db_session().execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        current_app.logger.error("Health check: database unreachable: %s", e)
        return {"ok": False, "database": "unreachable"}, 503
    return {"ok": True, "database": "ok"}


@bp.get("/healthz")
def healthz():
    """
    Liveness check. No DB access, minimal overhead.
    """
    return "ok", 200
