from __future__ import annotations

from fastapi import APIRouter
from sqlalchemy import text

from contractsign import __version__
from contractsign.config import get_settings
from contractsign.database import get_db_session

router = APIRouter(tags=["system"])


@router.get("/health")
def health() -> dict:
    settings = get_settings()
    return {
        "ok": True,
        "service": "contractsign",
        "version": __version__,
        "environment": settings.ENVIRONMENT,
        "schema_mode": settings.SCHEMA_MODE,
        "auth_mode": settings.AUTH_MODE,
    }


@router.get("/health/deps")
def health_deps() -> dict:
    deps: dict = {}
    overall_ok = True
    try:
        with get_db_session() as db:
            db.execute(text("SELECT 1"))
        deps["db"] = {"ok": True}
    except Exception as exc:
        deps["db"] = {"ok": False, "error": str(exc)}
        overall_ok = False

    return {
        "ok": overall_ok,
        "service": "contractsign",
        "version": __version__,
        "deps": deps,
    }
