from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session

from chartflow import __version__
from chartflow.config import get_settings
from chartflow.database import get_db

router = APIRouter(tags=["system"])


@router.get("/health")
def health(db: Session = Depends(get_db)) -> dict:
    settings = get_settings()
    db_ok = True
    error = None
    try:
        db.execute(text("SELECT 1"))
    except Exception as exc:
        db_ok = False
        error = str(exc)
    payload = {
        "ok": db_ok,
        "service": "chartflow",
        "version": __version__,
        "environment": settings.ENVIRONMENT,
        "schema_mode": settings.SCHEMA_MODE,
        "db": {"ok": db_ok},
    }
    if error:
        payload["db"]["error"] = error
    return payload
