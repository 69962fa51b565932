from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db

router = APIRouter(tags=["health"])


def _db_ping(db: Session) -> bool:
    try:
        db.execute(text("SELECT 1"))
        return True
    except Exception:
        return False


@router.get("/healthz")
def healthz(db: Session = Depends(get_db)):
    db_ok = _db_ping(db)
    return {
        "ok": db_ok,
        "status": "ok" if db_ok else "degraded",
        "db": db_ok,
        "env": settings.APP_ENV,
        "scheduler_enabled": settings.SCHEDULER_ENABLED,
    }
