from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db
from ..schemas import RecommendationOut, RecommendationsResponse
from ..services import recommendation_store as store
from ..utils.time import utc_now

router = APIRouter(tags=["recommendations"])


@router.get("/recommendations", response_model=RecommendationsResponse)
def list_recommendations(
    x_user_id: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    """Active, unexpired recommendations for the caller, highest priority first."""
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="missing X-User-Id")
    rows = store.get_active_recommendations(
        db, user_id, utc_now(), limit=settings.RECOMMENDATION_MAX
    )
    return RecommendationsResponse(
        user_id=user_id,
        recommendations=[RecommendationOut.from_row(r) for r in rows],
        generated_at=max((r.generated_at for r in rows), default=None),
    )
