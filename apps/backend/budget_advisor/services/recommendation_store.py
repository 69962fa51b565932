"""Persistence for generated recommendations.

Read API for the HTTP layer, the batch-replace write path used by the agent,
and the expiry/retention housekeeping used by the scheduler. All timestamps
are naive UTC.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from ..orm_models import Recommendation
from ..schemas import RecommendationPriority, RecommendationStatus, RecommendationType
from ..utils.time import to_naive_utc

log = logging.getLogger(__name__)

ACTIVE = RecommendationStatus.ACTIVE.value
EXPIRED = RecommendationStatus.EXPIRED.value


@dataclass(frozen=True)
class GeneratedRecommendation:
    """A recommendation parsed from the model's final answer, not yet stored."""

    title: str
    message: str
    type: RecommendationType
    priority: RecommendationPriority


def get_active_recommendations(
    db: Session, user_id: str, now: datetime, limit: int = 5
) -> List[Recommendation]:
    now = to_naive_utc(now)
    stmt = (
        select(Recommendation)
        .where(
            Recommendation.user_id == user_id,
            Recommendation.status == ACTIVE,
            Recommendation.expires_at > now,
        )
        .order_by(Recommendation.priority.desc(), Recommendation.generated_at.desc())
        .limit(limit)
    )
    return list(db.execute(stmt).scalars())


def last_generated_at(db: Session, user_id: str) -> Optional[datetime]:
    stmt = select(func.max(Recommendation.generated_at)).where(
        Recommendation.user_id == user_id
    )
    return db.execute(stmt).scalar()


def replace_active_batch(
    db: Session,
    user_id: str,
    items: Iterable[GeneratedRecommendation],
    now: datetime,
    ttl_days: int,
) -> List[Recommendation]:
    """Expire the user's Active batch and insert ``items`` as the new one.

    Both steps share one transaction: either the old batch is expired and the
    new one stored, or nothing changes. No-op for an empty ``items``.
    """
    items = list(items)
    if not items:
        return []
    now = to_naive_utc(now)
    expires_at = now + timedelta(days=ttl_days)
    rows = [
        Recommendation(
            user_id=user_id,
            title=item.title,
            message=item.message,
            type=item.type.value,
            priority=int(item.priority),
            generated_at=now,
            expires_at=expires_at,
            status=ACTIVE,
        )
        for item in items
    ]
    try:
        res = db.execute(
            update(Recommendation)
            .where(Recommendation.user_id == user_id, Recommendation.status == ACTIVE)
            .values(status=EXPIRED)
            .execution_options(synchronize_session="fetch")
        )
        db.add_all(rows)
        db.commit()
    except Exception:
        db.rollback()
        raise
    log.info(
        "stored %s recommendations for user %s (expired %s previous)",
        len(rows),
        user_id,
        res.rowcount or 0,
    )
    return rows


def expire_due(db: Session, now: datetime) -> int:
    """Flip Active recommendations whose ``expires_at`` has passed to Expired."""
    now = to_naive_utc(now)
    res = db.execute(
        update(Recommendation)
        .where(Recommendation.status == ACTIVE, Recommendation.expires_at <= now)
        .values(status=EXPIRED)
        .execution_options(synchronize_session="fetch")
    )
    db.commit()
    return res.rowcount or 0


def purge_older_than(db: Session, now: datetime, retention_days: int) -> int:
    """Hard-delete recommendations generated before the retention window, any status."""
    cutoff = to_naive_utc(now) - timedelta(days=retention_days)
    res = db.execute(
        delete(Recommendation)
        .where(Recommendation.generated_at < cutoff)
        .execution_options(synchronize_session="fetch")
    )
    db.commit()
    return res.rowcount or 0
