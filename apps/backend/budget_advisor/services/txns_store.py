"""Read access to the transaction store.

Thin query helpers over ``orm_models.Transaction``; the import pipeline owns
writes (apart from the embedding column, see ``embedding_backfill``).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..orm_models import Transaction


def query_transactions(
    db: Session,
    user_id: str,
    *,
    category: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    text: Optional[str] = None,
    expenses_only: bool = False,
    limit: Optional[int] = None,
) -> List[Transaction]:
    """Transactions for ``user_id`` filtered by category, ``[start, end)`` and description text."""
    stmt = select(Transaction).where(Transaction.user_id == user_id)
    if category is not None:
        stmt = stmt.where(Transaction.category == category)
    if start is not None:
        stmt = stmt.where(Transaction.date >= start)
    if end is not None:
        stmt = stmt.where(Transaction.date < end)
    if text:
        stmt = stmt.where(Transaction.description.ilike(f"%{text}%"))
    if expenses_only:
        stmt = stmt.where(Transaction.amount < 0)
    stmt = stmt.order_by(Transaction.date.desc())
    if limit:
        stmt = stmt.limit(limit)
    return list(db.execute(stmt).scalars())


def embedded_transactions(db: Session, user_id: str) -> List[Transaction]:
    """Rows eligible for semantic search (embedding already computed)."""
    stmt = select(Transaction).where(
        Transaction.user_id == user_id,
        Transaction.embedding.is_not(None),
    )
    return list(db.execute(stmt).scalars())


def count_transactions(db: Session, user_id: str) -> int:
    stmt = select(func.count()).select_from(Transaction).where(Transaction.user_id == user_id)
    return int(db.execute(stmt).scalar() or 0)


def last_imported_at(db: Session, user_id: str) -> Optional[datetime]:
    stmt = select(func.max(Transaction.imported_at)).where(Transaction.user_id == user_id)
    return db.execute(stmt).scalar()


def users_with_transactions(db: Session) -> List[str]:
    stmt = select(Transaction.user_id).distinct().order_by(Transaction.user_id)
    return [uid for uid in db.execute(stmt).scalars() if uid]


def to_projection(txn: Transaction) -> Dict[str, Any]:
    """Minimal projection handed to the model."""
    return {
        "id": txn.id,
        "date": txn.date.date().isoformat() if txn.date else None,
        "description": txn.description,
        "amount": round(float(txn.amount), 2),
        "category": txn.category,
        "account": txn.account,
    }
