from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    String,
    Integer,
    Float,
    DateTime,
    Text,
    LargeBinary,
    Index,
)
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base
from .schemas import RecommendationStatus
from .utils.time import utc_now, to_naive_utc


def _new_id() -> str:
    return str(uuid.uuid4())


def _now_naive() -> datetime:
    return to_naive_utc(utc_now())


class Transaction(Base):
    """Read-side projection of an imported transaction.

    Rows are written by the import pipeline; this package only reads them and
    fills in ``embedding`` (packed float32, see ``utils.vectors``).
    """

    __tablename__ = "transactions"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(128), index=True)
    date: Mapped[datetime] = mapped_column(DateTime, index=True)
    description: Mapped[str] = mapped_column(String(500))
    amount: Mapped[float] = mapped_column(Float)
    category: Mapped[str | None] = mapped_column(String(100), index=True, nullable=True)
    account: Mapped[str] = mapped_column(String(100), default="")
    imported_at: Mapped[datetime] = mapped_column(DateTime, default=_now_naive, index=True)
    embedding: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)

    __table_args__ = (Index("ix_transactions_user_date", "user_id", "date"),)

    @property
    def embedding_text(self) -> str:
        """Text fed to the embedding model: description plus category hint."""
        if self.category:
            return f"{self.description} [{self.category}]"
        return self.description


class Recommendation(Base):
    __tablename__ = "recommendations"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(128), index=True)
    title: Mapped[str] = mapped_column(String(200))
    message: Mapped[str] = mapped_column(Text)
    type: Mapped[str] = mapped_column(String(32))
    # RecommendationPriority value; integer so ORDER BY follows Low < ... < Critical
    priority: Mapped[int] = mapped_column(Integer)
    generated_at: Mapped[datetime] = mapped_column(DateTime, default=_now_naive, index=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime)
    status: Mapped[str] = mapped_column(
        String(16), default=RecommendationStatus.ACTIVE.value
    )

    __table_args__ = (Index("ix_recommendations_user_status", "user_id", "status"),)

    def __repr__(self) -> str:  # pragma: no cover - debug aid
        return f"<Recommendation {self.id} user={self.user_id} status={self.status}>"
