from __future__ import annotations

from datetime import datetime
from enum import Enum, IntEnum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class RecommendationType(str, Enum):
    SPENDING_ALERT = "SpendingAlert"
    SAVINGS_OPPORTUNITY = "SavingsOpportunity"
    BEHAVIORAL_INSIGHT = "BehavioralInsight"
    BUDGET_WARNING = "BudgetWarning"

    @classmethod
    def parse(cls, value: object) -> "RecommendationType":
        """Case-insensitive lookup; unknown values map to BehavioralInsight."""
        if isinstance(value, str):
            key = value.strip().lower()
            for member in cls:
                if member.value.lower() == key:
                    return member
        return cls.BEHAVIORAL_INSIGHT


class RecommendationPriority(IntEnum):
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4

    @property
    def label(self) -> str:
        return self.name.capitalize()

    @classmethod
    def parse(cls, value: object) -> "RecommendationPriority":
        """Case-insensitive lookup by label; unknown values map to Medium."""
        if isinstance(value, str):
            key = value.strip().upper()
            if key in cls.__members__:
                return cls[key]
        return cls.MEDIUM


class RecommendationStatus(str, Enum):
    ACTIVE = "Active"
    EXPIRED = "Expired"


class RecommendationOut(BaseModel):
    """A single recommendation as returned by the read API."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    message: str
    type: RecommendationType
    priority: str
    generated_at: datetime
    expires_at: datetime

    @classmethod
    def from_row(cls, row) -> "RecommendationOut":
        return cls(
            id=row.id,
            title=row.title,
            message=row.message,
            type=RecommendationType(row.type),
            priority=RecommendationPriority(row.priority).label,
            generated_at=row.generated_at,
            expires_at=row.expires_at,
        )


class RecommendationsResponse(BaseModel):
    user_id: str
    recommendations: List[RecommendationOut]
    generated_at: Optional[datetime] = None
