from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, List, Tuple

from sqlalchemy.orm import sessionmaker

from ...utils.time import utc_midnight, utc_now
from ..txns_store import query_transactions
from .base import AgentTool, ToolArgumentError, ToolContext, tool_ok

logger = logging.getLogger(__name__)

DATE_RANGES = ("last7days", "last30days", "last90days", "thisMonth", "lastMonth")
DEFAULT_DATE_RANGE = "last30days"
TOP_MERCHANTS = 3
_CENT = Decimal("0.01")


def _money(value: Decimal) -> float:
    return float(value.quantize(_CENT, rounding=ROUND_HALF_UP))


def resolve_date_range(date_range: str, now: datetime) -> Tuple[datetime, datetime]:
    """Half-open ``[start, end)`` naive-UTC bounds for a preset range.

    ``end`` is the midnight after today (or after the last day of the previous
    month for ``lastMonth``), so today's transactions are included.
    """
    today = utc_midnight(now)
    tomorrow = today + timedelta(days=1)
    if date_range == "last7days":
        return today - timedelta(days=7), tomorrow
    if date_range == "last90days":
        return today - timedelta(days=90), tomorrow
    if date_range == "thisMonth":
        return today.replace(day=1), tomorrow
    if date_range == "lastMonth":
        first_this = today.replace(day=1)
        first_last = (first_this - timedelta(days=1)).replace(day=1)
        return first_last, first_this
    return today - timedelta(days=30), tomorrow


class GetCategorySpendingTool(AgentTool):
    name = "GetCategorySpending"
    description = (
        "Get total spending for a specific category over a date range. Use this to quantify "
        "spending patterns and compare time periods. Returns total amount, transaction count, "
        "average transaction and top merchants. Useful for understanding spending magnitude "
        "after finding patterns with SearchTransactions. "
        "Date ranges: 'last7days', 'last30days', 'last90days', 'thisMonth', 'lastMonth'."
    )
    parameters = {
        "type": "object",
        "properties": {
            "category": {
                "type": "string",
                "description": "Category name to analyze (e.g., 'Dining', 'Entertainment', 'Shopping', 'Transportation')",
            },
            "dateRange": {
                "type": "string",
                "description": "Preset date range: 'last7days', 'last30days', 'last90days', 'thisMonth', 'lastMonth'",
                "enum": list(DATE_RANGES),
                "default": DEFAULT_DATE_RANGE,
            },
        },
        "required": ["category"],
    }

    def __init__(self, session_factory: sessionmaker, clock: Callable[[], datetime] = utc_now):
        self.session_factory = session_factory
        self.clock = clock

    async def run(self, user_id: str, arguments: Dict[str, Any]) -> str:
        category = arguments.get("category")
        if not isinstance(category, str) or not category.strip():
            raise ToolArgumentError("category is required")
        category = category.strip()
        date_range = arguments.get("dateRange") or DEFAULT_DATE_RANGE
        if date_range not in DATE_RANGES:
            logger.info("GetCategorySpending: unknown dateRange %r, using %s", date_range, DEFAULT_DATE_RANGE)
            date_range = DEFAULT_DATE_RANGE

        start, end = resolve_date_range(date_range, self.clock())
        logger.info("GetCategorySpending called: category=%s dateRange=%s", category, date_range)

        with self.session_factory() as db:
            rows = query_transactions(
                db, user_id, category=category, start=start, end=end, expenses_only=True
            )
            amounts: List[Tuple[str, Decimal]] = [
                (t.description, abs(Decimal(str(t.amount)))) for t in rows
            ]

        period = {
            "category": category,
            "dateRange": date_range,
            "startDate": start.date().isoformat(),
            "endDate": (end - timedelta(days=1)).date().isoformat(),
            "daySpan": (end - start).days,
        }
        if not amounts:
            return tool_ok(
                **period,
                totalSpending=0,
                transactionCount=0,
                averageTransaction=0,
                topMerchants=[],
                message="No transactions found in this category and date range.",
            )

        total = sum((a for _, a in amounts), Decimal("0"))
        count = len(amounts)
        by_merchant: Dict[str, List[Decimal]] = defaultdict(list)
        for desc, amt in amounts:
            by_merchant[desc].append(amt)
        merchants = sorted(
            (
                {"merchant": m, "amount": _money(sum(v, Decimal("0"))), "count": len(v)}
                for m, v in by_merchant.items()
            ),
            key=lambda x: x["amount"],
            reverse=True,
        )
        return tool_ok(
            **period,
            totalSpending=_money(total),
            transactionCount=count,
            averageTransaction=_money(total / count),
            topMerchants=merchants[:TOP_MERCHANTS],
        )


def create(context: ToolContext) -> GetCategorySpendingTool:
    return GetCategorySpendingTool(context.session_factory, clock=context.clock)
