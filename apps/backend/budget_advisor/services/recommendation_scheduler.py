"""Daily background recommendation generation plus housekeeping.

Once a day at ``SCHEDULER_RUN_HOUR_UTC`` the loop walks every user with
transactions, one at a time with a short pause between users to keep
provider rate limits happy, then expires and purges old recommendations.
One user's failure never stops the batch.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional, Tuple

from sqlalchemy.orm import sessionmaker

from ..config import settings
from ..metrics import recommendation_scheduler_users_total
from ..providers.chat import ChatProvider
from ..utils.time import to_naive_utc, utc_now
from . import recommendation_store as store
from .agent_tools import ToolRegistry
from .recommendation_agent import RecommendationAgent
from .txns_store import users_with_transactions

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[Any]]


@dataclass
class BatchStats:
    processed: int = 0
    generated: int = 0
    skipped: int = 0
    failed: int = 0


def next_run_at(now: datetime, hour: int) -> datetime:
    """Next ``hour:00`` UTC strictly after ``now`` (naive UTC)."""
    now = to_naive_utc(now)
    candidate = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


async def process_all_users(
    session_factory: sessionmaker,
    chat: ChatProvider,
    registry: ToolRegistry,
    delay_seconds: Optional[float] = None,
    sleep: SleepFn = asyncio.sleep,
    clock: Callable[[], datetime] = utc_now,
    **agent_options: Any,
) -> BatchStats:
    delay = settings.SCHEDULER_USER_DELAY_S if delay_seconds is None else delay_seconds
    with session_factory() as db:
        user_ids = users_with_transactions(db)
    logger.info("recommendation batch starting for %s users", len(user_ids))

    stats = BatchStats()
    for i, user_id in enumerate(user_ids):
        if i > 0 and delay > 0:
            await sleep(delay)
        stats.processed += 1
        try:
            with session_factory() as db:
                agent = RecommendationAgent(db, chat, registry, clock=clock, **agent_options)
                rows = await agent.generate_recommendations(user_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            stats.failed += 1
            recommendation_scheduler_users_total.labels(result="failed").inc()
            logger.exception("recommendation generation failed for user %s", user_id)
            continue
        recommendation_scheduler_users_total.labels(result="ok").inc()
        if rows:
            stats.generated += 1
        else:
            stats.skipped += 1

    logger.info(
        "recommendation batch done: processed=%s generated=%s skipped=%s failed=%s",
        stats.processed,
        stats.generated,
        stats.skipped,
        stats.failed,
    )
    return stats


def run_housekeeping(
    session_factory: sessionmaker, now: datetime, retention_days: Optional[int] = None
) -> Tuple[int, int]:
    """Expire due recommendations, then purge ones past retention."""
    retention = settings.RECOMMENDATION_RETENTION_DAYS if retention_days is None else retention_days
    with session_factory() as db:
        expired = store.expire_due(db, now)
        purged = store.purge_older_than(db, now, retention)
    logger.info("recommendation housekeeping: expired=%s purged=%s", expired, purged)
    return expired, purged


async def run_cycle(
    session_factory: sessionmaker,
    chat: ChatProvider,
    registry: ToolRegistry,
    delay_seconds: Optional[float] = None,
    sleep: SleepFn = asyncio.sleep,
    clock: Callable[[], datetime] = utc_now,
    retention_days: Optional[int] = None,
    **agent_options: Any,
) -> Tuple[BatchStats, Tuple[int, int]]:
    stats = await process_all_users(
        session_factory,
        chat,
        registry,
        delay_seconds=delay_seconds,
        sleep=sleep,
        clock=clock,
        **agent_options,
    )
    housekeeping = run_housekeeping(session_factory, clock(), retention_days)
    return stats, housekeeping


async def recommendation_scheduler_loop(
    session_factory: sessionmaker,
    chat: ChatProvider,
    registry: ToolRegistry,
    run_hour_utc: Optional[int] = None,
    backoff_seconds: Optional[float] = None,
    sleep: SleepFn = asyncio.sleep,
    clock: Callable[[], datetime] = utc_now,
) -> None:
    """Background task: run a cycle once a day until cancelled."""
    hour = settings.SCHEDULER_RUN_HOUR_UTC if run_hour_utc is None else run_hour_utc
    hour = min(max(int(hour), 0), 23)
    backoff = settings.SCHEDULER_ERROR_BACKOFF_S if backoff_seconds is None else backoff_seconds
    logger.info("recommendation scheduler started (daily at %02d:00 UTC)", hour)
    retry_pending = False
    while True:
        try:
            if not retry_pending:
                now = to_naive_utc(clock())
                target = next_run_at(now, hour)
                wait = (target - now).total_seconds()
                logger.info("next recommendation run at %sZ (in %.0fs)", target.isoformat(), wait)
                await sleep(wait)
            retry_pending = False
            await run_cycle(session_factory, chat, registry, sleep=sleep, clock=clock)
        except asyncio.CancelledError:
            logger.info("recommendation scheduler stopping")
            raise
        except Exception as e:
            logger.warning("recommendation scheduler error: %s; retrying in %ss", e, backoff)
            retry_pending = True
            await sleep(backoff)
