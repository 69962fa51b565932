"""Background embedding generation for newly imported transactions.

Runs periodically (default every 2 minutes), embedding recent rows that have
no vector yet so they become visible to semantic search.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import List, Optional

from sqlalchemy import select, text
from sqlalchemy.orm import Session, sessionmaker

from ..config import settings
from ..db import is_postgres
from ..metrics import embedding_backfill_total
from ..orm_models import Transaction
from ..providers.embeddings import embed_texts
from ..utils.time import to_naive_utc, utc_now
from ..utils.vectors import pack_vec, vec_literal
from .semantic_search import EmbedFn

log = logging.getLogger(__name__)


def store_embedding(db: Session, txn: Transaction, vec: List[float]) -> None:
    """Save ``vec`` on ``txn``; Postgres also gets the pgvector copy used for ranking."""
    txn.embedding = pack_vec(vec)
    if not is_postgres(db):
        return
    if len(vec) != settings.EMBED_DIM:
        log.warning(
            "embedding backfill: transaction %s vector has %s dims, embedding_vec expects %s",
            txn.id,
            len(vec),
            settings.EMBED_DIM,
        )
        return
    db.execute(
        text("UPDATE transactions SET embedding_vec = CAST(:vec AS vector) WHERE id = :id"),
        {"vec": vec_literal(vec), "id": txn.id},
    )


async def embed_pending_transactions(
    db: Session,
    embed: EmbedFn = embed_texts,
    batch_size: Optional[int] = None,
    lookback_hours: Optional[int] = None,
) -> int:
    """Embed up to ``batch_size`` recent rows lacking an embedding. Returns rows embedded."""
    batch_size = batch_size or settings.EMBED_BATCH_SIZE
    lookback_hours = lookback_hours or settings.EMBED_BACKFILL_LOOKBACK_HOURS
    cutoff = to_naive_utc(utc_now()) - timedelta(hours=lookback_hours)
    stmt = (
        select(Transaction)
        .where(Transaction.embedding.is_(None), Transaction.imported_at >= cutoff)
        .order_by(Transaction.imported_at.desc())
        .limit(batch_size)
    )
    pending = list(db.execute(stmt).scalars())
    if not pending:
        log.debug("embedding backfill: nothing to do")
        return 0

    ok = errors = 0
    for txn in pending:
        try:
            [vec] = await embed([txn.embedding_text], input_type="passage")
        except Exception as e:
            errors += 1
            embedding_backfill_total.labels(result="error").inc()
            log.warning(
                "embedding backfill: failed for transaction %s (%s): %s",
                txn.id,
                (txn.description or "")[:50],
                e,
            )
            continue
        store_embedding(db, txn, vec)
        ok += 1
        embedding_backfill_total.labels(result="ok").inc()

    if ok:
        db.commit()
        log.info("embedding backfill: embedded %s transactions, %s errors", ok, errors)
    return ok


async def embedding_loop(
    session_factory: sessionmaker,
    interval_seconds: Optional[int] = None,
    embed: EmbedFn = embed_texts,
) -> None:
    interval_seconds = interval_seconds or settings.EMBED_BACKFILL_INTERVAL_S
    log.info("embedding backfill loop started (every %ss)", interval_seconds)
    while True:
        try:
            with session_factory() as db:
                await embed_pending_transactions(db, embed)
        except asyncio.CancelledError:
            log.info("embedding backfill loop stopping")
            raise
        except Exception as e:
            log.error("embedding backfill error: %s", e)
        await asyncio.sleep(interval_seconds)
