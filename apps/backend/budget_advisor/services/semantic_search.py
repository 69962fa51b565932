"""Semantic search over a user's embedded transactions.

The query is embedded into the same space as the stored transaction vectors.
On PostgreSQL the ranking runs in SQL against the pgvector ``embedding_vec``
column (cosine operator ``<=>``, HNSW index); elsewhere every eligible row
is ranked by cosine distance in Python. Rows without an embedding are
invisible until ``embedding_backfill`` has processed them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List

from sqlalchemy import text
from sqlalchemy.orm import Session, sessionmaker

from ..config import settings
from ..db import is_postgres
from ..orm_models import Transaction
from ..providers.embeddings import embed_texts
from ..utils.vectors import coerce_vec, cosine_distance, vec_literal
from .txns_store import embedded_transactions, to_projection

logger = logging.getLogger(__name__)

EmbedFn = Callable[..., Awaitable[List[List[float]]]]

_PG_RANK_SQL = text(
    """
    SELECT t.id, (t.embedding_vec <=> CAST(:qvec AS vector)) AS distance
    FROM transactions t
    WHERE t.user_id = :uid
      AND t.embedding IS NOT NULL
      AND t.embedding_vec IS NOT NULL
    ORDER BY t.embedding_vec <=> CAST(:qvec AS vector)
    LIMIT :n
    """
)


@dataclass
class SearchHit:
    transaction: Transaction
    distance: float

    @property
    def similarity(self) -> float:
        return 1.0 - self.distance

    def to_dict(self) -> Dict[str, Any]:
        d = to_projection(self.transaction)
        d["similarity"] = round(self.similarity, 4)
        return d


class SemanticSearchService:
    def __init__(self, session_factory: sessionmaker, embed: EmbedFn = embed_texts):
        self.session_factory = session_factory
        self.embed = embed

    async def _embed_query(self, query: str) -> List[float]:
        try:
            vectors = await self.embed([query], input_type="query")
        except Exception as e:
            logger.warning("semantic_search: query embedding failed: %s", e)
            return []
        return vectors[0] if vectors else []

    async def search(self, user_id: str, query: str, max_results: int = 10) -> List[SearchHit]:
        """Top ``max_results`` transactions of ``user_id`` closest to ``query``, most similar first."""
        if not query or not query.strip() or max_results <= 0:
            return []
        qvec = await self._embed_query(query)
        if not qvec:
            return []

        with self.session_factory() as db:
            if is_postgres(db):
                hits = rank_transactions_pg(db, user_id, qvec, max_results)
            else:
                hits = rank_transactions(db, user_id, qvec)[:max_results]
            # Detach rows so callers can read attributes after the session closes
            for h in hits:
                db.expunge(h.transaction)
        return hits


def rank_transactions(db: Session, user_id: str, qvec: List[float]) -> List[SearchHit]:
    scored: List[SearchHit] = []
    for txn in embedded_transactions(db, user_id):
        emb = coerce_vec(txn.embedding)
        if not emb or len(emb) != len(qvec):
            continue
        scored.append(SearchHit(transaction=txn, distance=cosine_distance(qvec, emb)))
    scored.sort(key=lambda h: h.distance)
    return scored


def rank_transactions_pg(
    db: Session, user_id: str, qvec: List[float], limit: int
) -> List[SearchHit]:
    """Nearest ``limit`` rows by pgvector cosine distance."""
    if len(qvec) != settings.EMBED_DIM:
        logger.warning(
            "semantic_search: query dimension %s does not match embedding_vec(%s)",
            len(qvec),
            settings.EMBED_DIM,
        )
        return []
    rows = db.execute(
        _PG_RANK_SQL, {"qvec": vec_literal(qvec), "uid": user_id, "n": limit}
    ).fetchall()
    hits: List[SearchHit] = []
    for r in rows:
        txn = db.get(Transaction, r.id)
        if txn is not None:
            hits.append(SearchHit(transaction=txn, distance=float(r.distance)))
    return hits
