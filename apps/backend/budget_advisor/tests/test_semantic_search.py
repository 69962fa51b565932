from datetime import datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from budget_advisor import config as cfg
from budget_advisor.db import ensure_pgvector_schema, is_postgres
from budget_advisor.orm_models import Transaction
from budget_advisor.services.embedding_backfill import store_embedding
from budget_advisor.services.semantic_search import SemanticSearchService
from budget_advisor.utils.vectors import coerce_vec, vec_literal


def _pg_session():
    db = MagicMock()
    db.get_bind.return_value.dialect.name = "postgresql"
    db.__enter__.return_value = db
    return db


def _txn(txn_id, description):
    return Transaction(
        id=txn_id,
        user_id="u1",
        date=datetime(2025, 9, 1),
        description=description,
        amount=-9.99,
        category="Entertainment",
        account="checking",
    )


def _sql(call):
    return " ".join(str(call.args[0]).split())


def test_sqlite_session_is_not_postgres(db, engine):
    assert is_postgres(db) is False
    assert is_postgres(engine) is False
    assert is_postgres(_pg_session()) is True


@pytest.mark.asyncio
async def test_postgres_search_ranks_in_sql_scoped_to_user(monkeypatch):
    monkeypatch.setattr(cfg.settings, "EMBED_DIM", 3, raising=False)
    txns = {"t1": _txn("t1", "Netflix"), "t2": _txn("t2", "Spotify")}
    db = _pg_session()
    db.execute.return_value.fetchall.return_value = [
        SimpleNamespace(id="t2", distance=0.1),
        SimpleNamespace(id="t1", distance=0.35),
    ]
    db.get.side_effect = lambda model, txn_id: txns[txn_id]
    embed = AsyncMock(return_value=[[0.6, 0.8, 0.0]])
    service = SemanticSearchService(lambda: db, embed=embed)

    hits = await service.search("u1", "music subscription", max_results=3)

    assert [h.transaction.description for h in hits] == ["Spotify", "Netflix"]
    assert [h.distance for h in hits] == [0.1, 0.35]
    assert hits[0].similarity == pytest.approx(0.9)

    call = db.execute.call_args
    sql = _sql(call)
    assert "ORDER BY t.embedding_vec <=> CAST(:qvec AS vector)" in sql
    assert "t.user_id = :uid" in sql
    assert "t.embedding IS NOT NULL" in sql
    assert sql.endswith("LIMIT :n")
    assert call.args[1] == {"qvec": vec_literal([0.6, 0.8, 0.0]), "uid": "u1", "n": 3}
    assert db.expunge.call_count == 2


@pytest.mark.asyncio
async def test_postgres_search_skips_query_with_wrong_dimension(monkeypatch):
    monkeypatch.setattr(cfg.settings, "EMBED_DIM", 768, raising=False)
    db = _pg_session()
    service = SemanticSearchService(lambda: db, embed=AsyncMock(return_value=[[0.6, 0.8, 0.0]]))

    assert await service.search("u1", "coffee") == []
    db.execute.assert_not_called()


def test_vec_literal_is_pgvector_text():
    assert vec_literal([0.5, -1, 0.25]) == "[0.5000000,-1.0000000,0.2500000]"


def test_store_embedding_writes_vector_column_on_postgres(monkeypatch):
    monkeypatch.setattr(cfg.settings, "EMBED_DIM", 2, raising=False)
    db = _pg_session()
    txn = _txn("t1", "Netflix")

    store_embedding(db, txn, [0.6, 0.8])

    assert coerce_vec(txn.embedding) == pytest.approx([0.6, 0.8])
    call = db.execute.call_args
    assert _sql(call) == "UPDATE transactions SET embedding_vec = CAST(:vec AS vector) WHERE id = :id"
    assert call.args[1] == {"vec": "[0.6000000,0.8000000]", "id": "t1"}


def test_store_embedding_skips_vector_column_on_dimension_mismatch(monkeypatch):
    monkeypatch.setattr(cfg.settings, "EMBED_DIM", 768, raising=False)
    db = _pg_session()
    txn = _txn("t1", "Netflix")

    store_embedding(db, txn, [0.6, 0.8])

    assert txn.embedding is not None
    db.execute.assert_not_called()


def test_store_embedding_on_sqlite_only_packs_blob(db):
    txn = _txn("t1", "Netflix")
    store_embedding(db, txn, [1.0, 0.0])
    assert coerce_vec(txn.embedding) == [1.0, 0.0]


def test_pgvector_schema_adds_column_and_hnsw_index():
    conn = MagicMock()
    ensure_pgvector_schema(conn, 1536)
    statements = [_sql(c) for c in conn.execute.call_args_list]
    assert statements[0] == "CREATE EXTENSION IF NOT EXISTS vector"
    assert "ADD COLUMN IF NOT EXISTS embedding_vec vector(1536)" in statements[1]
    assert "USING hnsw (embedding_vec vector_cosine_ops)" in statements[2]
