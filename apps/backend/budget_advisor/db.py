import os

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import make_url
from sqlalchemy.pool import StaticPool
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from .config import settings


class Base(DeclarativeBase):
    """SQLAlchemy Declarative Base."""

    pass


def _connect_args(url: str):
    # For SQLite, disable same-thread check
    return {"check_same_thread": False} if url.startswith("sqlite") else {}


def _is_memory_sqlite(url: str) -> bool:
    return url.startswith("sqlite") and (":memory:" in url or url == "sqlite://")


def make_engine(url: str):
    kwargs = dict(
        connect_args=_connect_args(url),
        pool_pre_ping=True,
        future=True,
        echo=False,
    )
    # Apply sensible pooling defaults for non-SQLite engines to avoid stale connections
    if not url.startswith("sqlite"):
        kwargs.update(dict(pool_recycle=1800, pool_size=5, max_overflow=10))
    if _is_memory_sqlite(url):
        # Share the same in-memory DB across connections (tests + background tasks)
        kwargs["poolclass"] = StaticPool
    eng = create_engine(url, **kwargs)

    if url.startswith("sqlite") and not _is_memory_sqlite(url):
        path = make_url(url).database
        if path and os.path.dirname(path):
            os.makedirs(os.path.dirname(path), exist_ok=True)

        @event.listens_for(eng, "connect")
        def _sqlite_pragma(dbapi_conn, _):
            cur = dbapi_conn.cursor()
            cur.execute("PRAGMA journal_mode=WAL;")
            cur.execute("PRAGMA synchronous=NORMAL;")
            cur.close()

    return eng


engine = make_engine(settings.DATABASE_URL)

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


def is_postgres(db) -> bool:
    """True when ``db`` (a Session, Engine or Connection) talks to PostgreSQL."""
    try:
        bind = db.get_bind() if hasattr(db, "get_bind") else db
        return (getattr(bind.dialect, "name", None) or "").startswith("postgres")
    except Exception:
        return False


def ensure_pgvector_schema(conn, dim: int) -> None:
    """pgvector extension, ``transactions.embedding_vec`` column and its HNSW index."""
    conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
    conn.execute(
        text(f"ALTER TABLE transactions ADD COLUMN IF NOT EXISTS embedding_vec vector({int(dim)})")
    )
    conn.execute(
        text(
            "CREATE INDEX IF NOT EXISTS ix_transactions_embedding_hnsw "
            "ON transactions USING hnsw (embedding_vec vector_cosine_ops) "
            "WITH (m=16, ef_construction=64)"
        )
    )


def init_db(bind=None) -> None:
    """Create tables for every registered model (plus the vector column on Postgres)."""
    from . import orm_models  # noqa: F401

    bind = bind or engine
    Base.metadata.create_all(bind=bind)
    if is_postgres(bind):
        with bind.begin() as conn:
            ensure_pgvector_schema(conn, settings.EMBED_DIM)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
