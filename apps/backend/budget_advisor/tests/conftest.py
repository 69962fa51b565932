import os

# Keep the environment hermetic before any budget_advisor module reads settings
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SCHEDULER_ENABLED"] = "0"
os.environ["DEV_ALLOW_NO_LLM"] = "0"
os.environ.setdefault("APP_ENV", "test")

from datetime import datetime
from typing import Optional

import pytest
from sqlalchemy.orm import sessionmaker

from budget_advisor.db import Base, make_engine
from budget_advisor.orm_models import Transaction
from budget_advisor.services.agent_tools import ToolContext, build_registry
from budget_advisor.services.semantic_search import SemanticSearchService
from budget_advisor.tests.fakes import NOW, fake_embed, keyword_vector
from budget_advisor.utils.vectors import pack_vec


@pytest.fixture
def engine():
    eng = make_engine("sqlite://")
    Base.metadata.create_all(bind=eng)
    try:
        yield eng
    finally:
        eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(
        bind=engine, autoflush=False, autocommit=False, future=True, expire_on_commit=False
    )


@pytest.fixture
def db(session_factory):
    s = session_factory()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def add_txn(session_factory):
    """Insert a transaction; embeds it with ``keyword_vector`` unless ``embed=False``."""

    def _add(
        user_id: str = "u1",
        description: str = "Coffee Shop",
        amount: float = -4.5,
        date: Optional[datetime] = None,
        category: Optional[str] = None,
        account: str = "Checking",
        imported_at: Optional[datetime] = None,
        embed: bool = True,
    ) -> Transaction:
        txn = Transaction(
            user_id=user_id,
            date=date or NOW,
            description=description,
            amount=amount,
            category=category,
            account=account,
            imported_at=imported_at or datetime(2025, 9, 1, 8, 0, 0),
        )
        if embed:
            txn.embedding = pack_vec(keyword_vector(txn.embedding_text))
        with session_factory() as s:
            s.add(txn)
            s.commit()
            s.expunge(txn)
        return txn

    return _add


@pytest.fixture
def search_service(session_factory):
    return SemanticSearchService(session_factory, embed=fake_embed)


@pytest.fixture
def registry(session_factory, search_service):
    return build_registry(
        ToolContext(session_factory=session_factory, search=search_service, clock=lambda: NOW)
    )
