from contextlib import asynccontextmanager
import asyncio
import logging

from fastapi import FastAPI

from .config import settings
from .db import SessionLocal, init_db
from .logging import configure_logging
from .providers.chat import get_llm_client
from .routers import health, metrics, recommendations
from .services.agent_tools import ToolContext, build_registry
from .services.embedding_backfill import embedding_loop
from .services.recommendation_scheduler import recommendation_scheduler_loop

configure_logging(
    settings.LOG_LEVEL,
    json_logs=settings.APP_ENV == "prod" or settings.DEV_JSON_LOGS,
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup sequence
    init_db()
    app.state.tool_registry = build_registry(ToolContext(session_factory=SessionLocal))
    app.state._bg_tasks = []
    if settings.SCHEDULER_ENABLED:
        chat = get_llm_client()
        app.state._bg_tasks.append(
            asyncio.create_task(
                recommendation_scheduler_loop(SessionLocal, chat, app.state.tool_registry)
            )
        )
        app.state._bg_tasks.append(asyncio.create_task(embedding_loop(SessionLocal)))
        logger.info("background tasks started: %s", len(app.state._bg_tasks))
    else:
        logger.info("scheduler disabled; background tasks not started")
    try:
        yield
    finally:
        # Shutdown sequence
        for t in app.state._bg_tasks:
            t.cancel()
        if app.state._bg_tasks:
            await asyncio.gather(*app.state._bg_tasks, return_exceptions=True)


app = FastAPI(title="Budget Advisor", lifespan=lifespan)

app.include_router(health.router)
app.include_router(metrics.router)
app.include_router(recommendations.router)
