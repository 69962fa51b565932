import argparse
import asyncio
import sys

from .config import settings
from .db import SessionLocal, init_db
from .logging import configure_logging
from .providers.chat import get_llm_client
from .schemas import RecommendationOut
from .services import recommendation_scheduler as scheduler
from .services.agent_tools import ToolContext, build_registry
from .services.embedding_backfill import embed_pending_transactions
from .services.recommendation_agent import RecommendationAgent
from .utils.time import utc_iso, utc_now


def _registry():
    return build_registry(ToolContext(session_factory=SessionLocal))


def cmd_init_db(args):
    init_db()
    print("db: tables created")


def cmd_recommend(args):
    async def _run():
        with SessionLocal() as db:
            agent = RecommendationAgent(db, get_llm_client(), _registry())
            rows = await agent.generate_recommendations(args.user)
            return [RecommendationOut.from_row(r).model_dump(mode="json") for r in rows]

    recs = asyncio.run(_run())
    print({"user_id": args.user, "generated": len(recs), "recommendations": recs})


def cmd_run_cycle(args):
    stats, (expired, purged) = asyncio.run(
        scheduler.run_cycle(
            SessionLocal,
            get_llm_client(),
            _registry(),
            delay_seconds=args.delay,
        )
    )
    print(
        {
            "processed": stats.processed,
            "generated": stats.generated,
            "skipped": stats.skipped,
            "failed": stats.failed,
            "expired": expired,
            "purged": purged,
        }
    )


def cmd_housekeeping(args):
    expired, purged = scheduler.run_housekeeping(SessionLocal, utc_now(), args.retention_days)
    print({"expired": expired, "purged": purged})


def cmd_embed_pending(args):
    async def _run():
        with SessionLocal() as db:
            return await embed_pending_transactions(db, batch_size=args.batch_size)

    print({"embedded": asyncio.run(_run())})


def cmd_serve(args):
    import uvicorn

    uvicorn.run("budget_advisor.main:app", host=args.host, port=args.port, log_config=None)


def cmd_next_run(args):
    target = scheduler.next_run_at(utc_now(), settings.SCHEDULER_RUN_HOUR_UTC)
    print({"next_run": utc_iso(target)})


def main():
    configure_logging(settings.LOG_LEVEL, json_logs=settings.DEV_JSON_LOGS)
    p = argparse.ArgumentParser(prog="budget_advisor.cli")
    sub = p.add_subparsers(dest="cmd")

    sub.add_parser("init-db", help="Create database tables").set_defaults(fn=cmd_init_db)

    r = sub.add_parser("recommend", help="Generate recommendations for one user now")
    r.add_argument("--user", required=True)
    r.set_defaults(fn=cmd_recommend)

    c = sub.add_parser("run-cycle", help="Run one scheduler cycle (all users + housekeeping)")
    c.add_argument("--delay", type=float, default=None, help="Seconds between users")
    c.set_defaults(fn=cmd_run_cycle)

    h = sub.add_parser("housekeeping", help="Expire due and purge old recommendations")
    h.add_argument("--retention-days", type=int, default=None)
    h.set_defaults(fn=cmd_housekeeping)

    e = sub.add_parser("embed-pending", help="Embed recently imported transactions")
    e.add_argument("--batch-size", type=int, default=None)
    e.set_defaults(fn=cmd_embed_pending)

    sub.add_parser("next-run", help="Show the next scheduled run time").set_defaults(fn=cmd_next_run)

    s = sub.add_parser("serve", help="Run the HTTP API with uvicorn")
    s.add_argument("--host", default="0.0.0.0")
    s.add_argument("--port", type=int, default=8000)
    s.set_defaults(fn=cmd_serve)

    args = p.parse_args()
    if not getattr(args, "cmd", None):
        p.print_help()
        sys.exit(1)
    args.fn(args)


if __name__ == "__main__":
    main()
