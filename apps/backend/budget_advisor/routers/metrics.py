from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

router = APIRouter(tags=["metrics"])


@router.get("/metrics")
async def metrics() -> Response:  # pragma: no cover simple exposition
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
