"""
OTLP/HTTP JSON receiver.

Exposes the metrics and logs export endpoints plus a liveness probe. Each
request is parsed, normalized and persisted as one atomic batch before the
response is sent.
"""

import json
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from agent_telemetry.core.normalizer import normalize_logs, normalize_metrics
from agent_telemetry.storage.db import DEFAULT_DB_PATH
from agent_telemetry.storage.repository import (
    StoreFailure,
    initialize_schema,
    insert_events,
    insert_metrics,
)

from .logging_config import install_request_logging

logger = logging.getLogger(__name__)


async def _ingest(
    request: Request,
    kind: str,
    normalize: Callable[[Any], Sequence[Any]],
    insert: Callable[[Sequence[Any], str], List[int]],
) -> Any:
    """Parse, normalize and store one export request."""
    rid = {"request_id": getattr(request.state, "request_id", "-")}
    body = await request.body()
    try:
        records = normalize(json.loads(body))
    except ValueError as e:
        logger.warning("[%s] Rejected payload: %s", kind, e, extra=rid)
        return JSONResponse(status_code=400, content={"error": str(e)})

    try:
        await run_in_threadpool(insert, records, request.app.state.db_path)
    except StoreFailure as e:
        logger.exception("[%s] Failed to store %d records", kind, len(records), extra=rid)
        return JSONResponse(status_code=500, content={"error": str(e)})

    logger.info("[%s] Received %d records", kind, len(records), extra=rid)
    return {"status": "ok", "count": len(records)}


def create_app(db_path: Optional[str] = None) -> FastAPI:
    """Build the receiver application bound to a telemetry database.

    The schema is created (idempotently) before the app is returned.
    """
    db_path = db_path or DEFAULT_DB_PATH
    initialize_schema(db_path)

    app = FastAPI(title="Agent Telemetry Receiver")
    app.state.db_path = db_path
    install_request_logging(app)

    @app.post("/v1/metrics")
    async def ingest_metrics(request: Request) -> Any:
        return await _ingest(request, "metrics", normalize_metrics, insert_metrics)

    @app.post("/v1/logs")
    async def ingest_logs(request: Request) -> Any:
        return await _ingest(request, "events", normalize_logs, insert_events)

    @app.get("/health")
    async def health() -> Dict[str, str]:
        """Lightweight health endpoint for liveness checks."""
        return {"status": "ok"}

    return app
