import sqlite3

import anyio
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from ..logging import logger
from ..metrics import registry

router = APIRouter(tags=["health"])


@router.get("/healthz")
async def health_check(request: Request) -> JSONResponse:
    """Report whether the history store is reachable.

    クライアントの `HttpConnectivityProbe` はこのエンドポイントの 5xx をオフラインと
    みなすため、ストアに到達できない場合は 503 を返す。
    """

    try:
        await anyio.to_thread.run_sync(request.app.state.store.ping)
    except sqlite3.Error as exc:
        logger.error("health_check_failed", error=repr(exc))
        return JSONResponse(status_code=503, content={"status": "unavailable", "store": "error"})
    return JSONResponse(content={"status": "ok", "store": "ok"})


@router.get("/metrics")
def metrics() -> JSONResponse:
    """Per-path p95 latency, request count and 5xx count."""
    return JSONResponse(content={"paths": registry.snapshot()})
