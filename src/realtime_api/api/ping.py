"""Liveness and readiness probes."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from ..service import ServiceRuntime
from .deps import get_runtime

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ping", tags=["ping"])


@router.get("/liveness")
def liveness() -> dict:
    return {"message": "pong"}


@router.get("/readiness")
async def readiness(runtime: ServiceRuntime = Depends(get_runtime)):
    repository = runtime.repository
    if repository is None or not runtime.running:
        return JSONResponse(status_code=503, content={"message": "Database not ready"})
    try:
        ok = await run_in_threadpool(repository.ping)
    except Exception as exc:  # noqa: BLE001 - any failure means not ready
        logger.warning("readiness check failed: %s", exc)
        ok = False
    if not ok:
        return JSONResponse(status_code=503, content={"message": "Database not ready"})
    return {"message": "pong"}
