"""FastAPI application factory."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST

from ..config import Settings, load_settings
from ..db.users import DuplicateEmail, RepositoryError
from ..service import ServiceRuntime
from . import ping, users, ws


def create_app(
    settings: Optional[Settings] = None,
    *,
    runtime: Optional[ServiceRuntime] = None,
) -> FastAPI:
    """Build the app; the runtime starts and stops with the ASGI lifespan."""

    if runtime is None:
        runtime = ServiceRuntime(settings or load_settings())
    settings = runtime.settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await runtime.startup()
        try:
            yield
        finally:
            await runtime.shutdown()

    app = FastAPI(title="realtime-api", lifespan=lifespan)
    app.state.runtime = runtime
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(DuplicateEmail)
    async def _duplicate_email(request: Request, exc: DuplicateEmail):
        return JSONResponse(status_code=409, content={"message": str(exc)})

    @app.exception_handler(RepositoryError)
    async def _repository_error(request: Request, exc: RepositoryError):
        return JSONResponse(status_code=500, content={"message": "Database error"})

    @app.get("/metrics", include_in_schema=False)
    def metrics() -> Response:
        return Response(runtime.metrics.render(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(ping.router)
    app.include_router(users.router)
    app.include_router(ws.router)
    return app
