import json
import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from cilikube.api.router import api_router
from cilikube.config import get_app_config, get_settings
from cilikube.core.logging import setup_logging
from cilikube.db import dispose_engine, init_db
from cilikube.dependencies import get_cluster_registry
from cilikube.exceptions import register_exception_handlers

logger = structlog.get_logger(__name__)

API_PREFIX = "/api/v1"
UNWRAPPED_PREFIXES = (f"{API_PREFIX}/proxy",)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    app_config = get_app_config()
    setup_logging(settings, debug=app_config.server.mode == "debug")

    if app_config.database.enabled:
        await init_db()
        logger.info("app.database_ready", database_type=app_config.database.type)
    else:
        logger.info("app.database_disabled", store="memory")

    registry = get_cluster_registry()
    await registry.initialize()
    logger.info("app.started", mode=app_config.server.mode, clusters=len(registry.list_clusters()))

    yield

    await registry.stop()
    if app_config.database.enabled:
        await dispose_engine()
    logger.info("app.stopped")


def _should_wrap(request: Request, response) -> bool:
    path = request.url.path
    if not path.startswith(API_PREFIX) or path.startswith(UNWRAPPED_PREFIXES):
        return False
    if response.status_code >= 400 or response.status_code == 204:
        return False
    return "application/json" in response.headers.get("content-type", "")


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(
        title="CiliKube API",
        description="Multi-cluster Kubernetes management backend",
        version="0.1.0",
        lifespan=lifespan,
    )

    @app.middleware("http")
    async def request_id_and_envelope(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        cluster_id = getattr(request.state, "cluster_id", None)
        if cluster_id:
            response.headers["X-Cluster-ID"] = cluster_id

        if not _should_wrap(request, response):
            return response

        body = b""
        async for chunk in response.body_iterator:
            body += chunk
        try:
            payload = json.loads(body) if body else None
        except ValueError:
            logger.warning("app.envelope_skipped", path=request.url.path)
            return Response(content=body, status_code=response.status_code, headers=dict(response.headers))

        headers = dict(response.headers)
        headers.pop("content-length", None)
        wrapped = {"code": response.status_code, "message": "success", "data": payload}
        return JSONResponse(status_code=response.status_code, content=wrapped, headers=headers)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)
    app.include_router(api_router)

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    return app


app = create_app()
