from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from sellerlens.api.middleware import RequestLoggingMiddleware
from sellerlens.api.routes import query, sources
from sellerlens.config import settings
from sellerlens.database.postgres import close_postgres, get_session_factory, init_postgres
from sellerlens.database.redis import close_redis, init_redis, redis_is_healthy
from sellerlens.query.errors import InvalidRequest, QueryEngineError
from sellerlens.query.executor import DagExecutor
from sellerlens.sources.federation import FederatedFetchCoordinator
from sellerlens.sources.registry import build_default_registry
from sellerlens.storage.execution_store import SqlExecutionStore

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage startup and shutdown of service connections and the query engine."""
    logger.info("starting_up", app=settings.app_name, version=settings.app_version)

    # ── Startup ──────────────────────────────────────────
    await init_postgres()
    logger.info("postgres_connected")

    await init_redis()
    logger.info("redis_connected")

    session_factory = get_session_factory()
    registry = build_default_registry(session_factory)
    app.state.registry = registry
    app.state.executor = DagExecutor(
        FederatedFetchCoordinator(registry),
        SqlExecutionStore(session_factory),
    )
    logger.info("query_engine_ready", sources=len(registry))

    logger.info("startup_complete")
    yield

    # ── Shutdown ─────────────────────────────────────────
    logger.info("shutting_down")
    await close_redis()
    await close_postgres()
    logger.info("shutdown_complete")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Federated analytics query engine for e-commerce sellers.",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# ── Middleware ────────────────────────────────────────────

app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Exception Handlers ───────────────────────────────────

@app.exception_handler(QueryEngineError)
async def query_engine_exception_handler(request: Request, exc: QueryEngineError) -> JSONResponse:
    logger.warning(
        "query_engine_error",
        path=request.url.path,
        error=exc.kind,
        execution_id=exc.execution_id,
    )
    return JSONResponse(status_code=exc.http_status, content=exc.as_dict())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    error = InvalidRequest("; ".join(parts) or "Invalid request")
    return JSONResponse(status_code=error.http_status, content=error.as_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled_exception", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=500,
        content={
            "error": "InternalError",
            "detail": str(exc) if settings.debug else "An unexpected error occurred.",
            "execution_id": None,
        },
    )


# ── Health Check ─────────────────────────────────────────

@app.get("/health", tags=["Health"])
async def health_check() -> dict:
    return {
        "status": "healthy",
        "app": settings.app_name,
        "version": settings.app_version,
        "redis": await redis_is_healthy(),
    }


# ── Routers ──────────────────────────────────────────────

app.include_router(query.router,   prefix="/query",   tags=["Query"])
app.include_router(sources.router, prefix="/sources", tags=["Sources"])
