"""
sellerlens/api/routes/__init__.py

Shared FastAPI dependencies used across all route modules.

The registry and executor are built once in the application lifespan and
kept on ``app.state``; routes receive them through these dependencies so
tests can override them without touching globals.
"""
from fastapi import Depends, HTTPException, Request, Security, status
from fastapi.security import APIKeyHeader
from redis.asyncio import Redis

from sellerlens.config import settings
from sellerlens.database.redis import get_redis
from sellerlens.query.cache import ResultCache
from sellerlens.query.executor import DagExecutor
from sellerlens.sources.registry import DataSourceRegistry

_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def require_api_key(api_key: str | None = Security(_api_key_header)) -> str:
    """FastAPI dependency that enforces X-API-Key header authentication.

    Raises HTTP 401 when the key is missing or incorrect.
    """
    if api_key != settings.api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key.",
            headers={"WWW-Authenticate": "ApiKey"},
        )
    return api_key


def get_registry(request: Request) -> DataSourceRegistry:
    return request.app.state.registry


def get_executor(request: Request) -> DagExecutor:
    return request.app.state.executor


async def get_result_cache(redis: Redis = Depends(get_redis)) -> ResultCache:
    return ResultCache(redis)
