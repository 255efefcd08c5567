"""
sellerlens/api/routes/query.py

Analytics query endpoints.

POST /query
    Compile a QueryRequest into a plan, serve it from the result cache or
    execute it, and return the payload with the plan summary.

GET /query/executions/{execution_id}
    Return a persisted execution record with its node trail.
"""
from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from sellerlens.api.routes import get_executor, get_result_cache, require_api_key
from sellerlens.database.postgres import get_db
from sellerlens.models.schemas.query import ExecutionOut, QueryRequest, QueryResponse
from sellerlens.query.cache import ResultCache
from sellerlens.query.executor import DagExecutor
from sellerlens.query.orchestrator import handle_query
from sellerlens.storage import execution_store

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.post(
    "",
    response_model=QueryResponse,
    status_code=status.HTTP_200_OK,
    summary="Run an analytics query",
)
async def query(
    body: QueryRequest,
    executor: DagExecutor = Depends(get_executor),
    cache: ResultCache = Depends(get_result_cache),
    _key: str = Depends(require_api_key),
) -> QueryResponse:
    """Compile and execute an analytics query for one seller.

    The default plan is a chain: ring-buffer SOURCE, one TRANSFORM per
    requested operator, a SCORE node matching the query type, and an OUTPUT
    node in the first requested format.  A `customPlan` replaces the chain
    with a hand-authored DAG.

    **Query types → score type**

    | queryType | score |
    |---|---|
    | `ANOMALY` | ANOMALY |
    | `PREDICTION` | PREDICTION |
    | `INSIGHT` | HEALTH |
    | `FUNNEL` | QUALITY |

    Identical requests within the cache TTL return `cached: true` and the
    same payload without executing again.
    """
    logger.info(
        "query_received",
        seller_id=body.seller_id,
        query_type=body.query_type.value,
        operators=body.operators,
        custom=body.custom_plan is not None,
    )

    response = await handle_query(body, executor, cache)

    logger.info(
        "query_responded",
        cached=response.cached,
        execution_id=response.execution_id,
        warnings=len(response.warnings),
    )
    return response


@router.get(
    "/executions/{execution_id}",
    response_model=ExecutionOut,
    summary="Get an execution record",
)
async def get_execution(
    execution_id: str,
    session: AsyncSession = Depends(get_db),
    _key: str = Depends(require_api_key),
) -> ExecutionOut:
    row = await execution_store.get_execution(session, execution_id)
    if row is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Execution {execution_id} not found.",
        )
    return ExecutionOut.model_validate(execution_store.execution_to_dict(row))
