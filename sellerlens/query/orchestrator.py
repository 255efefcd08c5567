"""
sellerlens/query/orchestrator.py

Compile+execute entrypoint: wires compiler, cache and executor into one call.

Pipeline
--------
  QueryRequest
      │
      ├─► compile_plan()              → QueryPlan (+ reproducibility hash)
      ├─► compute_fingerprint()       → cache key
      │
      ├─► ResultCache.get() ── hit ──► QueryResponse(cached=True)
      │        │
      │       miss
      │        ▼
      ├─► DagExecutor.execute()       → QueryExecution (record persisted)
      │
      └─► ResultCache.put(ttl_for_volume(data points))
              │
              └─► QueryResponse(cached=False, plan summary, execution id)

Only COMPLETED executions are cached.  Any other terminal status re-raises
the captured engine error with the execution id attached.
"""
from __future__ import annotations

import structlog

from sellerlens.models.schemas.query import PlanSummary, QueryRequest, QueryResponse
from sellerlens.query.cache import ResultCache, compute_fingerprint, ttl_for_volume
from sellerlens.query.compiler import compile_plan
from sellerlens.query.errors import QueryEngineError
from sellerlens.query.execution import ExecutionStatus
from sellerlens.query.executor import DagExecutor

logger = structlog.get_logger(__name__)


async def handle_query(
    request: QueryRequest,
    executor: DagExecutor,
    cache: ResultCache | None = None,
) -> QueryResponse:
    """Run the full query pipeline for *request*.

    Args:
        request:  Validated QueryRequest from the API route.
        executor: DAG executor bound to the application's registry and store.
        cache:    Result cache; ``None`` disables caching.

    Raises:
        InvalidRequest / CyclicPlan: the request does not compile (nothing
                                     is executed or stored).
        QueryEngineError:            the execution ended FAILED, TIMEOUT or
                                     CANCELLED; ``execution_id`` is set.
    """
    # ── Stage 1: compile ──────────────────────────────────────────────────
    plan = compile_plan(request)
    fingerprint = compute_fingerprint(request)

    # ── Stage 2: cache lookup ─────────────────────────────────────────────
    if cache is not None:
        entry = await cache.get(fingerprint)
        if entry is not None:
            return QueryResponse(
                cached=True,
                result=entry.result,
                plan=PlanSummary(
                    id=entry.plan["id"],
                    nodes=len(entry.plan["nodes"]),
                    reproducibility_hash=entry.plan["reproducibility_hash"],
                ),
                fingerprint=fingerprint,
            )

    # ── Stage 3: execute ──────────────────────────────────────────────────
    execution = await executor.execute(plan)
    if execution.status != ExecutionStatus.COMPLETED:
        error = execution.error or QueryEngineError(
            f"Execution ended {execution.status.value}", execution_id=execution.id
        )
        logger.warning(
            "query_execution_unsuccessful",
            execution_id=execution.id,
            status=execution.status.value,
            error=error.kind,
        )
        raise error

    # ── Stage 4: cache the payload ────────────────────────────────────────
    if cache is not None:
        await cache.put(
            fingerprint,
            execution.result,
            plan.as_dict(),
            ttl_seconds=ttl_for_volume(execution.data_points_processed),
        )

    logger.info(
        "query_complete",
        execution_id=execution.id,
        seller_id=plan.seller_id,
        nodes_executed=execution.nodes_executed,
        data_points=execution.data_points_processed,
        latency_ms=execution.total_latency_ms,
    )
    return QueryResponse(
        cached=False,
        result=execution.result,
        plan=PlanSummary(**plan.summary()),
        execution_id=execution.id,
        fingerprint=fingerprint,
        warnings=list(execution.warnings),
    )
