"""
sellerlens/storage/execution_store.py

Append-only persistence of execution records and their node trail.

The module-level functions are flush-only and take an AsyncSession, like
every other store.  ``SqlExecutionStore`` is the executor-facing adapter:
it holds one session per in-flight execution, appends node rows as nodes
finish, and commits once the execution row is written at its terminal
status.  Nothing is ever updated in place.
"""
from __future__ import annotations

from typing import Any, Protocol

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from sellerlens.models.sql.query_execution import QueryExecutionNodeRow, QueryExecutionRow
from sellerlens.query.execution import NodeExecutionRecord, QueryExecution
from sellerlens.query.operators import json_normalize
from sellerlens.query.plan import QueryNode, to_jsonable
from sellerlens.sources.base import SessionFactory

logger = structlog.get_logger(__name__)


class ExecutionStore(Protocol):
    async def append_node(
        self,
        execution: QueryExecution,
        sequence: int,
        node: QueryNode,
        record: NodeExecutionRecord,
    ) -> None: ...

    async def append_execution(self, execution: QueryExecution) -> None: ...


# ── Flush-only primitives ─────────────────────────────────────────────────────


async def insert_node(
    session: AsyncSession,
    *,
    execution_id: str,
    sequence: int,
    node: QueryNode,
    record: NodeExecutionRecord,
) -> QueryExecutionNodeRow:
    row = QueryExecutionNodeRow(
        execution_id=execution_id,
        sequence=sequence,
        node_id=node.id,
        node_type=node.type.value,
        node_config=to_jsonable(node.config),
        dependencies=list(node.dependencies),
        status=record.status.value,
        started_at=record.started_at,
        completed_at=record.completed_at,
        latency_ms=record.latency_ms,
        output_data=json_normalize(record.output),
        error=record.error,
    )
    session.add(row)
    await session.flush()
    return row


async def insert_execution(session: AsyncSession, execution: QueryExecution) -> QueryExecutionRow:
    plan = execution.plan
    row = QueryExecutionRow(
        id=execution.id,
        seller_id=plan.seller_id,
        query_type=plan.query_type.value,
        query_plan=plan.as_dict(),
        status=execution.status.value,
        submitted_at=execution.submitted_at,
        started_at=execution.started_at,
        completed_at=execution.completed_at,
        result_data=json_normalize(execution.result),
        error=execution.error_message,
        error_kind=execution.error_kind,
        nodes_executed=execution.nodes_executed,
        total_latency_ms=execution.total_latency_ms,
        data_points_processed=execution.data_points_processed,
        reproducibility_hash=plan.reproducibility_hash,
        config_version=plan.config_version,
    )
    session.add(row)
    await session.flush()
    return row


async def get_execution(session: AsyncSession, execution_id: str) -> QueryExecutionRow | None:
    """Fetch an execution with its node trail eager-loaded in sequence order."""
    stmt = (
        select(QueryExecutionRow)
        .where(QueryExecutionRow.id == execution_id)
        .options(selectinload(QueryExecutionRow.nodes))
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


def execution_to_dict(row: QueryExecutionRow) -> dict[str, Any]:
    return {
        "id": row.id,
        "seller_id": row.seller_id,
        "query_type": row.query_type,
        "status": row.status,
        "reproducibility_hash": row.reproducibility_hash,
        "config_version": row.config_version,
        "submitted_at": row.submitted_at,
        "started_at": row.started_at,
        "completed_at": row.completed_at,
        "nodes_executed": row.nodes_executed,
        "total_latency_ms": row.total_latency_ms,
        "data_points_processed": row.data_points_processed,
        "result": row.result_data,
        "error": row.error,
        "error_kind": row.error_kind,
        "nodes": [
            {
                "node_id": n.node_id,
                "node_type": n.node_type,
                "status": n.status,
                "latency_ms": n.latency_ms,
                "output": n.output_data,
                "error": n.error,
                "started_at": n.started_at,
                "completed_at": n.completed_at,
            }
            for n in row.nodes
        ],
    }


# ── Executor-facing store ─────────────────────────────────────────────────────


class SqlExecutionStore:
    """One transaction per execution, committed when the execution row lands."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory
        self._open: dict[str, AsyncSession] = {}

    def _session_for(self, execution_id: str) -> AsyncSession:
        session = self._open.get(execution_id)
        if session is None:
            session = self._session_factory()
            self._open[execution_id] = session
        return session

    async def append_node(
        self,
        execution: QueryExecution,
        sequence: int,
        node: QueryNode,
        record: NodeExecutionRecord,
    ) -> None:
        session = self._session_for(execution.id)
        try:
            await insert_node(
                session,
                execution_id=execution.id,
                sequence=sequence,
                node=node,
                record=record,
            )
        except Exception:
            # The transaction is unusable; the execution row gets a fresh one.
            await session.rollback()
            await session.close()
            self._open.pop(execution.id, None)
            logger.error(
                "node_persist_failed",
                execution_id=execution.id,
                node_id=node.id,
                exc_info=True,
            )
            raise

    async def append_execution(self, execution: QueryExecution) -> None:
        session = self._session_for(execution.id)
        try:
            await insert_execution(session, execution)
            await session.commit()
        except Exception:
            await session.rollback()
            logger.error("execution_persist_failed", execution_id=execution.id, exc_info=True)
            raise
        finally:
            await session.close()
            self._open.pop(execution.id, None)
        logger.info(
            "execution_persisted",
            execution_id=execution.id,
            status=execution.status.value,
            nodes=len(execution.node_records),
        )
