"""
sellerlens/query/executor.py

DAG executor: runs a compiled ``QueryPlan`` node by node, respecting
dependencies, and produces a terminal ``QueryExecution``.

Scheduling
----------
Nodes are visited in topological order.  A node becomes ready once every
dependency has completed; ready nodes start as asyncio tasks up to the
parallelism limit (1 in ``sequential`` mode).  The loop wakes whenever a
task finishes, the latency deadline passes, or ``cancel()`` is called.

Stopping
--------
  node error       no new node starts; in-flight siblings finish and are
                   recorded; status FAILED
  latency ceiling  no new node starts; in-flight nodes finish (default) or
                   are cancelled and recorded CANCELLED (preempt_on_timeout);
                   status TIMEOUT
  cancel()         in-flight nodes are cancelled; status CANCELLED
  store error      in-flight nodes are cancelled and recorded on the
                   execution only; status FAILED

Every node record is appended to the execution and to the store as soon as
the node settles.  The execution row is written once, at its terminal status.
"""
from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import structlog

from sellerlens.config import settings
from sellerlens.query.compiler import topological_order
from sellerlens.query.errors import (
    ExecutionCancelled,
    ExecutionPersistenceFailed,
    ExecutionTimeout,
    NodeExecutionFailed,
    QueryEngineError,
)
from sellerlens.query.execution import (
    ExecutionStatus,
    NodeExecutionRecord,
    NodeStatus,
    QueryExecution,
)
from sellerlens.query.operators import OperatorSet, json_normalize
from sellerlens.query.plan import (
    AggregateConfig,
    ExecutionMode,
    NodeType,
    OutputConfig,
    QueryNode,
    QueryPlan,
    ScoreConfig,
    SourceConfig,
    TransformConfig,
)
from sellerlens.sources.federation import FederatedFetchCoordinator
from sellerlens.storage.execution_store import ExecutionStore

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class _NodeOutcome:
    record: NodeExecutionRecord
    output: Any = None
    error: QueryEngineError | None = None


class ExecutionHandle:
    """A running execution that can be awaited or cancelled."""

    def __init__(self, execution: QueryExecution, task: asyncio.Task, cancel_event: asyncio.Event) -> None:
        self._execution = execution
        self._task = task
        self._cancel_event = cancel_event

    @property
    def execution(self) -> QueryExecution:
        return self._execution

    @property
    def execution_id(self) -> str:
        return self._execution.id

    def cancel(self) -> None:
        """Halt scheduling; the run ends CANCELLED unless already terminal."""
        if not self._execution.is_terminal:
            self._cancel_event.set()

    async def wait(self) -> QueryExecution:
        return await self._task


class DagExecutor:
    def __init__(
        self,
        coordinator: FederatedFetchCoordinator,
        store: ExecutionStore | None = None,
        operators: OperatorSet | None = None,
        *,
        max_parallel_nodes: int | None = None,
        preempt_on_timeout: bool | None = None,
    ) -> None:
        self._coordinator = coordinator
        self._store = store
        self._operators = operators or OperatorSet()
        self._max_parallel = max_parallel_nodes or settings.executor_max_parallel_nodes
        self._preempt = settings.preempt_on_timeout if preempt_on_timeout is None else preempt_on_timeout

    # ── Public API ───────────────────────────────────────────────────────────

    def submit(self, plan: QueryPlan, execution_id: str | None = None) -> ExecutionHandle:
        execution = QueryExecution(id=execution_id or str(uuid.uuid4()), plan=plan)
        cancel_event = asyncio.Event()
        task = asyncio.create_task(self._run(execution, cancel_event))
        return ExecutionHandle(execution, task, cancel_event)

    async def execute(self, plan: QueryPlan, execution_id: str | None = None) -> QueryExecution:
        """Run *plan* to a terminal status.

        Errors are captured on the returned execution (``execution.error``)
        rather than raised.
        """
        return await self.submit(plan, execution_id).wait()

    # ── Run loop ─────────────────────────────────────────────────────────────

    async def _run(self, execution: QueryExecution, cancel_event: asyncio.Event) -> QueryExecution:
        plan = execution.plan
        log = logger.bind(execution_id=execution.id, plan_id=plan.id)
        clock = time.perf_counter()

        execution.transition(ExecutionStatus.COMPILING)
        try:
            order = topological_order(plan.nodes)
        except QueryEngineError as exc:
            return await self._finish(execution, ExecutionStatus.FAILED, exc, clock)
        execution.transition(ExecutionStatus.QUEUED)

        if cancel_event.is_set():
            return await self._finish(
                execution, ExecutionStatus.CANCELLED, ExecutionCancelled("Execution cancelled"), clock
            )
        execution.transition(ExecutionStatus.RUNNING)
        log.info("execution_started", nodes=len(order), mode=plan.execution_mode.value)

        limit = 1 if plan.execution_mode == ExecutionMode.SEQUENTIAL else self._max_parallel
        deadline = plan.max_latency_ms / 1000 if plan.max_latency_ms else None

        outputs: dict[str, Any] = {}
        pending = list(order)
        running: dict[asyncio.Task, tuple[QueryNode, datetime]] = {}
        cancel_waiter = asyncio.create_task(cancel_event.wait())
        stop_status: ExecutionStatus | None = None
        stop_error: QueryEngineError | None = None

        try:
            while pending or running:
                elapsed = time.perf_counter() - clock
                if stop_status is None:
                    if cancel_event.is_set():
                        stop_status = ExecutionStatus.CANCELLED
                        stop_error = ExecutionCancelled("Execution cancelled")
                    elif deadline is not None and elapsed > deadline:
                        stop_status = ExecutionStatus.TIMEOUT
                        stop_error = ExecutionTimeout(plan.max_latency_ms or 0, elapsed * 1000)
                    if stop_status is not None:
                        log.warning("execution_stopping", status=stop_status.value, in_flight=len(running))
                        if stop_status == ExecutionStatus.CANCELLED or self._preempt:
                            for task in running:
                                task.cancel()

                if stop_status is None:
                    for node in [n for n in pending if all(d in outputs for d in n.dependencies)]:
                        if len(running) >= limit:
                            break
                        pending.remove(node)
                        inputs = [outputs[d] for d in node.dependencies]
                        started_at = datetime.now(timezone.utc)
                        running[asyncio.create_task(self._run_node(node, inputs, started_at))] = (node, started_at)

                if not running:
                    break

                wait_for: set[asyncio.Task] = set(running)
                timeout = None
                if stop_status is None:
                    wait_for.add(cancel_waiter)
                    if deadline is not None:
                        timeout = max(deadline - (time.perf_counter() - clock), 0) + 0.001
                done, _ = await asyncio.wait(wait_for, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)

                store_failed = False
                for task in done:
                    if task is cancel_waiter:
                        continue
                    node, started_at = running.pop(task)
                    outcome = self._settle(node, task, started_at, execution.id)
                    try:
                        await self._record(execution, node, outcome.record)
                    except Exception as exc:
                        log.error("node_record_failed", node_id=node.id, in_flight=len(running), exc_info=True)
                        stop_status = ExecutionStatus.FAILED
                        stop_error = ExecutionPersistenceFailed(node.id, str(exc) or type(exc).__name__)
                        await self._abandon(execution, running)
                        store_failed = True
                        break
                    if outcome.error is not None:
                        if stop_status is None:
                            stop_status = ExecutionStatus.FAILED
                            stop_error = outcome.error
                            log.warning(
                                "execution_stopping",
                                status=stop_status.value,
                                failed_node=node.id,
                                in_flight=len(running),
                            )
                    else:
                        outputs[node.id] = outcome.output
                        if node.type == NodeType.SOURCE and isinstance(outcome.output, list):
                            execution.data_points_processed += len(outcome.output)
                if store_failed:
                    break
        finally:
            cancel_waiter.cancel()

        if stop_status is not None:
            return await self._finish(execution, stop_status, stop_error, clock)

        execution.result = self._final_result(plan, order, outputs)
        self._check_confidence(execution, outputs)
        return await self._finish(execution, ExecutionStatus.COMPLETED, None, clock)

    async def _run_node(self, node: QueryNode, inputs: list[Any], started_at: datetime) -> _NodeOutcome:
        t0 = time.perf_counter()
        try:
            output = await self._dispatch(node, inputs)
        except QueryEngineError as exc:
            error: QueryEngineError = exc
        except Exception as exc:
            logger.error("node_execution_error", node_id=node.id, node_type=node.type.value, exc_info=True)
            error = NodeExecutionFailed(node.id, node.type.value, str(exc) or type(exc).__name__)
        else:
            record = NodeExecutionRecord(
                node_id=node.id,
                node_type=node.type,
                status=NodeStatus.COMPLETED,
                started_at=started_at,
                completed_at=datetime.now(timezone.utc),
                latency_ms=round((time.perf_counter() - t0) * 1000, 3),
                output=output,
            )
            logger.debug("node_completed", node_id=node.id, latency_ms=record.latency_ms)
            return _NodeOutcome(record=record, output=output)

        record = NodeExecutionRecord(
            node_id=node.id,
            node_type=node.type,
            status=NodeStatus.FAILED,
            started_at=started_at,
            completed_at=datetime.now(timezone.utc),
            latency_ms=round((time.perf_counter() - t0) * 1000, 3),
            error=error.message,
        )
        logger.warning("node_failed", node_id=node.id, node_type=node.type.value, error=error.kind)
        return _NodeOutcome(record=record, error=error)

    async def _dispatch(self, node: QueryNode, inputs: list[Any]) -> Any:
        config = node.config
        if isinstance(config, SourceConfig):
            return await self._coordinator.fetch(config)

        upstream = _merge_inputs(inputs)
        if isinstance(config, TransformConfig):
            return self._operators.transform(config, upstream)
        if isinstance(config, AggregateConfig):
            return self._operators.aggregate(config, upstream)
        if isinstance(config, ScoreConfig):
            return self._operators.score(config, upstream)
        if isinstance(config, OutputConfig):
            return self._operators.format(config, upstream)
        raise TypeError(f"Unsupported node config {type(config).__name__}")

    # ── Bookkeeping ──────────────────────────────────────────────────────────

    def _settle(
        self,
        node: QueryNode,
        task: asyncio.Task,
        started_at: datetime,
        execution_id: str,
    ) -> _NodeOutcome:
        if task.cancelled():
            now = datetime.now(timezone.utc)
            return _NodeOutcome(
                record=NodeExecutionRecord(
                    node_id=node.id,
                    node_type=node.type,
                    status=NodeStatus.CANCELLED,
                    started_at=started_at,
                    completed_at=now,
                    latency_ms=round((now - started_at).total_seconds() * 1000, 3),
                    error="cancelled",
                )
            )
        outcome = task.result()
        if outcome.error is not None:
            outcome.error.execution_id = execution_id
        return outcome

    async def _record(self, execution: QueryExecution, node: QueryNode, record: NodeExecutionRecord) -> None:
        execution.record_node(record)
        if self._store is not None:
            await self._store.append_node(execution, len(execution.node_records) - 1, node, record)

    async def _abandon(
        self,
        execution: QueryExecution,
        running: dict[asyncio.Task, tuple[QueryNode, datetime]],
    ) -> None:
        """Cancel and drain in-flight nodes, recording them on the execution only."""
        for task in running:
            task.cancel()
        await asyncio.gather(*running, return_exceptions=True)
        for task, (node, started_at) in running.items():
            execution.record_node(self._settle(node, task, started_at, execution.id).record)
        running.clear()

    async def _finish(
        self,
        execution: QueryExecution,
        status: ExecutionStatus,
        error: QueryEngineError | None,
        clock: float,
    ) -> QueryExecution:
        if error is not None:
            error.execution_id = execution.id
            execution.error = error
        execution.total_latency_ms = round((time.perf_counter() - clock) * 1000, 3)
        execution.transition(status)
        logger.info(
            "execution_finished",
            execution_id=execution.id,
            status=status.value,
            nodes_executed=execution.nodes_executed,
            total_latency_ms=execution.total_latency_ms,
            error=error.kind if error else None,
        )
        if self._store is not None:
            try:
                await self._store.append_execution(execution)
            except Exception:
                logger.error("execution_record_not_persisted", execution_id=execution.id, exc_info=True)
                execution.warnings.append("Execution record could not be persisted")
        return execution

    def _final_result(self, plan: QueryPlan, order: list[QueryNode], outputs: dict[str, Any]) -> Any:
        output_nodes = plan.nodes_of_type(NodeType.OUTPUT)
        if len(output_nodes) == 1:
            return outputs[output_nodes[0].id]
        if output_nodes:
            return {n.config.format.value: outputs[n.id] for n in output_nodes}
        return json_normalize(outputs[order[-1].id]) if order else None

    def _check_confidence(self, execution: QueryExecution, outputs: dict[str, Any]) -> None:
        floor = execution.plan.min_confidence
        if floor is None:
            return
        for node in execution.plan.nodes_of_type(NodeType.SCORE):
            score = outputs.get(node.id)
            confidence = score.get("confidence") if isinstance(score, dict) else None
            if isinstance(confidence, (int, float)) and confidence < floor:
                message = f"Confidence {confidence:.2f} from {node.id} is below min_confidence {floor:.2f}"
                execution.warnings.append(message)
                logger.warning("confidence_below_floor", execution_id=execution.id, node_id=node.id,
                               confidence=confidence, min_confidence=floor)


def _merge_inputs(inputs: list[Any]) -> Any:
    """Single upstream passes through; several record lists are concatenated."""
    if len(inputs) == 1:
        return inputs[0]
    if inputs and all(isinstance(i, list) for i in inputs):
        merged: list[Any] = []
        for batch in inputs:
            merged.extend(batch)
        return merged
    return inputs
