"""
tests/unit/test_executor.py

Unit tests for sellerlens.query.executor.DagExecutor.

Plans are compiled from real requests; SOURCE nodes hit in-memory fake
adapters and node/execution records land in a list-backed store.

Coverage
--------
  - 5-node default chain end to end: COMPLETED, 5 node records, 1 execution row
  - Status walk PENDING → COMPILING → QUEUED → RUNNING → COMPLETED
  - SCORE failure: FAILED, OUTPUT never started, trail kept, execution id on error
  - Failing sibling: in-flight sibling finishes and is recorded
  - Engine errors from SOURCE (AllSourcesFailed) keep their kind
  - Latency ceiling: cooperative (in-flight completes) and preemptive (CANCELLED)
  - cancel() on a running handle
  - Sequential vs parallel scheduling
  - Unknown transform passthrough, min_confidence warning, multiple OUTPUT nodes
  - Cyclic plan handed straight to the executor → FAILED / CyclicPlan
  - Nodes listed out of dependency order still run in dependency order
  - Store rejects a node record: FAILED / PersistenceFailed, siblings cancelled
"""
from __future__ import annotations

import asyncio

import pytest

from sellerlens.query.compiler import compile_plan
from sellerlens.query.errors import CyclicPlan, ExecutionPersistenceFailed, NodeExecutionFailed
from sellerlens.query.execution import ExecutionStatus, NodeStatus
from sellerlens.query.executor import DagExecutor
from sellerlens.query.operators import OperatorSet
from sellerlens.query.plan import (
    NodeType,
    OutputConfig,
    QueryKind,
    QueryNode,
    QueryPlan,
    ScoreConfig,
    ScoreType,
    SourceType,
    TransformConfig,
)
from sellerlens.sources.federation import FederatedFetchCoordinator
from tests.fakes import (
    FakeAdapter,
    ListExecutionStore,
    make_events,
    make_registry,
    make_request,
    source_config,
)

RB = SourceType.RING_BUFFER
AGG = SourceType.AGGREGATE_STORE

_WINDOW = {"start": 0, "end": 2_000_000_000_000}


class _OverlapTracker(FakeAdapter):
    """Adapter that records how many fetches overlap."""

    active = 0
    peak = 0

    async def fetch(self, config):
        type(self).active += 1
        type(self).peak = max(type(self).peak, type(self).active)
        try:
            await asyncio.sleep(0.05)
            return [{"value": 1.0}]
        finally:
            type(self).active -= 1


def _executor(*adapters, store=None, operators=None, **kwargs) -> DagExecutor:
    coordinator = FederatedFetchCoordinator(make_registry(*adapters), timeout_seconds=2.0)
    return DagExecutor(coordinator, store, operators, **kwargs)


def _source_node(node_id: str, source_type: SourceType) -> dict:
    return {
        "id": node_id,
        "type": "SOURCE",
        "config": {"sourceType": source_type.value, "sellerId": "seller-1", "timeWindow": _WINDOW},
    }


def _two_source_plan(mode: str = "adaptive"):
    return compile_plan(
        make_request(
            customPlan={
                "executionMode": mode,
                "nodes": [
                    _source_node("rb", RB),
                    _source_node("agg", AGG),
                    {"id": "out", "type": "OUTPUT", "config": {"format": "JSON"}, "dependencies": ["rb", "agg"]},
                ],
            }
        )
    )


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------

class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_five_node_chain(self):
        store = ListExecutionStore()
        executor = _executor(FakeAdapter(RB, make_events(500)), store=store)
        plan = compile_plan(make_request())

        execution = await executor.execute(plan)

        assert execution.status == ExecutionStatus.COMPLETED
        assert len(execution.node_records) == 5
        assert all(r.status == NodeStatus.COMPLETED for r in execution.node_records)
        assert execution.nodes_executed == 5
        assert execution.data_points_processed == 500
        assert execution.started_at is not None and execution.completed_at is not None
        assert execution.error is None
        assert execution.result["score_type"] == "ANOMALY"
        assert execution.result["sufficiency"] == "optimal"
        assert execution.node_records[3].output == execution.result
        assert [r.node_type for r in execution.node_records] == [
            NodeType.SOURCE, NodeType.TRANSFORM, NodeType.TRANSFORM, NodeType.SCORE, NodeType.OUTPUT,
        ]
        assert len(store.nodes) == 5
        assert [seq for _, seq, _, _ in store.nodes] == [0, 1, 2, 3, 4]
        assert store.executions == [execution]

    @pytest.mark.asyncio
    async def test_scored_output(self):
        executor = _executor(FakeAdapter(RB, make_events(20)))
        plan = compile_plan(make_request(output=["SCORED"], operators=[]))
        execution = await executor.execute(plan)
        assert set(execution.result) == {"score", "confidence", "score_type", "sufficiency"}
        assert execution.result["score_type"] == "ANOMALY"

    @pytest.mark.asyncio
    async def test_unknown_transform_is_passthrough(self):
        executor = _executor(FakeAdapter(RB, make_events(5)))
        execution = await executor.execute(compile_plan(make_request(operators=["MYSTERY"])))
        assert execution.status == ExecutionStatus.COMPLETED
        transform = execution.node_records[1]
        assert transform.node_type == NodeType.TRANSFORM
        assert [r["value"] for r in transform.output] == [10.0, 11.0, 12.0, 13.0, 14.0]

    @pytest.mark.asyncio
    async def test_min_confidence_breach_is_a_warning(self):
        executor = _executor(FakeAdapter(RB, make_events(10)))
        plan = compile_plan(make_request(constraints={"minConfidence": 0.9}))
        execution = await executor.execute(plan)
        assert execution.status == ExecutionStatus.COMPLETED
        assert len(execution.warnings) == 1
        assert "min_confidence" in execution.warnings[0]

    @pytest.mark.asyncio
    async def test_multiple_outputs_keyed_by_format(self):
        plan = compile_plan(
            make_request(
                customPlan={
                    "nodes": [
                        _source_node("src", RB),
                        {"id": "agg", "type": "OUTPUT", "config": {"format": "AGGREGATED"}, "dependencies": ["src"]},
                        {"id": "ts", "type": "OUTPUT", "config": {"format": "TIME_SERIES"}, "dependencies": ["src"]},
                    ]
                }
            )
        )
        execution = await _executor(FakeAdapter(RB, make_events(3))).execute(plan)
        assert set(execution.result) == {"AGGREGATED", "TIME_SERIES"}
        assert execution.result["AGGREGATED"]["count"] == 3
        assert len(execution.result["TIME_SERIES"]) == 3


# ---------------------------------------------------------------------------
# Failure isolation
# ---------------------------------------------------------------------------

class TestFailures:
    @pytest.mark.asyncio
    async def test_score_failure_stops_downstream(self):
        def exploding_scorer(upstream, config):
            raise ValueError("scorer exploded")

        store = ListExecutionStore()
        executor = _executor(
            FakeAdapter(RB, make_events(20)),
            store=store,
            operators=OperatorSet(scorers={"default": exploding_scorer}),
        )
        plan = compile_plan(make_request())
        execution = await executor.execute(plan)

        assert execution.status == ExecutionStatus.FAILED
        assert isinstance(execution.error, NodeExecutionFailed)
        assert execution.error.node_type == "SCORE"
        assert execution.error.execution_id == execution.id
        assert "scorer exploded" in execution.error.message
        statuses = [(r.node_type, r.status) for r in execution.node_records]
        assert statuses == [
            (NodeType.SOURCE, NodeStatus.COMPLETED),
            (NodeType.TRANSFORM, NodeStatus.COMPLETED),
            (NodeType.TRANSFORM, NodeStatus.COMPLETED),
            (NodeType.SCORE, NodeStatus.FAILED),
        ]
        assert not any(r.node_type == NodeType.OUTPUT for r in execution.node_records)
        assert len(store.nodes) == 4
        assert store.executions[0].status == ExecutionStatus.FAILED

    @pytest.mark.asyncio
    async def test_in_flight_sibling_completes(self):
        executor = _executor(
            FakeAdapter(RB, error=RuntimeError("ring buffer offline")),
            FakeAdapter(AGG, make_events(2), delay=0.05),
        )
        execution = await executor.execute(_two_source_plan())

        assert execution.status == ExecutionStatus.FAILED
        by_node = {r.node_id: r.status for r in execution.node_records}
        assert by_node == {"rb": NodeStatus.FAILED, "agg": NodeStatus.COMPLETED}
        assert execution.error.kind == "NodeExecutionFailed"

    @pytest.mark.asyncio
    async def test_engine_error_kind_preserved(self):
        plan = compile_plan(
            make_request(
                customPlan={
                    "nodes": [
                        {
                            "id": "fed",
                            "type": "SOURCE",
                            "config": {
                                "sourceType": "RING_BUFFER",
                                "sellerId": "seller-1",
                                "timeWindow": _WINDOW,
                                "federatedSources": ["AGGREGATE_STORE"],
                            },
                        }
                    ]
                }
            )
        )
        executor = _executor(
            FakeAdapter(RB, error=RuntimeError("a")),
            FakeAdapter(AGG, error=RuntimeError("b")),
        )
        execution = await executor.execute(plan)
        assert execution.status == ExecutionStatus.FAILED
        assert execution.error.kind == "AllSourcesFailed"
        assert execution.error.as_dict()["sources_failed"] == 2

    @pytest.mark.asyncio
    async def test_cyclic_plan_fails_before_running(self):
        src = source_config(RB)
        nodes = (
            QueryNode(id="s", type=NodeType.SOURCE, config=src),
            QueryNode(id="a", type=NodeType.TRANSFORM, config=TransformConfig(operator="FIR"), dependencies=("s", "b")),
            QueryNode(id="b", type=NodeType.TRANSFORM, config=TransformConfig(operator="FIR"), dependencies=("a",)),
            QueryNode(id="o", type=NodeType.OUTPUT, config=OutputConfig(), dependencies=("b",)),
        )
        plan = QueryPlan(
            id="p", seller_id="seller-1", query_type=QueryKind.CUSTOM, nodes=nodes, reproducibility_hash="x"
        )
        store = ListExecutionStore()
        adapter = FakeAdapter(RB, make_events(1))
        execution = await _executor(adapter, store=store).execute(plan)

        assert execution.status == ExecutionStatus.FAILED
        assert isinstance(execution.error, CyclicPlan)
        assert execution.node_records == []
        assert adapter.calls == []
        assert execution.started_at is None

    @pytest.mark.asyncio
    async def test_nodes_listed_out_of_order_run_in_dependency_order(self):
        nodes = (
            QueryNode(id="o", type=NodeType.OUTPUT, config=OutputConfig(), dependencies=("sc",)),
            QueryNode(
                id="sc", type=NodeType.SCORE, config=ScoreConfig(score_type=ScoreType.ANOMALY), dependencies=("t",)
            ),
            QueryNode(id="t", type=NodeType.TRANSFORM, config=TransformConfig(operator="FIR"), dependencies=("s",)),
            QueryNode(id="s", type=NodeType.SOURCE, config=source_config(RB)),
        )
        plan = QueryPlan(
            id="p", seller_id="seller-1", query_type=QueryKind.CUSTOM, nodes=nodes, reproducibility_hash="x"
        )
        execution = await _executor(FakeAdapter(RB, make_events(5))).execute(plan)

        assert execution.status == ExecutionStatus.COMPLETED
        assert [r.node_id for r in execution.node_records] == ["s", "t", "sc", "o"]
        assert execution.result["score_type"] == "ANOMALY"


# ---------------------------------------------------------------------------
# Execution store failures
# ---------------------------------------------------------------------------

class _BrokenStore(ListExecutionStore):
    """Store whose node writes fail, and optionally its execution write too."""

    def __init__(self, *, fail_execution: bool = False) -> None:
        super().__init__()
        self._fail_execution = fail_execution

    async def append_node(self, execution, sequence, node, record):
        raise RuntimeError("db connection lost")

    async def append_execution(self, execution):
        if self._fail_execution:
            raise RuntimeError("db connection lost")
        await super().append_execution(execution)


class TestStoreFailures:
    @pytest.mark.asyncio
    async def test_node_write_failure_ends_failed(self):
        store = _BrokenStore()
        handle = _executor(FakeAdapter(RB, make_events(20)), store=store).submit(compile_plan(make_request()))
        execution = await handle.wait()

        assert execution.status == ExecutionStatus.FAILED
        assert execution.is_terminal
        assert isinstance(execution.error, ExecutionPersistenceFailed)
        assert execution.error.kind == "PersistenceFailed"
        assert execution.error.execution_id == execution.id
        assert "db connection lost" in execution.error.message
        assert [r.node_type for r in execution.node_records] == [NodeType.SOURCE]
        assert store.executions == [execution]

    @pytest.mark.asyncio
    async def test_node_write_failure_cancels_in_flight_siblings(self):
        executor = _executor(
            FakeAdapter(RB, make_events(2)),
            FakeAdapter(AGG, make_events(2), delay=1.0),
            store=_BrokenStore(),
        )
        execution = await executor.execute(_two_source_plan("parallel"))

        assert execution.status == ExecutionStatus.FAILED
        by_node = {r.node_id: r.status for r in execution.node_records}
        assert by_node == {"rb": NodeStatus.COMPLETED, "agg": NodeStatus.CANCELLED}
        assert execution.total_latency_ms < 1000

    @pytest.mark.asyncio
    async def test_execution_write_failure_becomes_warning(self):
        store = _BrokenStore(fail_execution=True)
        execution = await _executor(FakeAdapter(RB, make_events(3)), store=store).execute(
            compile_plan(make_request())
        )

        assert execution.status == ExecutionStatus.FAILED
        assert execution.error.kind == "PersistenceFailed"
        assert "Execution record could not be persisted" in execution.warnings
        assert store.executions == []


# ---------------------------------------------------------------------------
# Latency ceiling and cancellation
# ---------------------------------------------------------------------------

class TestStopping:
    @pytest.mark.asyncio
    async def test_timeout_cooperative(self):
        executor = _executor(FakeAdapter(RB, make_events(3), delay=0.2), preempt_on_timeout=False)
        plan = compile_plan(make_request(constraints={"maxLatencyMs": 50}))
        execution = await executor.execute(plan)

        assert execution.status == ExecutionStatus.TIMEOUT
        assert execution.error.kind == "Timeout"
        assert execution.error.http_status == 504
        assert [(r.node_type, r.status) for r in execution.node_records] == [
            (NodeType.SOURCE, NodeStatus.COMPLETED)
        ]

    @pytest.mark.asyncio
    async def test_timeout_preemptive(self):
        executor = _executor(FakeAdapter(RB, make_events(3), delay=1.0), preempt_on_timeout=True)
        plan = compile_plan(make_request(constraints={"maxLatencyMs": 30}))
        execution = await executor.execute(plan)

        assert execution.status == ExecutionStatus.TIMEOUT
        assert [r.status for r in execution.node_records] == [NodeStatus.CANCELLED]
        assert execution.total_latency_ms < 1000

    @pytest.mark.asyncio
    async def test_cancel_running_execution(self):
        executor = _executor(FakeAdapter(RB, make_events(3), delay=1.0))
        handle = executor.submit(compile_plan(make_request()))
        await asyncio.sleep(0.02)
        handle.cancel()
        execution = await handle.wait()

        assert execution.status == ExecutionStatus.CANCELLED
        assert execution.error.kind == "Cancelled"
        assert [r.status for r in execution.node_records] == [NodeStatus.CANCELLED]
        assert handle.execution_id == execution.id


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------

class TestScheduling:
    @pytest.mark.asyncio
    async def test_sequential_runs_one_at_a_time(self):
        _OverlapTracker.active = _OverlapTracker.peak = 0
        executor = _executor(_OverlapTracker(RB), _OverlapTracker(AGG))
        execution = await executor.execute(_two_source_plan("sequential"))
        assert execution.status == ExecutionStatus.COMPLETED
        assert _OverlapTracker.peak == 1

    @pytest.mark.asyncio
    async def test_parallel_overlaps_independent_nodes(self):
        _OverlapTracker.active = _OverlapTracker.peak = 0
        executor = _executor(_OverlapTracker(RB), _OverlapTracker(AGG))
        execution = await executor.execute(_two_source_plan("parallel"))
        assert execution.status == ExecutionStatus.COMPLETED
        assert _OverlapTracker.peak == 2
        assert len(execution.result) == 2

    @pytest.mark.asyncio
    async def test_parallelism_limit(self):
        _OverlapTracker.active = _OverlapTracker.peak = 0
        executor = _executor(_OverlapTracker(RB), _OverlapTracker(AGG), max_parallel_nodes=1)
        await executor.execute(_two_source_plan("parallel"))
        assert _OverlapTracker.peak == 1
