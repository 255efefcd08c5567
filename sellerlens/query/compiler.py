"""
sellerlens/query/compiler.py

Query plan compiler: turns a declarative ``QueryRequest`` into an immutable
``QueryPlan`` DAG.

Default chain
-------------
  SOURCE(RING_BUFFER, seller, window, sampling)
      │
      ├─► TRANSFORM(op₁) ─► TRANSFORM(op₂) ─► … (one per requested operator)
      │
      └─► SCORE(score type for the query kind)
              │
              └─► OUTPUT(first requested format, result cap)

Determinism
-----------
Node ids are content-addressed (``<type>-<position>-<digest>``) so the same
request always yields the same ids, and the reproducibility hash is taken
over the structural content with dependencies expressed as positions, so
ids never feed the digest.  The plan's own ``id`` is random and is excluded
from the hash as well.

Custom plans
------------
When the request carries ``custom_plan`` its nodes are compiled as authored
(ids preserved) after checking that every dependency exists and that the
graph is acyclic.
"""
from __future__ import annotations

import uuid
from typing import Any

import networkx as nx
import structlog

from sellerlens.config import settings
from sellerlens.models.schemas.query import CustomPlan, QueryRequest
from sellerlens.query import catalog
from sellerlens.query.errors import CyclicPlan, InvalidRequest
from sellerlens.query.plan import (
    AggregateConfig,
    Capability,
    ExecutionMode,
    MergeStrategy,
    NodeConfig,
    NodeType,
    OutputConfig,
    OutputFormat,
    QueryNode,
    QueryPlan,
    SamplingPolicy,
    SamplingStrategy,
    ScoreConfig,
    ScoreType,
    SourceConfig,
    SourceType,
    TimeWindow,
    TransformConfig,
    digest,
    structural_content,
    to_jsonable,
)

logger = structlog.get_logger(__name__)

# Length of the content digest embedded in generated node ids.
_NODE_ID_DIGEST_LEN = 12


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def compile_plan(
    request: QueryRequest,
    *,
    strict_operators: bool | None = None,
) -> QueryPlan:
    """Compile *request* into an executable, immutable ``QueryPlan``.

    Args:
        request:          Validated query request.
        strict_operators: Reject operator names outside the known catalog.
                          Defaults to ``settings.strict_operator_validation``.

    Raises:
        InvalidRequest: required fields missing, sampling requested for a
                        reproducible query, unknown operator in strict mode,
                        dangling custom-plan dependency, or cost over budget.
        CyclicPlan:     custom plan whose dependencies form a cycle.
    """
    _check_required_fields(request)
    if strict_operators is None:
        strict_operators = settings.strict_operator_validation

    if request.custom_plan is not None:
        nodes = _custom_nodes(request.custom_plan, seller_id=request.seller_id)
        execution_mode = request.custom_plan.execution_mode
    else:
        nodes = _default_chain(request, strict_operators=strict_operators)
        execution_mode = ExecutionMode.ADAPTIVE

    constraints = request.constraints
    max_latency_ms = constraints.max_latency_ms if constraints else None
    min_confidence = constraints.min_confidence if constraints else None
    max_cost = constraints.max_cost if constraints else None

    estimated_cost = estimate_cost(nodes)
    if max_cost is not None and estimated_cost > max_cost:
        raise InvalidRequest(
            f"Estimated plan cost {estimated_cost:.2f} exceeds max_cost {max_cost:.2f}"
        )

    reproducibility_hash = digest(
        structural_content(
            nodes,
            execution_mode=execution_mode,
            version=settings.plan_version,
            config_version=settings.config_version,
            max_latency_ms=max_latency_ms,
            min_confidence=min_confidence,
            max_cost=max_cost,
        )
    )

    plan = QueryPlan(
        id=str(uuid.uuid4()),
        seller_id=request.seller_id,
        query_type=request.query_type,
        nodes=tuple(nodes),
        reproducibility_hash=reproducibility_hash,
        execution_mode=execution_mode,
        version=settings.plan_version,
        config_version=settings.config_version,
        max_latency_ms=max_latency_ms,
        min_confidence=min_confidence,
        max_cost=max_cost,
        estimated_cost=estimated_cost,
    )
    logger.info(
        "plan_compiled",
        plan_id=plan.id,
        seller_id=plan.seller_id,
        query_type=plan.query_type.value,
        nodes=len(plan.nodes),
        custom=request.custom_plan is not None,
        reproducibility_hash=plan.reproducibility_hash[:16],
    )
    return plan


def topological_order(nodes: tuple[QueryNode, ...] | list[QueryNode]) -> list[QueryNode]:
    """Return *nodes* in a valid dependency order.

    Ties are broken by the node's position in the plan so the order is
    stable across runs.

    Raises:
        InvalidRequest: a dependency id is not present in *nodes*.
        CyclicPlan:     the dependency relation contains a cycle.
    """
    graph = _build_graph(nodes)
    position = {node.id: idx for idx, node in enumerate(nodes)}
    try:
        ordered_ids = list(nx.lexicographical_topological_sort(graph, key=position.__getitem__))
    except nx.NetworkXUnfeasible as exc:
        cycle = _find_cycle(graph)
        raise CyclicPlan(f"Circular dependency detected in query plan: {cycle}") from exc
    by_id = {node.id: node for node in nodes}
    return [by_id[node_id] for node_id in ordered_ids]


def estimate_cost(nodes: list[QueryNode] | tuple[QueryNode, ...]) -> float:
    total = 0.0
    for node in nodes:
        operator = node.config.operator if isinstance(node.config, TransformConfig) else None
        total += catalog.node_cost(node.type, operator)
    return round(total, 4)


# ---------------------------------------------------------------------------
# Default chain
# ---------------------------------------------------------------------------

def _check_required_fields(request: QueryRequest) -> None:
    missing = [
        name
        for name, value in (
            ("seller_id", getattr(request, "seller_id", None)),
            ("query_type", getattr(request, "query_type", None)),
            ("window", getattr(request, "window", None)),
        )
        if value in (None, "")
    ]
    if missing:
        raise InvalidRequest(f"Missing required fields: {', '.join(missing)}")
    if request.window.start > request.window.end:
        raise InvalidRequest("window start must not be after window end")


def _default_chain(request: QueryRequest, *, strict_operators: bool) -> list[QueryNode]:
    nodes: list[QueryNode] = []

    sampling = catalog.DEFAULT_SAMPLING
    if request.sampling is not None:
        sampling = SamplingPolicy(
            enabled=request.sampling.enabled,
            rate=request.sampling.rate,
            strategy=request.sampling.strategy,
        )
    if sampling.enabled and request.reproducible:
        raise InvalidRequest("Sampling is non-deterministic and cannot be used for a reproducible query")

    source = SourceConfig(
        source_type=SourceType.RING_BUFFER,
        seller_id=request.seller_id,
        time_window=TimeWindow(start=request.window.start, end=request.window.end),
        sampling=sampling,
    )
    _append(nodes, NodeType.SOURCE, source, [])

    for operator in request.operators:
        if strict_operators and not catalog.is_known_operator(operator):
            raise InvalidRequest(f"Unknown transform operator: {operator}")
        transform = TransformConfig(
            operator=operator,
            parameters=catalog.default_parameters(operator),
            deterministic=True,
            parallelizable=operator in catalog.PARALLELIZABLE_OPERATORS,
        )
        _append(nodes, NodeType.TRANSFORM, transform, [len(nodes) - 1])

    score = ScoreConfig(
        score_type=catalog.score_type_for(request.query_type),
        algorithm=catalog.DEFAULT_SCORE_ALGORITHM,
        attribution=True,
        confidence_level=catalog.DEFAULT_CONFIDENCE_LEVEL,
    )
    _append(nodes, NodeType.SCORE, score, [len(nodes) - 1])

    output_format = request.output[0] if request.output else OutputFormat.JSON
    output = OutputConfig(format=output_format, limit=settings.output_result_limit)
    _append(nodes, NodeType.OUTPUT, output, [len(nodes) - 1])

    return nodes


def _append(
    nodes: list[QueryNode],
    node_type: NodeType,
    config: NodeConfig,
    dep_positions: list[int],
) -> None:
    """Append a node whose id is derived from its content and position."""
    position = len(nodes)
    content = {
        "position": position,
        "type": node_type.value,
        "config": to_jsonable(config),
        "dependencies": sorted(dep_positions),
    }
    node_id = f"{node_type.value.lower()}-{position}-{digest(content)[:_NODE_ID_DIGEST_LEN]}"
    nodes.append(
        QueryNode(
            id=node_id,
            type=node_type,
            config=config,
            dependencies=tuple(nodes[p].id for p in dep_positions),
        )
    )


# ---------------------------------------------------------------------------
# Custom plans
# ---------------------------------------------------------------------------

def _custom_nodes(custom: CustomPlan, *, seller_id: str) -> list[QueryNode]:
    ids = [n.id for n in custom.nodes]
    duplicates = sorted({i for i in ids if ids.count(i) > 1})
    if duplicates:
        raise InvalidRequest(f"Duplicate node ids in custom plan: {', '.join(duplicates)}")

    known = set(ids)
    nodes: list[QueryNode] = []
    for raw in custom.nodes:
        dangling = [d for d in raw.dependencies if d not in known]
        if dangling:
            raise InvalidRequest(
                f"Node {raw.id} depends on unknown node(s): {', '.join(dangling)}"
            )
        try:
            config = build_config(raw.type, raw.config)
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidRequest(f"Invalid config for node {raw.id}: {exc}") from exc
        if isinstance(config, SourceConfig) and config.seller_id != seller_id:
            raise InvalidRequest(f"Source node {raw.id} targets a different seller")
        nodes.append(
            QueryNode(
                id=raw.id,
                type=raw.type,
                config=config,
                dependencies=tuple(raw.dependencies),
            )
        )

    # Raises CyclicPlan before anything is executed.
    topological_order(nodes)
    return nodes


def build_config(node_type: NodeType, data: dict[str, Any]) -> NodeConfig:
    """Build the typed config for *node_type* from a plain (snake or camel case) mapping."""
    d = {_snake(k): v for k, v in data.items()}

    if node_type == NodeType.SOURCE:
        window = d["time_window"]
        sampling = {_snake(k): v for k, v in (d.get("sampling") or {}).items()}
        merge = MergeStrategy(d.get("merge_strategy", MergeStrategy.UNION.value))
        return SourceConfig(
            source_type=SourceType(d["source_type"]),
            seller_id=str(d["seller_id"]),
            time_window=TimeWindow(start=int(window["start"]), end=int(window["end"])),
            metric_type=d.get("metric_type"),
            sampling=SamplingPolicy(
                enabled=bool(sampling.get("enabled", False)),
                rate=float(sampling.get("rate", 1.0)),
                strategy=SamplingStrategy(sampling.get("strategy", SamplingStrategy.UNIFORM.value)),
            ),
            federated_sources=tuple(SourceType(s) for s in d.get("federated_sources", [])),
            merge_strategy=merge,
            join_key=d.get("join_key"),
            min_sources_required=d.get("min_sources_required"),
            required_capabilities=tuple(Capability(c) for c in d.get("required_capabilities", [])),
        )

    if node_type == NodeType.TRANSFORM:
        operator = str(d["operator"]).upper()
        return TransformConfig(
            operator=operator,
            parameters=dict(d.get("parameters") or catalog.default_parameters(operator)),
            deterministic=bool(d.get("deterministic", True)),
            parallelizable=bool(d.get("parallelizable", operator in catalog.PARALLELIZABLE_OPERATORS)),
        )

    if node_type == NodeType.AGGREGATE:
        return AggregateConfig(
            function=str(d["function"]).upper(),
            group_by=tuple(d.get("group_by", [])),
        )

    if node_type == NodeType.SCORE:
        return ScoreConfig(
            score_type=ScoreType(d.get("score_type", ScoreType.ANOMALY.value)),
            algorithm=d.get("algorithm", catalog.DEFAULT_SCORE_ALGORITHM),
            attribution=bool(d.get("attribution", True)),
            confidence_level=float(d.get("confidence_level", catalog.DEFAULT_CONFIDENCE_LEVEL)),
            thresholds=dict(d.get("thresholds", {})),
        )

    return OutputConfig(
        format=OutputFormat(d.get("format", OutputFormat.JSON.value)),
        limit=int(d.get("limit", settings.output_result_limit)),
        fields=tuple(d.get("fields", [])),
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _build_graph(nodes: list[QueryNode] | tuple[QueryNode, ...]) -> nx.DiGraph:
    graph = nx.DiGraph()
    known = {node.id for node in nodes}
    for node in nodes:
        graph.add_node(node.id)
    for node in nodes:
        for dep in node.dependencies:
            if dep not in known:
                raise InvalidRequest(f"Node {node.id} depends on unknown node {dep}")
            graph.add_edge(dep, node.id)
    return graph


def _find_cycle(graph: nx.DiGraph) -> str:
    try:
        edges = nx.find_cycle(graph)
    except nx.NetworkXNoCycle:
        return "?"
    return " -> ".join([edges[0][0], *(v for _, v in edges)])


def _snake(key: str) -> str:
    out = []
    for ch in key:
        if ch.isupper():
            out.append("_")
            out.append(ch.lower())
        else:
            out.append(ch)
    return "".join(out).lstrip("_")

