"""
sellerlens/query/catalog.py

Static lookup tables consumed by the plan compiler.

These are the configuration inputs of the engine: default operator
parameters, the query-kind → score-type mapping, and the per-node cost
weights used for ``max_cost`` admission.  The compiler only ever reads them
through the accessor functions below, so a different backing store can be
swapped in without touching compilation logic.
"""
from __future__ import annotations

import copy
from typing import Any

from sellerlens.query.plan import NodeType, QueryKind, SamplingPolicy, ScoreType

# Known transform operators.  Names outside this set are still compiled
# (passthrough at runtime) unless strict operator validation is enabled.
KNOWN_OPERATORS: frozenset[str] = frozenset(
    {"FIR", "FFT", "HFD", "WAVELET", "KALMAN", "NORMALIZE", "DETREND", "RESAMPLE"}
)

DEFAULT_OPERATOR_PARAMETERS: dict[str, dict[str, Any]] = {
    "FIR":       {"windowSize": 5, "coefficients": [0.2, 0.2, 0.2, 0.2, 0.2]},
    "FFT":       {"windowSize": 512, "normalize": True},
    "HFD":       {"kMax": 10},
    "NORMALIZE": {"method": "z-score"},
    "DETREND":   {"method": "linear"},
}

PARALLELIZABLE_OPERATORS: frozenset[str] = frozenset({"FFT", "HFD"})

SCORE_TYPE_BY_KIND: dict[QueryKind, ScoreType] = {
    QueryKind.ANOMALY:    ScoreType.ANOMALY,
    QueryKind.PREDICTION: ScoreType.PREDICTION,
    QueryKind.INSIGHT:    ScoreType.HEALTH,
    QueryKind.FUNNEL:     ScoreType.QUALITY,
}

# Used when a request does not specify a sampling policy.
DEFAULT_SAMPLING = SamplingPolicy()

DEFAULT_SCORE_ALGORITHM = "default"
DEFAULT_CONFIDENCE_LEVEL = 0.8

# Relative compute cost per node, summed into QueryPlan.estimated_cost.
NODE_COST: dict[NodeType, float] = {
    NodeType.SOURCE:    1.0,
    NodeType.TRANSFORM: 1.0,
    NodeType.AGGREGATE: 0.5,
    NodeType.SCORE:     2.0,
    NodeType.OUTPUT:    0.1,
}

OPERATOR_COST: dict[str, float] = {
    "FFT":     3.0,
    "HFD":     4.0,
    "WAVELET": 3.0,
    "KALMAN":  2.0,
}


def default_parameters(operator: str) -> dict[str, Any]:
    """Return a fresh copy of the default parameters for *operator* ({} if unknown)."""
    return copy.deepcopy(DEFAULT_OPERATOR_PARAMETERS.get(operator, {}))


def score_type_for(kind: QueryKind | str) -> ScoreType:
    """Map a query kind to its score type, falling back to ANOMALY."""
    try:
        return SCORE_TYPE_BY_KIND[QueryKind(kind)]
    except (KeyError, ValueError):
        return ScoreType.ANOMALY


def is_known_operator(operator: str) -> bool:
    return operator in KNOWN_OPERATORS


def node_cost(node_type: NodeType, operator: str | None = None) -> float:
    if node_type == NodeType.TRANSFORM and operator is not None:
        return OPERATOR_COST.get(operator, NODE_COST[node_type])
    return NODE_COST[node_type]
