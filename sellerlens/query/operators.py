"""
sellerlens/query/operators.py

Named implementations behind TRANSFORM, AGGREGATE, SCORE and OUTPUT nodes.

Every operator is a pure function of its upstream value and its node
config; none touches I/O.  ``OperatorSet`` bundles the four lookup tables
so tests (or a deployment) can plug in their own implementations without
touching the executor.

Records flowing between nodes are plain dicts.  Numeric operators read and
write the ``value`` field and leave every other field untouched.

Unknown names
-------------
  TRANSFORM / AGGREGATE  passthrough + ``operator_unknown`` warning
  catalogued TRANSFORM   passthrough + ``operator_not_implemented`` (FFT, HFD,
  without a function     WAVELET, KALMAN and RESAMPLE have no numeric body here)
  SCORE algorithm        falls back to ``default`` + warning
  OUTPUT format          raw JSON rendering
"""
from __future__ import annotations

import json
import math
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import numpy as np
import structlog

from sellerlens.config import settings
from sellerlens.query import catalog
from sellerlens.query.plan import (
    AggregateConfig,
    OutputConfig,
    OutputFormat,
    ScoreConfig,
    ScoreType,
    TransformConfig,
    to_jsonable,
)

logger = structlog.get_logger(__name__)

Record = dict[str, Any]
TransformFn = Callable[[list[Record], dict[str, Any]], list[Record]]
AggregateFn = Callable[[list[Record], AggregateConfig], Any]
ScorerFn = Callable[[Any, ScoreConfig], dict[str, Any]]
FormatterFn = Callable[[Any, OutputConfig], Any]


# ---------------------------------------------------------------------------
# Record helpers
# ---------------------------------------------------------------------------

def as_records(value: Any) -> list[Record]:
    if isinstance(value, list):
        return [r for r in value if isinstance(r, dict)]
    if isinstance(value, dict):
        return [value]
    return []


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool) and math.isfinite(v)


def numeric_values(records: list[Record]) -> list[float]:
    return [float(r["value"]) for r in records if _is_number(r.get("value"))]


def _with_values(records: list[Record], values: list[float]) -> list[Record]:
    """Copy *records*, writing *values* back in order onto those carrying a numeric value."""
    it = iter(values)
    out = []
    for record in records:
        if _is_number(record.get("value")):
            out.append({**record, "value": next(it)})
        else:
            out.append(dict(record))
    return out


# ---------------------------------------------------------------------------
# Transforms
# ---------------------------------------------------------------------------

def fir_filter(records: list[Record], params: dict[str, Any]) -> list[Record]:
    """Causal FIR filter over ``value``; edge samples renormalise the taps they use."""
    values = np.asarray(numeric_values(records), dtype=float)
    if not values.size:
        return _with_values(records, [])
    window = max(int(params.get("windowSize", 5)), 1)
    taps = np.asarray(params.get("coefficients") or [1.0 / window] * window, dtype=float)
    acc = np.convolve(values, taps)[: values.size]
    weight = np.cumsum(taps)[np.minimum(np.arange(values.size), taps.size - 1)]
    filtered = np.divide(acc, weight, out=values.copy(), where=weight != 0)
    return _with_values(records, filtered.tolist())


def normalize(records: list[Record], params: dict[str, Any]) -> list[Record]:
    values = np.asarray(numeric_values(records), dtype=float)
    if values.size < 2:
        return _with_values(records, [0.0] * values.size)
    if params.get("method", "z-score") == "min-max":
        span = np.ptp(values)
        scaled = (values - values.min()) / span if span else np.zeros_like(values)
    else:
        std = values.std()
        scaled = (values - values.mean()) / std if std else np.zeros_like(values)
    return _with_values(records, scaled.tolist())


def detrend(records: list[Record], params: dict[str, Any]) -> list[Record]:
    values = np.asarray(numeric_values(records), dtype=float)
    if values.size < 2:
        return _with_values(records, values.tolist())
    if params.get("method", "linear") == "constant":
        return _with_values(records, (values - values.mean()).tolist())
    x = np.arange(values.size)
    residual = values - np.polyval(np.polyfit(x, values, deg=1), x)
    return _with_values(records, residual.tolist())


DEFAULT_TRANSFORMS: dict[str, TransformFn] = {
    "FIR": fir_filter,
    "NORMALIZE": normalize,
    "DETREND": detrend,
}


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------

_REDUCERS: dict[str, Callable[[np.ndarray], Any]] = {
    "SUM": np.sum,
    "AVG": np.mean,
    "MIN": np.min,
    "MAX": np.max,
}


def _reduce(name: str) -> Callable[[list[float]], float | None]:
    reducer = _REDUCERS[name]

    def apply(vs: list[float]) -> float | None:
        if not vs:
            return 0.0 if name == "SUM" else None
        return float(reducer(np.asarray(vs, dtype=float)))

    return apply


def _aggregate_with(name: str) -> AggregateFn:
    key = name.lower()

    def aggregate(records: list[Record], config: AggregateConfig) -> Any:
        def compute(rows: list[Record]) -> dict[str, Any]:
            if name == "COUNT":
                return {"count": len(rows)}
            return {key: _reduce(name)(numeric_values(rows))}

        if not config.group_by:
            return compute(records)
        groups: dict[tuple, list[Record]] = {}
        for record in records:
            groups.setdefault(tuple(record.get(g) for g in config.group_by), []).append(record)
        return {
            "groups": [
                {**dict(zip(config.group_by, k)), **compute(rows)}
                for k, rows in groups.items()
            ]
        }

    return aggregate


DEFAULT_AGGREGATES: dict[str, AggregateFn] = {
    name: _aggregate_with(name) for name in ("COUNT", "SUM", "AVG", "MIN", "MAX")
}


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

# Confidence ceiling per data-sufficiency tier.
_SUFFICIENCY_CEILING = {
    "insufficient": 0.3,
    "minimal": 0.5,
    "adequate": 0.75,
    "optimal": 1.0,
}


def data_sufficiency(n: int) -> str:
    if n < settings.data_insufficient_threshold:
        return "insufficient"
    if n < settings.data_minimal_threshold:
        return "minimal"
    if n < settings.data_adequate_threshold:
        return "adequate"
    return "optimal"


def baseline_score(upstream: Any, config: ScoreConfig) -> dict[str, Any]:
    """Statistical baseline score over the ``value`` series.

    ANOMALY / RISK   share of points whose |z| exceeds ``thresholds["z"]`` (3.0)
    PREDICTION       trend strength: 0.5 ± 0.5·tanh(normalised slope)
    other types      stability: 1 / (1 + coefficient of variation)

    Confidence is ``confidence_level`` capped by the sufficiency tier.
    """
    records = as_records(upstream)
    values = numeric_values(records)
    sufficiency = data_sufficiency(len(values))
    result: dict[str, Any] = {
        "score": 0.0,
        "confidence": 0.0,
        "attribution": [],
        "score_type": config.score_type.value,
        "sufficiency": sufficiency,
    }
    if not values:
        return result

    series = np.asarray(values, dtype=float)
    mean = float(series.mean())
    std = float(series.std())

    if config.score_type in (ScoreType.ANOMALY, ScoreType.RISK):
        z_limit = float(config.thresholds.get("z", 3.0))
        z_scores = (series - mean) / std if std else np.zeros_like(series)
        outliers = np.flatnonzero(np.abs(z_scores) > z_limit)
        score = outliers.size / series.size
        if config.attribution:
            ranked = outliers[np.argsort(-np.abs(z_scores[outliers]), kind="stable")][:10]
            result["attribution"] = [
                {"index": int(i), "value": values[i], "z_score": round(float(z_scores[i]), 4)}
                for i in ranked
            ]
    elif config.score_type == ScoreType.PREDICTION:
        slope = _trend_slope(series) if series.size > 1 else 0.0
        scale = std or abs(mean) or 1.0
        score = 0.5 + 0.5 * float(np.tanh(slope * series.size / scale))
        if config.attribution:
            result["attribution"] = [{"factor": "trend", "slope": round(slope, 6)}]
    else:
        cv = std / abs(mean) if mean else 0.0
        score = 1.0 / (1.0 + cv)
        if config.attribution:
            result["attribution"] = _attribution_by_type(records)

    result["score"] = round(score, 6)
    result["confidence"] = round(min(config.confidence_level, _SUFFICIENCY_CEILING[sufficiency]), 6)
    return result


def _attribution_by_type(records: list[Record]) -> list[dict[str, Any]]:
    totals: dict[str, float] = {}
    for record in records:
        v = record.get("value")
        if _is_number(v):
            key = str(record.get("type", "unknown"))
            totals[key] = totals.get(key, 0.0) + abs(float(v))
    grand = sum(totals.values())
    if not grand:
        return []
    return [
        {"factor": k, "contribution": round(v / grand, 6)}
        for k, v in sorted(totals.items(), key=lambda kv: kv[1], reverse=True)
    ]


DEFAULT_SCORERS: dict[str, ScorerFn] = {"default": baseline_score}


# ---------------------------------------------------------------------------
# Output formatting
# ---------------------------------------------------------------------------

def _project(record: Any, fields: tuple[str, ...]) -> Any:
    if not fields or not isinstance(record, dict):
        return record
    return {k: record.get(k) for k in fields}


def format_json(upstream: Any, config: OutputConfig) -> Any:
    if isinstance(upstream, list):
        return [_project(r, config.fields) for r in upstream[: config.limit]]
    return _project(upstream, config.fields)


def format_time_series(upstream: Any, config: OutputConfig) -> Any:
    points = [
        {"timestamp": r.get("timestamp"), "value": r.get("value")}
        for r in as_records(upstream)
        if "timestamp" in r
    ]
    points.sort(key=lambda p: p["timestamp"])
    return points[: config.limit]


def format_aggregated(upstream: Any, config: OutputConfig) -> Any:
    if isinstance(upstream, dict):
        return _project(upstream, config.fields)
    values = numeric_values(as_records(upstream))
    summary: dict[str, Any] = {"count": len(values)}
    summary.update({name.lower(): _reduce(name)(values) for name in _REDUCERS})
    return summary


def format_scored(upstream: Any, config: OutputConfig) -> Any:
    if isinstance(upstream, dict) and "score" in upstream:
        return {k: upstream.get(k) for k in ("score", "confidence", "score_type", "sufficiency")}
    return format_json(upstream, config)


def format_attributed(upstream: Any, config: OutputConfig) -> Any:
    if isinstance(upstream, dict) and "score" in upstream:
        return {
            "score": upstream.get("score"),
            "confidence": upstream.get("confidence"),
            "attribution": list(upstream.get("attribution") or [])[: config.limit],
        }
    return format_json(upstream, config)


DEFAULT_FORMATTERS: dict[OutputFormat, FormatterFn] = {
    OutputFormat.JSON: format_json,
    OutputFormat.TIME_SERIES: format_time_series,
    OutputFormat.AGGREGATED: format_aggregated,
    OutputFormat.SCORED: format_scored,
    OutputFormat.ATTRIBUTED: format_attributed,
}


def json_normalize(value: Any) -> Any:
    """Round-trip *value* through JSON so cached and fresh payloads are identical."""
    return json.loads(json.dumps(to_jsonable(value), default=str))


# ---------------------------------------------------------------------------
# Operator set
# ---------------------------------------------------------------------------

@dataclass
class OperatorSet:
    transforms: dict[str, TransformFn] = field(default_factory=lambda: dict(DEFAULT_TRANSFORMS))
    aggregates: dict[str, AggregateFn] = field(default_factory=lambda: dict(DEFAULT_AGGREGATES))
    scorers: dict[str, ScorerFn] = field(default_factory=lambda: dict(DEFAULT_SCORERS))
    formatters: dict[OutputFormat, FormatterFn] = field(default_factory=lambda: dict(DEFAULT_FORMATTERS))

    def transform(self, config: TransformConfig, upstream: Any) -> Any:
        fn = self.transforms.get(config.operator)
        if fn is None:
            if catalog.is_known_operator(config.operator):
                logger.info("operator_not_implemented", kind="transform", operator=config.operator)
            else:
                logger.warning("operator_unknown", kind="transform", operator=config.operator)
            return upstream
        # Numeric transforms only apply to record series.
        if not isinstance(upstream, list):
            return upstream
        return fn(upstream, config.parameters)

    def aggregate(self, config: AggregateConfig, upstream: Any) -> Any:
        fn = self.aggregates.get(config.function)
        if fn is None:
            logger.warning("operator_unknown", kind="aggregate", operator=config.function)
            return upstream
        return fn(as_records(upstream), config)

    def score(self, config: ScoreConfig, upstream: Any) -> dict[str, Any]:
        fn = self.scorers.get(config.algorithm)
        if fn is None:
            logger.warning("operator_unknown", kind="scorer", operator=config.algorithm)
            fn = self.scorers.get("default", baseline_score)
        return fn(upstream, config)

    def format(self, config: OutputConfig, upstream: Any) -> Any:
        fn = self.formatters.get(config.format, format_json)
        return json_normalize(fn(upstream, config))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _trend_slope(series: np.ndarray) -> float:
    """Least-squares slope of *series* against its index."""
    slope, _intercept = np.polyfit(np.arange(series.size), series, deg=1)
    return float(slope)
