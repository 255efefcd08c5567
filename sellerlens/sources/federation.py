"""
sellerlens/sources/federation.py

Federated fetch coordinator: fans one logical fetch out to several adapters
concurrently and merges whatever comes back.

Failure model
-------------
Every adapter call is isolated.  A raise or a timeout is recorded as a
``SourceFailure`` and never aborts its siblings.  Only after all calls
settle does the coordinator decide:

  execute_federated             zero successes → AllSourcesFailed
  execute_with_partial_results  successes < floor → InsufficientSources

Configs whose adapter lacks one of the config's ``required_capabilities``
are not dispatched; they count as failures with reason
``missing_capability``.

Each outcome updates the registry's advisory health flag.
"""
from __future__ import annotations

import asyncio
import time
from collections.abc import Sequence
from dataclasses import dataclass, field

import structlog

from sellerlens.config import settings
from sellerlens.query.errors import AllSourcesFailed, InsufficientSources, InvalidRequest
from sellerlens.query.plan import MergeStrategy, SourceConfig, SourceType
from sellerlens.sources.base import DataSourceAdapter, Record
from sellerlens.sources.registry import DataSourceRegistry

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SourceFailure:
    source_type: SourceType
    error: str


@dataclass(frozen=True)
class PartialFetchResult:
    data: list[Record]
    sources_succeeded: int
    sources_failed: int
    failures: tuple[SourceFailure, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class _Outcome:
    config: SourceConfig
    records: list[Record] | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class FederatedFetchCoordinator:
    """Concurrent, failure-isolated fetches across registered adapters."""

    def __init__(
        self,
        registry: DataSourceRegistry,
        timeout_seconds: float | None = None,
    ) -> None:
        self._registry = registry
        self._timeout = timeout_seconds if timeout_seconds is not None else settings.adapter_timeout_seconds

    @property
    def registry(self) -> DataSourceRegistry:
        return self._registry

    # ── SOURCE node dispatch ─────────────────────────────────────────────────

    async def fetch(self, config: SourceConfig) -> list[Record]:
        """Fetch for one SOURCE node.

        A plain config goes straight to its adapter and propagates the
        adapter's error.  A config listing ``federated_sources`` fans out to
        the primary type plus every federated type.
        """
        if not config.is_federated:
            adapter = self._registry.resolve(config.source_type)
            try:
                records = await asyncio.wait_for(adapter.fetch(config), timeout=self._timeout)
            except Exception:
                self._registry.set_health(adapter.source_type, False)
                raise
            self._registry.set_health(adapter.source_type, True)
            return records

        configs = [config.for_source(config.source_type)]
        configs.extend(config.for_source(st) for st in config.federated_sources)
        if config.min_sources_required is not None:
            result = await self.execute_with_partial_results(configs, config.min_sources_required)
            return result.data
        return await self.execute_federated(configs, config.merge_strategy, config.join_key)

    # ── Federated modes ──────────────────────────────────────────────────────

    async def execute_federated(
        self,
        configs: Sequence[SourceConfig],
        merge_strategy: MergeStrategy | str = MergeStrategy.UNION,
        join_key: str | None = None,
    ) -> list[Record]:
        """Fetch from every config concurrently and merge the successes.

        Raises:
            InvalidRequest:    unknown merge strategy, or ``join`` without a key.
            UnknownDataSource: a config names an unregistered source type.
            AllSourcesFailed:  no adapter returned data.
        """
        try:
            strategy = MergeStrategy(merge_strategy)
        except ValueError:
            raise InvalidRequest(f"Unknown merge strategy: {merge_strategy!r}") from None
        if strategy == MergeStrategy.JOIN and not join_key:
            raise InvalidRequest("merge_strategy 'join' requires a join_key")

        outcomes = await self._gather(configs)
        successes = [o for o in outcomes if o.ok]
        if not successes:
            raise AllSourcesFailed(len(outcomes))

        if strategy == MergeStrategy.JOIN:
            merged = join_records([o.records or [] for o in successes], join_key or "")
        else:
            merged = union_records([o.records or [] for o in successes])

        logger.info(
            "federated_fetch_completed",
            strategy=strategy.value,
            succeeded=len(successes),
            failed=len(outcomes) - len(successes),
            records=len(merged),
        )
        return merged

    async def execute_with_partial_results(
        self,
        configs: Sequence[SourceConfig],
        min_sources_required: int = 1,
    ) -> PartialFetchResult:
        """Fetch concurrently and return the union of successes with counts.

        Raises:
            UnknownDataSource:   a config names an unregistered source type.
            InsufficientSources: fewer than *min_sources_required* succeeded.
        """
        outcomes = await self._gather(configs)
        successes = [o for o in outcomes if o.ok]
        failures = tuple(
            SourceFailure(source_type=o.config.source_type, error=o.error or "")
            for o in outcomes
            if not o.ok
        )

        if len(successes) < min_sources_required:
            logger.warning(
                "federated_fetch_insufficient",
                succeeded=len(successes),
                failed=len(failures),
                required=min_sources_required,
            )
            raise InsufficientSources(len(successes), len(failures), min_sources_required)

        data = union_records([o.records or [] for o in successes])
        logger.info(
            "federated_partial_fetch_completed",
            succeeded=len(successes),
            failed=len(failures),
            records=len(data),
        )
        return PartialFetchResult(
            data=data,
            sources_succeeded=len(successes),
            sources_failed=len(failures),
            failures=failures,
        )

    # ── Internals ────────────────────────────────────────────────────────────

    async def _gather(self, configs: Sequence[SourceConfig]) -> list[_Outcome]:
        # Resolve everything up front so an unknown type fails the whole call
        # before any adapter is contacted.
        resolved = [(config, self._registry.resolve(config.source_type)) for config in configs]

        dispatched: list[tuple[SourceConfig, DataSourceAdapter]] = []
        outcomes: dict[int, _Outcome] = {}
        for idx, (config, adapter) in enumerate(resolved):
            missing = [c for c in config.required_capabilities if not adapter.supports(c)]
            if missing:
                logger.info(
                    "source_filtered_by_capability",
                    source_type=config.source_type.value,
                    missing=[c.value for c in missing],
                )
                outcomes[idx] = _Outcome(config, error="missing_capability")
            else:
                dispatched.append((config, adapter))

        results = await asyncio.gather(
            *(self._fetch_isolated(adapter, config) for config, adapter in dispatched),
            return_exceptions=True,
        )

        dispatched_iter = iter(zip(dispatched, results))
        ordered: list[_Outcome] = []
        for idx, (config, _adapter) in enumerate(resolved):
            if idx in outcomes:
                ordered.append(outcomes[idx])
                continue
            (_cfg, adapter), result = next(dispatched_iter)
            if isinstance(result, BaseException):
                self._registry.set_health(adapter.source_type, False)
                ordered.append(_Outcome(config, error=_describe(result)))
            else:
                self._registry.set_health(adapter.source_type, True)
                ordered.append(_Outcome(config, records=result))
        return ordered

    async def _fetch_isolated(self, adapter: DataSourceAdapter, config: SourceConfig) -> list[Record]:
        started = time.perf_counter()
        try:
            return await asyncio.wait_for(adapter.fetch(config), timeout=self._timeout)
        except Exception as exc:
            logger.warning(
                "source_fetch_failed",
                source_type=adapter.source_type.value,
                error=_describe(exc),
                elapsed_ms=round((time.perf_counter() - started) * 1000, 2),
            )
            raise


# ---------------------------------------------------------------------------
# Merge helpers
# ---------------------------------------------------------------------------

def union_records(batches: Sequence[list[Record]]) -> list[Record]:
    """Concatenate *batches* in order; no de-duplication."""
    merged: list[Record] = []
    for batch in batches:
        merged.extend(batch)
    return merged


def join_records(batches: Sequence[list[Record]], key: str) -> list[Record]:
    """Inner-join *batches* on *key*, left to right.

    Records missing the key are dropped.  On field collisions the value from
    the later batch wins.
    """
    if not batches:
        return []
    joined = [r for r in batches[0] if key in r]
    for batch in batches[1:]:
        index: dict[object, list[Record]] = {}
        for record in batch:
            if key in record:
                index.setdefault(record[key], []).append(record)
        joined = [
            {**left, **right}
            for left in joined
            for right in index.get(left[key], [])
        ]
    return joined


def _describe(exc: BaseException) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return "timeout"
    return str(exc) or type(exc).__name__
