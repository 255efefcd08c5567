"""Source health worker: periodic adapter probe.

Builds its own registry over a fresh PostgreSQL engine and probes every
registered data source adapter every ``health_check_interval_seconds``.

The registry here is not the API process's registry, so its in-memory
flags are local to the worker.  Each round is therefore also published to
Redis (``sellerlens.sources.health_board``), where ``GET /sources`` picks it
up.  Published keys expire after a few intervals, so a stopped worker stops
influencing the API.

Run with:
    python -m workers.health_worker
"""

import asyncio
import signal

import structlog
from redis.asyncio import Redis

from sellerlens.config import settings
from sellerlens.database.postgres import close_postgres, get_session_factory, init_postgres
from sellerlens.database.redis import close_redis, get_client, init_redis
from sellerlens.sources.health_board import publish_health
from sellerlens.sources.registry import DataSourceRegistry, build_default_registry

logger = structlog.get_logger(__name__)

# Published readings outlive this many missed rounds.
_PUBLISH_TTL_INTERVALS = 3


def publish_ttl(interval: float) -> int:
    return max(int(interval * _PUBLISH_TTL_INTERVALS), 1)


async def probe_once(registry: DataSourceRegistry, redis: Redis | None = None) -> dict[str, bool]:
    """Probe every adapter once, publish when *redis* is given, and return ``{source_type: healthy}``."""
    results = await registry.check_health()
    if redis is not None:
        await publish_health(redis, results, publish_ttl(settings.health_check_interval_seconds))
    report = {source_type.value: ok for source_type, ok in results.items()}
    unhealthy = sorted(name for name, ok in report.items() if not ok)
    if unhealthy:
        logger.warning("health_worker_unhealthy_sources", sources=unhealthy)
    return report


async def probe_loop(registry: DataSourceRegistry, interval: float, redis: Redis | None = None) -> None:
    """Probe loop; runs until cancelled."""
    logger.info("health_worker_loop_started", interval=interval, sources=len(registry))
    try:
        while True:
            await probe_once(registry, redis)
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("health_worker_loop_cancelled")


async def main() -> None:
    """Entry point: start probing and handle OS signals for clean shutdown."""
    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _request_shutdown() -> None:
        logger.info("health_worker_shutdown_signal_received")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _request_shutdown)

    await init_postgres()
    await init_redis()
    redis = get_client()
    registry = build_default_registry(get_session_factory())
    probe_task = asyncio.create_task(
        probe_loop(registry, settings.health_check_interval_seconds, redis)
    )

    await shutdown_event.wait()
    probe_task.cancel()
    await probe_task
    await redis.aclose()
    await close_redis()
    await close_postgres()
    logger.info("health_worker_stopped")


if __name__ == "__main__":
    asyncio.run(main())
