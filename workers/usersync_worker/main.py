from __future__ import annotations

import asyncio
import logging
import random
import time

from opentelemetry import trace

from usersync_worker.core.config import get_settings
from usersync_worker.core.telemetry import (
    configure_worker_logging,
    setup_worker_telemetry,
    shutdown_worker_telemetry,
)
from usersync_worker.jobs.drain import drain_queue
from usersync_worker.jobs.schedule import PeriodicTask, next_backoff
from usersync_worker.services.sync_client import SyncApiClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def run_worker() -> None:
    settings = get_settings()
    configure_worker_logging(settings)
    telemetry_runtime = setup_worker_telemetry(settings)
    client = SyncApiClient(
        base_url=settings.api_base_url,
        module_id=settings.module_id,
        api_key=settings.api_key,
        timeout_seconds=settings.request_timeout_seconds,
    )

    retry_sweep = PeriodicTask("retry_sweep", settings.retry_sweep_interval_seconds)
    stale_sweep = PeriodicTask("stale_sweep", settings.stale_sweep_interval_seconds)
    backoff = settings.poll_interval_seconds

    try:
        while True:
            try:
                with tracer.start_as_current_span("worker.poll_cycle"):
                    now = time.monotonic()
                    if stale_sweep.is_due(now):
                        released = await client.reap_stale(limit=settings.stale_sweep_batch_size)
                        if released:
                            logger.warning("released stale processing jobs: %s", released)
                        stale_sweep.mark_run(now)

                    if retry_sweep.is_due(now):
                        requeued = await client.retry_sweep(limit=settings.retry_sweep_batch_size)
                        if requeued:
                            logger.info("requeued retry jobs: %s", requeued)
                        retry_sweep.mark_run(now)

                    summary = await drain_queue(
                        client,
                        batch_size=settings.process_batch_size,
                        max_batches=settings.max_batches_per_cycle,
                    )
                    if summary.processed:
                        logger.info("processed jobs=%s statuses=%s", summary.processed, summary.statuses)

                backoff = settings.poll_interval_seconds
                await asyncio.sleep(settings.poll_interval_seconds)
            except Exception as exc:  # pragma: no cover - loop robustness
                sleep_for = next_backoff(
                    backoff,
                    base=settings.poll_interval_seconds,
                    cap=settings.max_backoff_seconds,
                    jitter=random.uniform(0.0, 0.5),
                )
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        shutdown_worker_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
