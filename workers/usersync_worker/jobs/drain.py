from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class ProcessorClient(Protocol):
    async def process_jobs(self, max_jobs: int = 1) -> dict[str, Any]: ...


@dataclass(slots=True)
class DrainSummary:
    processed: int = 0
    batches: int = 0
    statuses: dict[str, int] = field(default_factory=dict)


async def drain_queue(client: ProcessorClient, *, batch_size: int, max_batches: int) -> DrainSummary:
    """Trigger the processor in batches until a batch comes back short."""
    summary = DrainSummary()
    for _ in range(max(1, max_batches)):
        response = await client.process_jobs(max_jobs=batch_size)
        summary.batches += 1
        processed = _processed_jobs(response)
        for job in processed:
            job_status = str((job.get("result") or {}).get("status") or "UNKNOWN")
            summary.statuses[job_status] = summary.statuses.get(job_status, 0) + 1
            logger.info(
                "processed job id=%s type=%s status=%s",
                job.get("jobId"),
                job.get("jobType"),
                job_status,
            )
        summary.processed += len(processed)
        if len(processed) < batch_size:
            break
    return summary


def _processed_jobs(response: dict[str, Any]) -> list[dict[str, Any]]:
    if isinstance(response.get("processed"), list):
        return [job for job in response["processed"] if isinstance(job, dict)]
    if response.get("jobId"):
        return [response]
    return []
