from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from opentelemetry import trace

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class BatchSummary:
    reports_processed: int = 0
    reports_failed: int = 0
    violations_created: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "reports_processed": self.reports_processed,
            "reports_failed": self.reports_failed,
            "violations_created": self.violations_created,
        }


async def process_reports_batch(
    client: Any,
    report_ids: list[str],
    *,
    chunk_size: int = 3,
    chunk_delay_seconds: float = 1.0,
) -> BatchSummary:
    """Process reports in small concurrent chunks.

    A report counts as failed when the API call raises or the processing
    result reports ``success: false``; neither stops the rest of the batch.
    """
    summary = BatchSummary()
    chunk_size = max(1, chunk_size)
    chunks = [report_ids[start : start + chunk_size] for start in range(0, len(report_ids), chunk_size)]

    for position, chunk in enumerate(chunks):
        with tracer.start_as_current_span("worker.process_chunk") as span:
            span.set_attribute("chunk.size", len(chunk))
            outcomes = await asyncio.gather(
                *(client.process_report(report_id) for report_id in chunk),
                return_exceptions=True,
            )
        for report_id, outcome in zip(chunk, outcomes):
            _record_outcome(summary, report_id, outcome)
        if position < len(chunks) - 1 and chunk_delay_seconds > 0:
            await asyncio.sleep(chunk_delay_seconds)

    logger.info(
        "report batch finished processed=%s failed=%s violations_created=%s",
        summary.reports_processed,
        summary.reports_failed,
        summary.violations_created,
    )
    return summary


def _record_outcome(summary: BatchSummary, report_id: str, outcome: Any) -> None:
    if isinstance(outcome, BaseException):
        if not isinstance(outcome, Exception):
            raise outcome
        summary.reports_failed += 1
        logger.error("report processing call failed report_id=%s error=%s", report_id, outcome)
        return

    if outcome.get("success"):
        summary.reports_processed += 1
        summary.violations_created += int(outcome.get("violations_created") or 0)
        return

    summary.reports_failed += 1
    logger.warning(
        "report processing unsuccessful report_id=%s status=%s error=%s",
        report_id,
        outcome.get("status"),
        outcome.get("error"),
    )
