from __future__ import annotations

import asyncio
import logging
import random

from opentelemetry import trace

from ledger_worker.core.config import get_settings
from ledger_worker.core.telemetry import (
    configure_worker_logging,
    setup_worker_telemetry,
    shutdown_worker_telemetry,
)
from ledger_worker.jobs.report_batch import process_reports_batch
from ledger_worker.services.report_client import ReportClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def run_worker() -> None:
    settings = get_settings()
    configure_worker_logging()
    telemetry_runtime = setup_worker_telemetry(settings)
    client = ReportClient(
        base_url=settings.api_base_url,
        actor_id=settings.actor_id,
        timeout_seconds=settings.request_timeout_seconds,
    )

    backoff = settings.poll_interval_seconds

    try:
        while True:
            try:
                with tracer.start_as_current_span("worker.poll_cycle") as span:
                    reports = await client.get_ready_reports(limit=settings.batch_size)
                    span.set_attribute("reports.ready", len(reports))
                    if not reports:
                        await asyncio.sleep(settings.poll_interval_seconds)
                        continue

                    logger.info("processing ready reports count=%s", len(reports))
                    summary = await process_reports_batch(
                        client,
                        [report["id"] for report in reports],
                        chunk_size=settings.chunk_size,
                        chunk_delay_seconds=settings.chunk_delay_seconds,
                    )
                    span.set_attribute("reports.failed", summary.reports_failed)
                    span.set_attribute("violations.created", summary.violations_created)

                backoff = settings.poll_interval_seconds
            except Exception as exc:  # pragma: no cover - loop robustness
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        shutdown_worker_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
