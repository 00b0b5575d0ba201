"""Background cleanup loop started by the FastAPI lifespan."""

from __future__ import annotations

import asyncio
import logging

from media_pipeline.models.domain import ScheduledCleanupReport
from media_pipeline.services.cleanup_service import CleanupManager
from media_pipeline.storage.repository import PersistenceLookup

logger = logging.getLogger(__name__)


def cleanup_once(
    *,
    manager: CleanupManager,
    persistence: PersistenceLookup,
    budget_seconds: float = 300,
) -> ScheduledCleanupReport:
    return manager.run_scheduled_cleanup(persistence, budget_seconds=budget_seconds)


async def run_periodic_cleanup(
    *,
    manager: CleanupManager,
    persistence: PersistenceLookup,
    shutdown_event: asyncio.Event,
    interval_seconds: float = 3600.0,
    budget_seconds: float = 300,
) -> None:
    """Run scheduled cleanup until ``shutdown_event`` is set."""
    interval = max(1.0, float(interval_seconds))
    while not shutdown_event.is_set():
        try:
            report = await asyncio.to_thread(
                cleanup_once,
                manager=manager,
                persistence=persistence,
                budget_seconds=budget_seconds,
            )
        except Exception:
            logger.exception("periodic cleanup iteration failed")
        else:
            if report.timed_out:
                logger.warning("periodic cleanup stopped at its time budget", extra={"budget_seconds": budget_seconds})
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue


__all__ = ["cleanup_once", "run_periodic_cleanup"]
