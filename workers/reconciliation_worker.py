"""
Reconciliation background worker.

Every ``reconciliation_interval_seconds`` verifies pending payments that
are older than ``reconciliation_stale_after_seconds`` with their
provider and settles the terminal ones.
"""
import asyncio
import signal
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError

from config import Settings, get_settings
from core.bootstrap import Services, create_services
from monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_reconciliation_sweep(services: Services) -> Dict[str, Any]:
    """Run one sweep over stale pending payments."""
    settings = services.settings
    logger.info(
        "reconciliation_sweep_started",
        stale_after_seconds=settings.reconciliation_stale_after_seconds,
        batch_size=settings.reconciliation_batch_size,
    )
    return await services.reconciliation.sweep_stale_payments(
        stale_after_seconds=settings.reconciliation_stale_after_seconds,
        batch_size=settings.reconciliation_batch_size,
    )


async def run_worker(services: Services, stop_event: asyncio.Event) -> None:
    """
    Sweep until ``stop_event`` is set.

    A failed sweep is logged and retried on the next interval.
    """
    interval = services.settings.reconciliation_interval_seconds
    while not stop_event.is_set():
        try:
            await run_reconciliation_sweep(services)
        except SQLAlchemyError as e:
            logger.error("reconciliation_execution_error", error=str(e), alert=True)

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue


async def start_reconciliation_worker(settings: Optional[Settings] = None) -> None:
    """
    Start the reconciliation worker.

    Runs until SIGINT or SIGTERM.
    """
    settings = settings or get_settings()
    setup_logging(settings)

    logger.info(
        "reconciliation_worker_starting",
        interval_seconds=settings.reconciliation_interval_seconds,
    )

    services = create_services(settings)
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def signal_handler(sig: int) -> None:
        logger.info("reconciliation_worker_shutdown_signal_received", signal=sig)
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler, sig)

    try:
        await run_worker(services, stop_event)
    finally:
        await services.close()
        logger.info("reconciliation_worker_stopped")


def main() -> None:
    """Console entry point."""
    asyncio.run(start_reconciliation_worker())


if __name__ == "__main__":
    main()
