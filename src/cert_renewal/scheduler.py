"""
Scheduler — periodic orphaned-upload reconciliation.

Infrastructure layer — uses APScheduler (3.x) for lightweight in-process
scheduling driven by a standard 5-field cron expression.

The sweep is a coroutine; each run gets its own event loop via
``asyncio.run`` because APScheduler calls jobs from a worker thread. The
run is wrapped in a LoggingExecutionContext for timing and outcome logs.

Graceful shutdown: handles SIGINT/SIGTERM to stop the scheduler cleanly.
"""

from __future__ import annotations

import asyncio
import signal
import sys
from collections.abc import Awaitable, Callable

import structlog
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from railway import LoggingExecutionContext
from railway.result import Result

from cert_renewal.reconciliation import ReconciliationReport

log = structlog.get_logger()

JOB_ID = "cert_renewal_reconciliation"

SweepFn = Callable[[], Awaitable[Result[ReconciliationReport]]]


def create_scheduler(
    sweep_fn: SweepFn,
    cron: str = "30 3 * * *",
    run_on_startup: bool = False,
    handle_signals: bool = True,
) -> BlockingScheduler:
    """
    Create a configured APScheduler that runs the sweep on a cron schedule.

    Args:
        sweep_fn: Zero-argument coroutine function returning the sweep Result.
        cron: Standard 5-field cron expression (minute hour dom month dow).
              Default "30 3 * * *" runs daily at 03:30.
        run_on_startup: If True, execute once immediately before entering the loop.
        handle_signals: Install SIGINT/SIGTERM handlers. Only possible from
                        the main thread; the ASGI app leaves signals to Uvicorn.

    Returns:
        A configured BlockingScheduler (call .start() to begin).
    """
    scheduler = BlockingScheduler()
    ctx = LoggingExecutionContext(operation="OrphanedUploadSweep")

    def _job() -> None:
        """Run one sweep within the logging context and log the outcome."""
        result = ctx.execute(lambda: asyncio.run(sweep_fn()))
        if result.is_success():
            report = result.value()
            log.info(
                "scheduler.job_completed",
                deleted_applications=len(report.deleted_applications),
                deleted_blobs=report.deleted_blobs,
                clean=report.clean,
            )
        else:
            log.error("scheduler.job_failed", failure=str(result.error()))

    minute, hour, dom, month, dow = cron.split()
    scheduler.add_job(
        _job,
        trigger=CronTrigger(
            minute=minute,
            hour=hour,
            day=dom,
            month=month,
            day_of_week=dow,
        ),
        id=JOB_ID,
        name="Orphaned renewal upload sweep",
        replace_existing=True,
    )

    if run_on_startup:
        log.info("scheduler.startup_run", message="Running sweep immediately on startup")
        _job()

    if handle_signals:
        _register_shutdown_signals(scheduler)

    return scheduler


def _register_shutdown_signals(scheduler: BlockingScheduler) -> None:
    """Register SIGINT and SIGTERM handlers for graceful shutdown."""

    def _shutdown(signum: int, frame: object) -> None:
        sig_name = signal.Signals(signum).name
        log.info("scheduler.shutdown_requested", signal=sig_name)
        scheduler.shutdown(wait=False)
        sys.exit(0)

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)
