"""App lifespan: service wiring plus the optional cleanup loop.

The janitor itself holds no timer.  When ``CLEANUP_SCHEDULER_ENABLED`` is
set, the lifespan starts a plain asyncio sleep loop that runs
``run_cleanup()`` every ``CLEANUP_INTERVAL_MINUTES``.  Leave it off when an
external cron (``python -m onboarding.cli cleanup``) drives the sweeps, and
on all but one worker when running several.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from onboarding.config import settings
from onboarding.services.cleanup import OnboardingCleanupManager
from onboarding.utils.redis import close_redis

logger = logging.getLogger("onboarding.scheduler")


async def _cleanup_loop(cleanup: OnboardingCleanupManager, interval_minutes: int) -> None:
    """Sleep loop that fires a cleanup sweep every ``interval_minutes``."""
    interval = max(interval_minutes, 1) * 60
    while True:
        logger.info("Next onboarding cleanup in %d seconds", interval)
        await asyncio.sleep(interval)
        try:
            result = await cleanup.run_cleanup()
        except Exception:
            logger.exception("Unhandled error in scheduled onboarding cleanup")
            continue
        if not result.success:
            logger.warning("Scheduled cleanup finished with errors: %s", result.errors)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan: build services, start the scheduler, tear down on exit."""
    from onboarding.dependencies import ServiceContainer

    if getattr(app.state, "services", None) is None:
        app.state.services = ServiceContainer.build(settings)
    services = app.state.services

    task = None
    if services.settings.cleanup_scheduler_enabled:
        task = asyncio.create_task(
            _cleanup_loop(services.cleanup, services.settings.cleanup_interval_minutes)
        )
        logger.info("Onboarding cleanup scheduler started")
    try:
        yield
    finally:
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            logger.info("Onboarding cleanup scheduler stopped")
        await close_redis()
