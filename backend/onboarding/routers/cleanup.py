"""Maintenance endpoints for the session janitor.

Both require ``X-Maintenance-Key`` (see ``require_maintenance_key``).
"""

import logging

from fastapi import APIRouter, Body, Depends, Response, status

from onboarding.dependencies import get_cleanup_manager, require_maintenance_key
from onboarding.schemas.onboarding import CleanupRequest
from onboarding.services.cleanup import (
    CleanupOptions,
    CleanupResult,
    OnboardingCleanupManager,
    recommendations,
)

logger = logging.getLogger("onboarding.api")

router = APIRouter(dependencies=[Depends(require_maintenance_key)])


def _result_body(result: CleanupResult) -> dict:
    return {
        "cleanedSessions": result.cleaned_sessions,
        "byPolicy": result.by_policy,
        "duration": result.duration_ms,
        "dryRun": result.dry_run,
        "errors": result.errors,
    }


@router.post("")
async def run_cleanup(
    response: Response,
    body: CleanupRequest | None = Body(default=None),
    cleanup: OnboardingCleanupManager = Depends(get_cleanup_manager),
):
    body = body or CleanupRequest()
    if body.emergency:
        result = await cleanup.emergency_cleanup()
    else:
        result = await cleanup.run_cleanup(
            CleanupOptions(
                max_age_hours=body.max_age,
                batch_size=body.batch_size,
                dry_run=body.dry_run,
            )
        )

    if not result.success:
        # Partial result: the healthy policies still ran
        response.status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
        return {"success": False, "result": _result_body(result)}

    logger.info(
        "Cleanup via API: %d sessions in %dms (emergency=%s)",
        result.cleaned_sessions,
        result.duration_ms,
        body.emergency,
    )
    return {
        "success": True,
        "message": "Cleanup completed successfully",
        "result": _result_body(result),
    }


@router.get("")
async def cleanup_stats(
    cleanup: OnboardingCleanupManager = Depends(get_cleanup_manager),
):
    stats = await cleanup.get_cleanup_stats()
    return {
        "success": True,
        "stats": {
            "totalSessions": stats.total,
            "expiredSessions": stats.expired,
            "orphanedSessions": stats.orphaned,
            "stuckSessions": stats.stuck,
            "oldSessions": stats.old,
        },
        "recommendations": recommendations(stats),
    }
