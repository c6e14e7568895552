"""Session recovery endpoints.

  POST /api/onboarding/recovery  → diagnose, repair if possible, report next step,
                                    fresh CSRF token when resumable
  PUT  /api/onboarding/recovery  → user-directed jump to a step (CSRF)
  GET  /api/onboarding/recovery  → live-session recoverability stats (maintenance)
"""

import logging

from fastapi import APIRouter, Depends, Response, status

from onboarding.config import Settings
from onboarding.dependencies import (
    get_recovery_manager,
    get_session_store,
    get_settings,
    require_maintenance_key,
    verify_csrf,
)
from onboarding.middleware.exceptions import (
    OnboardingException,
    SessionUnavailableError,
)
from onboarding.routers.onboarding import session_view
from onboarding.schemas.onboarding import (
    ForceResumeRequest,
    ForceResumeResponse,
    RecoveryRequest,
    RecoveryResponse,
)
from onboarding.services.recovery import (
    REASON_FAILED,
    REASON_NOT_FOUND,
    OnboardingRecoveryManager,
)
from onboarding.services.session_store import OnboardingSessionStore

logger = logging.getLogger("onboarding.api")

router = APIRouter()


@router.post("", response_model=RecoveryResponse, response_model_exclude_none=True)
async def recover_session(
    body: RecoveryRequest,
    response: Response,
    store: OnboardingSessionStore = Depends(get_session_store),
    recovery: OnboardingRecoveryManager = Depends(get_recovery_manager),
):
    """Diagnose the session; a resumable one also gets a fresh CSRF token."""
    result = await recovery.recover_session(
        body.session_id, body.session_token, repair=body.repair_missing_data
    )
    if result.reason == REASON_NOT_FOUND:
        raise SessionUnavailableError()

    csrf_token = None
    if result.reason == REASON_FAILED:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif not result.success:
        response.status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    else:
        if result.can_continue:
            csrf_token = await store.rotate_csrf_token(body.session_id, body.session_token)
        logger.info(
            "Session recovery via API: %s (next step %s, can continue %s)",
            body.session_id,
            result.next_step,
            result.can_continue,
        )

    return RecoveryResponse(
        success=result.success,
        can_continue=result.can_continue,
        next_step=result.next_step,
        session=session_view(result.session) if result.session else None,
        missing_data=result.missing_data,
        reason=result.reason,
        csrf_token=csrf_token,
    )


@router.put("", response_model=ForceResumeResponse)
async def force_resume(
    body: ForceResumeRequest,
    store: OnboardingSessionStore = Depends(get_session_store),
    recovery: OnboardingRecoveryManager = Depends(get_recovery_manager),
    config: Settings = Depends(get_settings),
):
    """Move the wizard to ``targetStep`` if the collected data allows it."""
    verify_csrf(body.csrf_token, config.csrf_max_age_seconds)
    session = await store.get(body.session_id, body.session_token)
    if session is None:
        raise SessionUnavailableError()
    verify_csrf(body.csrf_token, config.csrf_max_age_seconds, expected=session.csrf_token)

    check = await recovery.can_resume_from_step(
        body.session_id, body.session_token, body.target_step
    )
    if not check.can_resume:
        raise OnboardingException(
            message=check.reason or "Cannot resume from target step",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            error_code="RESUME_NOT_ALLOWED",
        )

    result = await recovery.force_resume_from_step(
        body.session_id, body.session_token, body.target_step
    )
    if not result.can_resume:
        raise OnboardingException(
            message=result.reason or "Force resume failed",
            status_code=status.HTTP_409_CONFLICT,
            error_code="RESUME_FAILED",
        )

    return ForceResumeResponse(
        message="Session resumed successfully",
        current_step=body.target_step,
        csrf_token=await store.rotate_csrf_token(body.session_id, body.session_token),
    )


@router.get("", dependencies=[Depends(require_maintenance_key)])
async def recovery_stats(
    recovery: OnboardingRecoveryManager = Depends(get_recovery_manager),
):
    stats = await recovery.get_recovery_stats()
    return {
        "success": True,
        "stats": {
            "totalSessions": stats.total_sessions,
            "recoverableSessions": stats.recoverable_sessions,
            "corruptedSessions": stats.corrupted_sessions,
            "completedSessions": stats.completed_sessions,
        },
    }
