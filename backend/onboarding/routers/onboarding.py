"""Onboarding wizard sessions: start, read, update, complete, abandon.

Endpoints:
  POST   /api/onboarding/start     → new session (client address from headers)
  POST   /api/onboarding/session   → new session (caller address as fallback)
  GET    /api/onboarding/session   → read by sessionId + sessionToken, fresh CSRF
  PUT    /api/onboarding/session   → partial update (CSRF)
  PUT    /api/onboarding/update    → partial update (CSRF), also POST
  DELETE /api/onboarding/session   → abandon
  POST   /api/onboarding/complete  → final check and completion (CSRF)

Every read and write needs both the session id and the raw bearer token.
Missing, expired and wrong-token sessions all answer 404.
Each successful write returns the next CSRF token in ``csrfToken``.
"""

import logging
from datetime import timezone

from fastapi import APIRouter, Body, Depends, Query, Request

from onboarding.dependencies import get_session_store, get_settings, verify_csrf
from onboarding.config import Settings
from onboarding.middleware.exceptions import (
    SessionUnavailableError,
    StateValidationError,
)
from onboarding.middleware.rate_limit import client_ip
from onboarding.schemas.onboarding import (
    CompleteSessionRequest,
    CreateSessionRequest,
    CsrfUpdateSessionRequest,
    MessageResponse,
    SessionCreated,
    SessionEnvelope,
    SessionView,
    StartSessionRequest,
)
from onboarding.services.csrf import issue_csrf_token
from onboarding.services.session_store import (
    UNKNOWN_ADDRESS,
    CreatedSession,
    OnboardingSessionData,
    OnboardingSessionStore,
)
from onboarding.services.state_validator import (
    Violation,
    all_locations_complete,
    has_organization_name,
)

logger = logging.getLogger("onboarding.api")

router = APIRouter()


def session_view(session: OnboardingSessionData) -> SessionView:
    return SessionView(
        id=session.id,
        current_step=session.current_step,
        state=session.state.to_wire(),
        created_at=session.created_at.replace(tzinfo=timezone.utc),
        expires_at=session.expires_at.replace(tzinfo=timezone.utc),
        is_completed=session.is_completed,
    )


def _created(created: CreatedSession, store: OnboardingSessionStore) -> SessionCreated:
    return SessionCreated(
        session_id=created.session_id,
        session_token=created.session_token,
        csrf_token=created.csrf_token,
        expires_in=int(store.expiry.total_seconds()),
    )


async def _load(
    store: OnboardingSessionStore, session_id: str, session_token: str
) -> OnboardingSessionData:
    session = await store.get(session_id, session_token)
    if session is None:
        raise SessionUnavailableError()
    return session


# ── Create ──────────────────────────────────────────────────

@router.post("/start", response_model=SessionCreated)
async def start_onboarding(
    request: Request,
    body: StartSessionRequest | None = Body(default=None),
    store: OnboardingSessionStore = Depends(get_session_store),
):
    """Start a wizard session for the calling browser."""
    user_agent = request.headers.get("user-agent") or (body.user_agent if body else None)
    created = await store.create(user_agent=user_agent, ip_address=client_ip(request))
    return _created(created, store)


@router.post("/session", response_model=SessionCreated)
async def create_session(
    request: Request,
    body: CreateSessionRequest | None = Body(default=None),
    store: OnboardingSessionStore = Depends(get_session_store),
):
    """Start a session; ``ipAddress`` is used only when the peer address is unknown."""
    body = body or CreateSessionRequest()
    ip_address = client_ip(request)
    if ip_address == UNKNOWN_ADDRESS:
        ip_address = body.ip_address
    created = await store.create(user_agent=body.user_agent, ip_address=ip_address)
    return _created(created, store)


# ── Read ────────────────────────────────────────────────────

@router.get("/session", response_model=SessionEnvelope)
async def get_session(
    session_id: str = Query(alias="sessionId", min_length=1),
    session_token: str = Query(alias="sessionToken", min_length=64, max_length=64),
    store: OnboardingSessionStore = Depends(get_session_store),
):
    """Read the session and hand out a fresh CSRF token for the next write."""
    session = await _load(store, session_id, session_token)
    csrf_token = await store.rotate_csrf_token(session_id, session_token)
    if csrf_token is None:
        raise SessionUnavailableError()
    return SessionEnvelope(session=session_view(session), csrf_token=csrf_token)


# ── Update ──────────────────────────────────────────────────

async def _apply_update(
    body: CsrfUpdateSessionRequest,
    store: OnboardingSessionStore,
    config: Settings,
) -> SessionEnvelope:
    verify_csrf(body.csrf_token, config.csrf_max_age_seconds)
    current = await _load(store, body.session_id, body.session_token)
    verify_csrf(body.csrf_token, config.csrf_max_age_seconds, expected=current.csrf_token)

    result = await store.update_with_violations(
        body.session_id,
        body.session_token,
        current_step=body.current_step,
        state_patch=body.state.to_wire() if body.state is not None else None,
        is_completed=body.is_completed,
        csrf_token=issue_csrf_token().pack(),
    )
    if result.violations:
        raise StateValidationError(violations=[v.value for v in result.violations])
    if not result.ok:
        raise SessionUnavailableError()

    updated = await _load(store, body.session_id, body.session_token)
    logger.info(
        "Onboarding session updated: %s (step %d, %d locations)",
        updated.id,
        updated.current_step,
        len(updated.state.locations),
    )
    return SessionEnvelope(
        session=session_view(updated),
        message="Session updated successfully",
        csrf_token=updated.csrf_token,
    )


@router.put("/session", response_model=SessionEnvelope)
async def update_session(
    body: CsrfUpdateSessionRequest,
    store: OnboardingSessionStore = Depends(get_session_store),
    config: Settings = Depends(get_settings),
):
    return await _apply_update(body, store, config)


@router.put("/update", response_model=SessionEnvelope)
@router.post("/update", response_model=SessionEnvelope)
async def update_progress(
    body: CsrfUpdateSessionRequest,
    store: OnboardingSessionStore = Depends(get_session_store),
    config: Settings = Depends(get_settings),
):
    """Save wizard progress: step change and/or partial state."""
    return await _apply_update(body, store, config)


# ── Abandon ─────────────────────────────────────────────────

@router.delete("/session", response_model=MessageResponse)
async def delete_session(
    session_id: str = Query(alias="sessionId", min_length=1),
    session_token: str = Query(alias="sessionToken", min_length=64, max_length=64),
    store: OnboardingSessionStore = Depends(get_session_store),
):
    await _load(store, session_id, session_token)
    if not await store.delete(session_id):
        raise SessionUnavailableError()
    return MessageResponse(message="Session deleted successfully")


# ── Complete ────────────────────────────────────────────────

@router.post("/complete", response_model=SessionEnvelope)
async def complete_onboarding(
    body: CompleteSessionRequest,
    store: OnboardingSessionStore = Depends(get_session_store),
    config: Settings = Depends(get_settings),
):
    """Check the collected data is complete and close the session."""
    verify_csrf(body.csrf_token, config.csrf_max_age_seconds)
    session = await _load(store, body.session_id, body.session_token)
    verify_csrf(body.csrf_token, config.csrf_max_age_seconds, expected=session.csrf_token)

    if session.is_completed:
        return SessionEnvelope(
            session=session_view(session),
            message="Onboarding already completed",
        )

    state = session.state.to_wire()
    if not has_organization_name(state):
        raise StateValidationError(
            "Organization name is required for completion",
            violations=[Violation.MISSING_ORGANIZATION_NAME.value],
        )
    if not all_locations_complete(state):
        raise StateValidationError(
            "All locations must have name and address",
            violations=[Violation.LOCATIONS_INCOMPLETE.value],
        )

    result = await store.finish(
        body.session_id,
        body.session_token,
        csrf_token=issue_csrf_token().pack(),
    )
    if result.violations:
        raise StateValidationError(violations=[v.value for v in result.violations])
    if not result.ok:
        raise SessionUnavailableError()

    completed = await _load(store, body.session_id, body.session_token)
    logger.info(
        "Onboarding completed: %s (%d locations)",
        completed.id,
        len(completed.state.locations),
    )
    return SessionEnvelope(
        session=session_view(completed),
        message="Onboarding completed successfully",
        csrf_token=completed.csrf_token,
    )
