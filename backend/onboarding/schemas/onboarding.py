"""Pydantic schemas for onboarding sessions.

Two groups live here:

  - ``OnboardingState`` and its parts: the payload that is encrypted into
    ``onboarding_sessions.state``.  Field names are camelCase on the wire
    and inside the blob (aliases), snake_case in Python.
  - Request / response bodies for the onboarding API.

Every state field is optional-friendly except ``locations`` and
``metadata``; step-specific completeness is enforced by
``onboarding.services.state_validator``, not here.
"""

from datetime import datetime
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, field_validator

StepNumber = Annotated[int, Field(ge=1, le=4)]

MAX_LOCATIONS = 10


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# ── State payload ───────────────────────────────────────────

class Location(_CamelModel):
    id: str = Field(min_length=1, max_length=64)
    name: str = Field(max_length=100)
    address: str = Field(max_length=200)

    @property
    def is_complete(self) -> bool:
        return bool(self.name) and bool(self.address)


class StateMetadata(_CamelModel):
    started_at: datetime = Field(alias="startedAt")
    completed_steps: list[StepNumber] = Field(default_factory=list, alias="completedSteps")
    last_active_step: StepNumber = Field(alias="lastActiveStep")

    @field_validator("completed_steps")
    @classmethod
    def _dedupe(cls, steps: list[int]) -> list[int]:
        # Set semantics, insertion order kept
        return list(dict.fromkeys(steps))


class OnboardingState(_CamelModel):
    organization_name: str | None = Field(
        default=None, alias="organizationName", min_length=1, max_length=100
    )
    first_name: str | None = Field(
        default=None, alias="firstName", min_length=1, max_length=50
    )
    last_name: str | None = Field(
        default=None, alias="lastName", min_length=1, max_length=50
    )
    locations: list[Location] = Field(min_length=1, max_length=MAX_LOCATIONS)
    metadata: StateMetadata

    def to_wire(self) -> dict:
        """JSON-ready dict with camelCase keys (the encrypted form)."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class StatePatch(_CamelModel):
    """Partial state accepted from the wizard on update."""

    organization_name: str | None = Field(default=None, alias="organizationName")
    first_name: str | None = Field(default=None, alias="firstName")
    last_name: str | None = Field(default=None, alias="lastName")
    locations: list[Location] | None = None

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_unset=True)


# ── Requests ────────────────────────────────────────────────

class StartSessionRequest(_CamelModel):
    user_agent: str | None = Field(default=None, alias="userAgent", max_length=500)
    return_to: str | None = Field(default=None, alias="returnTo")


class CreateSessionRequest(_CamelModel):
    user_agent: str | None = Field(default=None, alias="userAgent", max_length=500)
    ip_address: str | None = Field(default=None, alias="ipAddress", max_length=45)


class SessionCredentials(_CamelModel):
    session_id: str = Field(alias="sessionId", min_length=1)
    session_token: str = Field(alias="sessionToken", min_length=64, max_length=64)


class UpdateSessionRequest(SessionCredentials):
    current_step: StepNumber | None = Field(default=None, alias="currentStep")
    state: StatePatch | None = None
    is_completed: bool | None = Field(default=None, alias="isCompleted")


class CsrfUpdateSessionRequest(UpdateSessionRequest):
    csrf_token: str = Field(alias="csrfToken", min_length=1)


class CompleteSessionRequest(SessionCredentials):
    csrf_token: str = Field(alias="csrfToken", min_length=1)


class RecoveryRequest(SessionCredentials):
    repair_missing_data: bool = Field(default=True, alias="repairMissingData")


class ForceResumeRequest(SessionCredentials):
    target_step: StepNumber = Field(alias="targetStep")
    csrf_token: str = Field(alias="csrfToken", min_length=1)


class CleanupRequest(_CamelModel):
    max_age: int | None = Field(default=None, alias="maxAge", ge=1, le=168)
    batch_size: int | None = Field(default=None, alias="batchSize", ge=10, le=1000)
    dry_run: bool = Field(default=False, alias="dryRun")
    emergency: bool = False


# ── Responses ───────────────────────────────────────────────

class _CamelOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class SessionCreated(_CamelOut):
    success: bool = True
    session_id: str = Field(alias="sessionId")
    session_token: str = Field(alias="sessionToken")
    csrf_token: str = Field(alias="csrfToken")
    expires_in: int = Field(alias="expiresIn")


class SessionView(_CamelOut):
    id: str
    current_step: int = Field(alias="currentStep")
    state: dict
    created_at: datetime | None = Field(default=None, alias="createdAt")
    expires_at: datetime = Field(alias="expiresAt")
    is_completed: bool = Field(alias="isCompleted")


class SessionEnvelope(_CamelOut):
    success: bool = True
    session: SessionView
    message: str | None = None
    # CSRF token now bound to the session; earlier ones stop matching
    csrf_token: str | None = Field(default=None, alias="csrfToken")


class MessageResponse(_CamelOut):
    success: bool = True
    message: str


class RecoveryResponse(_CamelOut):
    success: bool
    can_continue: bool = Field(alias="canContinue")
    next_step: int | None = Field(default=None, alias="nextStep")
    session: SessionView | None = None
    missing_data: list[str] | None = Field(default=None, alias="missingData")
    reason: str | None = None
    csrf_token: str | None = Field(default=None, alias="csrfToken")


class ForceResumeResponse(_CamelOut):
    success: bool = True
    message: str
    current_step: int = Field(alias="currentStep")
    csrf_token: str | None = Field(default=None, alias="csrfToken")
