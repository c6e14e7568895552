"""Recovery of interrupted onboarding sessions.

The recovery manager is the only component that looks past "session
unavailable": it reads through ``OnboardingSessionStore.load_for_recovery``
to see decrypt and validation detail, runs the step-machine checks, repairs
what can be repaired without touching user-entered values, and works out
where the wizard should resume.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass

from onboarding.middleware.exceptions import SessionStoreError
from onboarding.services.encryption import EncryptFailure
from onboarding.services.session_store import (
    OnboardingSessionData,
    OnboardingSessionStore,
    SessionSnapshot,
)
from onboarding.services.state_validator import (
    MAX_STEP,
    MIN_STEP,
    PLACEHOLDER_LOCATION,
    Violation,
    check_step_consistency,
    clamp_step,
    completed_steps,
    has_complete_location,
    has_organization_name,
    step_in_range,
    step_prerequisites_met,
)

logger = logging.getLogger("onboarding.recovery")

REASON_NOT_FOUND = "not found or expired"
REASON_COMPLETED = "already completed"
REASON_CORRUPTED = "session data is corrupted"
REASON_UNDECRYPTABLE = "session data could not be decrypted"
REASON_FAILED = "recovery process failed"

REPAIRABLE = frozenset({
    Violation.LOCATIONS_MISSING,
    Violation.INCONSISTENT_STEP_PROGRESSION,
    Violation.INVALID_CURRENT_STEP,
})


@dataclass
class RecoveryResult:
    success: bool
    can_continue: bool
    next_step: int | None = None
    missing_data: list[str] | None = None
    reason: str | None = None
    session: OnboardingSessionData | None = None


@dataclass(frozen=True)
class ResumeCheck:
    can_resume: bool
    reason: str | None = None


@dataclass
class RecoveryStats:
    total_sessions: int = 0
    recoverable_sessions: int = 0
    corrupted_sessions: int = 0
    completed_sessions: int = 0


# ── Pure helpers ────────────────────────────────────────────

def collect_violations(snapshot: SessionSnapshot) -> list[Violation]:
    """Structural violations from the read plus the step-machine checks."""
    if snapshot.decrypt_failed:
        return [Violation.DECRYPT_FAILED]
    if snapshot.raw_state is None:
        return [Violation.SCHEMA_INVALID]

    violations = list(snapshot.violations)
    for violation in check_step_consistency(snapshot.current_step, snapshot.raw_state):
        if violation not in violations:
            violations.append(violation)
    return violations


def repair_state(
    current_step: int,
    raw: Mapping,
    violations: list[Violation],
) -> tuple[int, dict, bool]:
    """Fix the repairable defects in ``violations``.

    Returns ``(step, state, changed)``.  Applying it to its own output with
    the output's violations is a no-op.
    """
    state = dict(raw)
    step = current_step
    changed = False

    if Violation.INVALID_CURRENT_STEP in violations:
        clamped = clamp_step(current_step)
        if clamped != current_step:
            step = clamped
            changed = True

    if Violation.LOCATIONS_MISSING in violations:
        locations = state.get("locations")
        if not isinstance(locations, list) or not locations:
            state["locations"] = [dict(PLACEHOLDER_LOCATION)]
            changed = True

    if Violation.INCONSISTENT_STEP_PROGRESSION in violations:
        metadata = state.get("metadata")
        if isinstance(metadata, Mapping):
            metadata = dict(metadata)
            last_active = metadata.get("lastActiveStep")
            if not isinstance(last_active, int) or isinstance(last_active, bool):
                last_active = step
            done = completed_steps(state)
            fixed_done = [s for s in done if s < step]
            fixed_last = max(step, last_active)
            if fixed_done != done or fixed_last != metadata.get("lastActiveStep"):
                metadata["completedSteps"] = fixed_done
                metadata["lastActiveStep"] = fixed_last
                state["metadata"] = metadata
                changed = True

    return step, state, changed


def determine_next_step(current_step: int, state: Mapping) -> int:
    """Where the wizard should resume for a defect-free session."""
    if current_step not in completed_steps(state):
        return current_step

    target = min(current_step + 1, MAX_STEP)
    if step_prerequisites_met(target, state):
        return target
    for step in range(target - 1, MIN_STEP - 1, -1):
        if step_prerequisites_met(step, state):
            return step
    return MIN_STEP


def resume_blocker(target_step: int, state: Mapping) -> str | None:
    """Why ``target_step`` cannot be entered, or None if it can."""
    if not step_in_range(target_step):
        return "Invalid target step"
    if step_prerequisites_met(target_step, state):
        return None
    if not has_organization_name(state):
        return f"Organization name required for step {target_step}"
    if not has_complete_location(state):
        return f"Valid location required for step {target_step}"
    return f"Step {target_step} prerequisites not met"


# ── Manager ─────────────────────────────────────────────────

class OnboardingRecoveryManager:
    def __init__(self, store: OnboardingSessionStore):
        self.store = store

    async def recover_session(
        self,
        session_id: str,
        session_token: str,
        repair: bool = True,
    ) -> RecoveryResult:
        try:
            return await self._recover(session_id, session_token, repair)
        except (SessionStoreError, EncryptFailure):
            logger.exception("Session recovery failed: %s", session_id)
            return RecoveryResult(success=False, can_continue=False, reason=REASON_FAILED)

    async def _recover(
        self, session_id: str, session_token: str, repair: bool
    ) -> RecoveryResult:
        snapshot = await self.store.load_for_recovery(session_id, session_token)
        if snapshot is None:
            return RecoveryResult(success=False, can_continue=False, reason=REASON_NOT_FOUND)

        if snapshot.decrypt_failed:
            logger.warning("Session %s cannot be decrypted; not repairable", session_id)
            return RecoveryResult(
                success=False,
                can_continue=False,
                reason=REASON_UNDECRYPTABLE,
                missing_data=[Violation.DECRYPT_FAILED.value],
            )

        if snapshot.is_completed and snapshot.usable:
            return RecoveryResult(
                success=True,
                can_continue=False,
                reason=REASON_COMPLETED,
                session=snapshot.to_session(),
            )

        violations = collect_violations(snapshot)
        if violations:
            logger.warning(
                "Session %s failed validation during recovery: %s",
                session_id,
                [v.value for v in violations],
            )
            if repair and await self._repair(snapshot, session_token, violations):
                # one more pass, no further repair
                return await self._recover(session_id, session_token, repair=False)
            return RecoveryResult(
                success=False,
                can_continue=False,
                reason=REASON_CORRUPTED,
                missing_data=[v.value for v in violations],
            )

        session = snapshot.to_session()
        next_step = determine_next_step(session.current_step, session.state.to_wire())
        logger.info(
            "Session recovered: %s (step %d → %d, completed %s)",
            session_id,
            session.current_step,
            next_step,
            session.state.metadata.completed_steps,
        )
        return RecoveryResult(
            success=True,
            can_continue=True,
            next_step=next_step,
            session=session,
        )

    async def _repair(
        self,
        snapshot: SessionSnapshot,
        session_token: str,
        violations: list[Violation],
    ) -> bool:
        unrepairable = [v for v in violations if v not in REPAIRABLE]
        if unrepairable:
            logger.info(
                "Session %s has unrepairable defects: %s",
                snapshot.id,
                [v.value for v in unrepairable],
            )
            return False

        step, state, changed = repair_state(
            snapshot.current_step, snapshot.raw_state, violations
        )
        if not changed:
            return False

        repaired = await self.store.repair(snapshot.id, session_token, step, state)
        if repaired:
            logger.info(
                "Session data repaired: %s (%s)",
                snapshot.id,
                [v.value for v in violations],
            )
        return repaired

    async def can_resume_from_step(
        self, session_id: str, session_token: str, target_step: int
    ) -> ResumeCheck:
        recovery = await self.recover_session(session_id, session_token, repair=False)
        if not recovery.success or recovery.session is None:
            return ResumeCheck(False, recovery.reason)
        if recovery.session.is_completed:
            return ResumeCheck(False, REASON_COMPLETED)

        blocker = resume_blocker(target_step, recovery.session.state.to_wire())
        if blocker:
            return ResumeCheck(False, blocker)
        return ResumeCheck(True)

    async def force_resume_from_step(
        self, session_id: str, session_token: str, target_step: int
    ) -> ResumeCheck:
        """Move the wizard to ``target_step`` if its prerequisites hold."""
        check = await self.can_resume_from_step(session_id, session_token, target_step)
        if not check.can_resume:
            return check

        try:
            ok = await self.store.update(session_id, session_token, current_step=target_step)
        except (SessionStoreError, EncryptFailure):
            logger.exception("Force resume failed: %s", session_id)
            ok = False
        if not ok:
            return ResumeCheck(False, "Force resume failed")

        logger.info("Forced session resume: %s → step %d", session_id, target_step)
        return ResumeCheck(True)

    async def get_recovery_stats(self) -> RecoveryStats:
        """Scan live sessions and classify them by whether recovery would succeed."""
        try:
            totals = await self.store.get_stats()
            recoverable = corrupted = 0
            async for snapshot in self.store.iter_live_snapshots():
                violations = collect_violations(snapshot)
                if all(v in REPAIRABLE for v in violations):
                    recoverable += 1
                else:
                    corrupted += 1
        except SessionStoreError:
            logger.exception("Failed to compute recovery stats")
            return RecoveryStats()

        return RecoveryStats(
            total_sessions=totals.total,
            recoverable_sessions=recoverable,
            corrupted_sessions=corrupted,
            completed_sessions=totals.completed,
        )
