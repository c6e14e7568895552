"""Session store: CRUD over ``onboarding_sessions``.

Flow per operation:

  create  → seed default state, validate, encrypt, enforce per-IP cap,
            insert with SHA-256(raw token) and a fresh CSRF token
  get     → select by (id, token hash); expired rows are deleted on sight;
            decrypt + validate; any failure reads as "no session"
  update  → get, merge the patch field by field, advance step metadata,
            validate, encrypt, write.  Rejects without writing on failure.
            Step metadata is never taken from the patch.
  finish  → update onto the last step with every step marked done

Every call opens its own database session: there is no in-process cache,
so each read/update is a round trip to the store.

Concurrency: ``update`` is last-writer-wins.  Two concurrent updates of the
same session can silently drop one side's change; the wizard submits one
step at a time per session.  The per-IP cap is read-then-delete and only
dampens abuse; it is not an exact quota under concurrent creates.
"""

import asyncio
import hashlib
import logging
import secrets
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from onboarding.database import utcnow
from onboarding.middleware.exceptions import SessionStoreError
from onboarding.models.onboarding_session import OnboardingSession
from onboarding.schemas.onboarding import OnboardingState
from onboarding.services.csrf import issue_csrf_token
from onboarding.services.encryption import DecryptFailure, StateCipher
from onboarding.services.state_validator import (
    MAX_STEP,
    MIN_STEP,
    Violation,
    default_state,
    merge_state,
    sanitize_patch,
    step_in_range,
    validate_state,
)

logger = logging.getLogger("onboarding.sessions")

TOKEN_BYTES = 32
SESSION_ID_PREFIX = "onboard_"
UNKNOWN_ADDRESS = "unknown"
MAX_USER_AGENT_LENGTH = 500


def hash_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def generate_session_id() -> str:
    return f"{SESSION_ID_PREFIX}{secrets.token_hex(16)}_{int(time.time() * 1000)}"


def normalize_ip(ip_address: str | None) -> str | None:
    """Empty and "unknown" origins are stored as NULL (and never capped)."""
    if not ip_address:
        return None
    ip_address = ip_address.strip()
    if not ip_address or ip_address.lower() == UNKNOWN_ADDRESS:
        return None
    return ip_address


# ── Value objects ───────────────────────────────────────────

@dataclass(frozen=True)
class CreatedSession:
    session_id: str
    session_token: str
    csrf_token: str
    expires_at: datetime


@dataclass
class OnboardingSessionData:
    """A decoded, validated session as handed to callers."""

    id: str
    session_token_hash: str
    current_step: int
    state: OnboardingState
    created_at: datetime
    expires_at: datetime
    updated_at: datetime
    is_completed: bool
    user_agent: str | None = None
    ip_address: str | None = None
    csrf_token: str | None = None


@dataclass
class SessionSnapshot:
    """Undecided view of a stored row, for recovery.

    ``raw_state`` is the decrypted dict even when it fails validation;
    ``decrypt_failed`` means there is nothing to look at.
    """

    id: str
    current_step: int
    is_completed: bool
    created_at: datetime
    expires_at: datetime
    updated_at: datetime
    raw_state: dict | None = None
    decrypt_failed: bool = False
    violations: list[Violation] = field(default_factory=list)
    state: OnboardingState | None = None
    user_agent: str | None = None
    ip_address: str | None = None
    csrf_token: str | None = None
    session_token_hash: str = ""

    @property
    def usable(self) -> bool:
        return not self.decrypt_failed and self.state is not None and not self.violations

    def to_session(self) -> OnboardingSessionData:
        return OnboardingSessionData(
            id=self.id,
            session_token_hash=self.session_token_hash,
            current_step=self.current_step,
            state=self.state,
            created_at=self.created_at,
            expires_at=self.expires_at,
            updated_at=self.updated_at,
            is_completed=self.is_completed,
            user_agent=self.user_agent,
            ip_address=self.ip_address,
            csrf_token=self.csrf_token,
        )


@dataclass
class UpdateResult:
    ok: bool
    violations: list[Violation] = field(default_factory=list)

    def __bool__(self) -> bool:
        return self.ok


@dataclass
class SessionStats:
    total: int = 0
    active: int = 0
    expired: int = 0
    completed: int = 0


# ── Store ───────────────────────────────────────────────────

class OnboardingSessionStore:
    """Persistence for onboarding sessions.  One instance per process."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cipher: StateCipher,
        *,
        expiry_hours: int = 24,
        max_sessions_per_ip: int = 10,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._cipher = cipher
        self.expiry = timedelta(hours=expiry_hours)
        self.max_sessions_per_ip = max_sessions_per_ip
        self.clock = clock

    # ── crypto helpers (KDF is slow, keep it off the event loop) ──

    async def _encrypt(self, state: dict) -> str:
        return await asyncio.to_thread(self._cipher.encrypt, state)

    async def _decrypt(self, blob: str) -> Any:
        return await asyncio.to_thread(self._cipher.decrypt, blob)

    # ── create ─────────────────────────────────────────────────

    async def create(
        self,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> CreatedSession:
        """Start a session.  The raw token is returned here and never again."""
        now = self.clock()
        session_id = generate_session_id()
        raw_token = secrets.token_hex(TOKEN_BYTES)
        ip_address = normalize_ip(ip_address)

        initial = validate_state(default_state(now))
        if not initial.ok:
            # Default state is static; reaching this is a programming error
            raise SessionStoreError("Default onboarding state is invalid")
        encrypted = await self._encrypt(initial.state.to_wire())

        if ip_address:
            await self._enforce_ip_cap(ip_address, now)

        csrf_token = issue_csrf_token().pack()
        row = OnboardingSession(
            id=session_id,
            session_token=hash_token(raw_token),
            current_step=1,
            state=encrypted,
            created_at=now,
            expires_at=now + self.expiry,
            updated_at=now,
            is_completed=False,
            user_agent=user_agent[:MAX_USER_AGENT_LENGTH] if user_agent else None,
            ip_address=ip_address,
            csrf_token=csrf_token,
        )

        try:
            async with self._session_factory() as db:
                db.add(row)
                await db.commit()
        except SQLAlchemyError:
            logger.exception("Failed to create onboarding session %s", session_id)
            raise SessionStoreError("Failed to create onboarding session")

        logger.info(
            "Onboarding session created: %s (expires %s, ip=%s)",
            session_id,
            row.expires_at.isoformat(),
            ip_address,
        )
        return CreatedSession(
            session_id=session_id,
            session_token=raw_token,
            csrf_token=csrf_token,
            expires_at=row.expires_at,
        )

    async def _enforce_ip_cap(self, ip_address: str, now: datetime) -> None:
        """Trim the address down to N-1 live sessions before a new insert.

        Best effort: a failure here is logged and creation goes ahead.
        """
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    select(OnboardingSession.id)
                    .where(
                        OnboardingSession.ip_address == ip_address,
                        OnboardingSession.expires_at > now,
                    )
                    .order_by(OnboardingSession.created_at.desc())
                )
                ids = [row[0] for row in result.all()]
                if len(ids) < self.max_sessions_per_ip:
                    return

                excess = ids[self.max_sessions_per_ip - 1:]
                await db.execute(
                    delete(OnboardingSession).where(OnboardingSession.id.in_(excess))
                )
                await db.commit()
        except SQLAlchemyError:
            logger.exception("Per-address session cap check failed for %s", ip_address)
            return

        logger.info(
            "Trimmed %d excess onboarding sessions for %s", len(excess), ip_address
        )

    # ── read ───────────────────────────────────────────────────

    async def load_for_recovery(
        self, session_id: str, session_token: str
    ) -> SessionSnapshot | None:
        """Read a session keeping decrypt/validation detail.

        None means not found, token mismatch, expired (and now deleted), or
        a backend failure.  Only the recovery manager should look past
        ``usable``.
        """
        token_hash = hash_token(session_token)
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    select(OnboardingSession).where(
                        OnboardingSession.id == session_id,
                        OnboardingSession.session_token == token_hash,
                    )
                )
                row = result.scalar_one_or_none()
        except SQLAlchemyError:
            logger.exception("Failed to read onboarding session %s", session_id)
            return None

        if row is None:
            logger.debug("Session not found or token mismatch: %s", session_id)
            return None

        if row.expires_at < self.clock():
            logger.info("Session expired: %s (expired %s)", session_id, row.expires_at.isoformat())
            await self.delete(session_id)
            return None

        snapshot = SessionSnapshot(
            id=row.id,
            current_step=row.current_step,
            is_completed=row.is_completed,
            created_at=row.created_at,
            expires_at=row.expires_at,
            updated_at=row.updated_at,
            user_agent=row.user_agent,
            ip_address=row.ip_address,
            csrf_token=row.csrf_token,
            session_token_hash=row.session_token,
        )

        try:
            raw_state = await self._decrypt(row.state)
        except DecryptFailure:
            logger.error("Failed to decrypt state of session %s", session_id)
            snapshot.decrypt_failed = True
            snapshot.violations = [Violation.DECRYPT_FAILED]
            return snapshot

        snapshot.raw_state = raw_state if isinstance(raw_state, dict) else None
        result = validate_state(raw_state)
        if result.ok:
            snapshot.state = result.state
        else:
            logger.warning(
                "Stored state of session %s failed validation: %s",
                session_id,
                [v.value for v in result.violations],
            )
            snapshot.violations = result.violations
        return snapshot

    async def get(
        self, session_id: str, session_token: str
    ) -> OnboardingSessionData | None:
        """Decoded session, or None when unavailable for any reason."""
        snapshot = await self.load_for_recovery(session_id, session_token)
        if snapshot is None or not snapshot.usable:
            return None
        return snapshot.to_session()

    # ── update ─────────────────────────────────────────────────

    async def update_with_violations(
        self,
        session_id: str,
        session_token: str,
        *,
        current_step: int | None = None,
        state_patch: Mapping | OnboardingState | None = None,
        is_completed: bool | None = None,
        csrf_token: str | None = None,
    ) -> UpdateResult:
        """Apply a partial update; report violations when rejected."""
        return await self._update(
            session_id,
            session_token,
            current_step=current_step,
            state_patch=state_patch,
            is_completed=is_completed,
            csrf_token=csrf_token,
        )

    async def finish(
        self,
        session_id: str,
        session_token: str,
        csrf_token: str | None = None,
    ) -> UpdateResult:
        """Complete the session on the last step with every step marked done."""
        return await self._update(
            session_id,
            session_token,
            current_step=MAX_STEP,
            is_completed=True,
            csrf_token=csrf_token,
            all_steps_done=True,
        )

    async def _update(
        self,
        session_id: str,
        session_token: str,
        *,
        current_step: int | None = None,
        state_patch: Mapping | OnboardingState | None = None,
        is_completed: bool | None = None,
        csrf_token: str | None = None,
        all_steps_done: bool = False,
    ) -> UpdateResult:
        if current_step is not None and not step_in_range(current_step):
            return UpdateResult(False, [Violation.INVALID_CURRENT_STEP])

        session = await self.get(session_id, session_token)
        if session is None:
            return UpdateResult(False)

        if isinstance(state_patch, OnboardingState):
            state_patch = state_patch.to_wire()
        patch = sanitize_patch(state_patch) if state_patch else None
        merged = merge_state(session.state.to_wire(), patch)

        new_step = session.current_step
        if current_step is not None:
            _advance_metadata(merged, session.current_step, current_step)
            new_step = current_step
        if all_steps_done:
            _mark_all_steps_done(merged)

        result = validate_state(merged)
        if not result.ok:
            logger.warning(
                "Rejected update of session %s: %s",
                session_id,
                [v.value for v in result.violations],
            )
            return UpdateResult(False, result.violations)

        values: dict[str, Any] = {
            "current_step": new_step,
            "state": await self._encrypt(result.state.to_wire()),
            # completion is one-way
            "is_completed": session.is_completed or bool(is_completed),
            "updated_at": self.clock(),
        }
        if csrf_token is not None:
            values["csrf_token"] = csrf_token

        ok = await self._write(session_id, session_token, values)
        if ok:
            logger.debug(
                "Session %s updated (step=%s, completed=%s)",
                session_id,
                new_step,
                values["is_completed"],
            )
        return UpdateResult(ok)

    async def update(
        self,
        session_id: str,
        session_token: str,
        *,
        current_step: int | None = None,
        state_patch: Mapping | OnboardingState | None = None,
        is_completed: bool | None = None,
        csrf_token: str | None = None,
    ) -> bool:
        result = await self.update_with_violations(
            session_id,
            session_token,
            current_step=current_step,
            state_patch=state_patch,
            is_completed=is_completed,
            csrf_token=csrf_token,
        )
        return result.ok

    async def complete(self, session_id: str, session_token: str) -> bool:
        return await self.update(session_id, session_token, is_completed=True)

    async def rotate_csrf_token(self, session_id: str, session_token: str) -> str | None:
        """Bind a freshly issued CSRF token to the session and return it."""
        csrf_token = issue_csrf_token().pack()
        if not await self._write(session_id, session_token, {"csrf_token": csrf_token}):
            return None
        return csrf_token

    async def repair(
        self,
        session_id: str,
        session_token: str,
        current_step: int,
        state: Mapping,
    ) -> bool:
        """Replace step and state wholesale (recovery only, no merge)."""
        if not step_in_range(current_step):
            return False
        result = validate_state(state)
        if not result.ok:
            logger.warning(
                "Repaired state of session %s is still invalid: %s",
                session_id,
                [v.value for v in result.violations],
            )
            return False

        values = {
            "current_step": current_step,
            "state": await self._encrypt(result.state.to_wire()),
            "updated_at": self.clock(),
        }
        return await self._write(session_id, session_token, values)

    async def _write(self, session_id: str, session_token: str, values: dict) -> bool:
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    update(OnboardingSession)
                    .where(
                        OnboardingSession.id == session_id,
                        OnboardingSession.session_token == hash_token(session_token),
                    )
                    .values(**values)
                )
                await db.commit()
        except SQLAlchemyError:
            logger.exception("Failed to update onboarding session %s", session_id)
            return False
        # Row may have been deleted between read and write
        return result.rowcount > 0

    # ── delete ─────────────────────────────────────────────────

    async def delete(self, session_id: str) -> bool:
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    delete(OnboardingSession).where(OnboardingSession.id == session_id)
                )
                await db.commit()
        except SQLAlchemyError:
            logger.exception("Failed to delete onboarding session %s", session_id)
            return False

        deleted = result.rowcount > 0
        if deleted:
            logger.info("Onboarding session deleted: %s", session_id)
        return deleted

    async def delete_many(self, session_ids: list[str]) -> int:
        """Delete by id.  Raises ``SessionStoreError`` on backend failure."""
        if not session_ids:
            return 0
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    delete(OnboardingSession).where(OnboardingSession.id.in_(session_ids))
                )
                await db.commit()
        except SQLAlchemyError as exc:
            logger.exception("Failed to delete %d onboarding sessions", len(session_ids))
            raise SessionStoreError("Failed to delete onboarding sessions") from exc
        return result.rowcount

    async def delete_expired(self) -> int:
        """Bulk-delete rows past ``expires_at``.  Raises ``SessionStoreError``."""
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    delete(OnboardingSession).where(OnboardingSession.expires_at < self.clock())
                )
                await db.commit()
        except SQLAlchemyError as exc:
            logger.exception("Failed to delete expired onboarding sessions")
            raise SessionStoreError("Failed to delete expired onboarding sessions") from exc

        logger.info("Deleted %d expired onboarding sessions", result.rowcount)
        return result.rowcount

    # ── queries (janitor / monitoring) ─────────────────────────

    async def find_ids(self, *criteria, limit: int | None = None) -> list[str]:
        """Ids of sessions matching all ``criteria``, oldest first."""
        stmt = (
            select(OnboardingSession.id)
            .where(*criteria)
            .order_by(OnboardingSession.created_at)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        try:
            async with self._session_factory() as db:
                result = await db.execute(stmt)
                return [row[0] for row in result.all()]
        except SQLAlchemyError as exc:
            logger.exception("Onboarding session query failed")
            raise SessionStoreError("Onboarding session query failed") from exc

    async def count(self, *criteria) -> int:
        stmt = select(func.count()).select_from(OnboardingSession).where(*criteria)
        try:
            async with self._session_factory() as db:
                return (await db.execute(stmt)).scalar_one()
        except SQLAlchemyError as exc:
            logger.exception("Onboarding session count failed")
            raise SessionStoreError("Onboarding session count failed") from exc

    async def get_stats(self) -> SessionStats:
        now = self.clock()
        total = await self.count()
        active = await self.count(
            OnboardingSession.expires_at > now,
            OnboardingSession.is_completed.is_(False),
        )
        completed = await self.count(OnboardingSession.is_completed.is_(True))
        return SessionStats(
            total=total,
            active=active,
            expired=total - active - completed,
            completed=completed,
        )

    async def iter_live_snapshots(self, batch_size: int = 100):
        """Yield snapshots of every unexpired, uncompleted session.

        Reads rows directly (no bearer token) for operational scans.
        """
        offset = 0
        while True:
            try:
                async with self._session_factory() as db:
                    result = await db.execute(
                        select(OnboardingSession)
                        .where(
                            OnboardingSession.expires_at > self.clock(),
                            OnboardingSession.is_completed.is_(False),
                        )
                        .order_by(OnboardingSession.created_at, OnboardingSession.id)
                        .offset(offset)
                        .limit(batch_size)
                    )
                    rows = result.scalars().all()
            except SQLAlchemyError as exc:
                logger.exception("Onboarding session scan failed")
                raise SessionStoreError("Onboarding session scan failed") from exc

            if not rows:
                return
            for row in rows:
                yield await self._snapshot_of(row)
            offset += len(rows)

    async def _snapshot_of(self, row: OnboardingSession) -> SessionSnapshot:
        snapshot = SessionSnapshot(
            id=row.id,
            current_step=row.current_step,
            is_completed=row.is_completed,
            created_at=row.created_at,
            expires_at=row.expires_at,
            updated_at=row.updated_at,
        )
        try:
            raw_state = await self._decrypt(row.state)
        except DecryptFailure:
            snapshot.decrypt_failed = True
            snapshot.violations = [Violation.DECRYPT_FAILED]
            return snapshot
        snapshot.raw_state = raw_state if isinstance(raw_state, dict) else None
        result = validate_state(raw_state)
        snapshot.state = result.state
        snapshot.violations = result.violations
        return snapshot


def _advance_metadata(state: dict, previous_step: int, new_step: int) -> None:
    """Step bookkeeping: a step is marked complete when the wizard leaves it forward."""
    metadata = state.get("metadata")
    if not isinstance(metadata, Mapping):
        return  # validation will reject
    metadata = dict(metadata)
    steps = metadata.get("completedSteps")
    steps = list(steps) if isinstance(steps, list) else []
    if new_step > previous_step and previous_step not in steps:
        steps.append(previous_step)
    last_active = metadata.get("lastActiveStep")
    if isinstance(last_active, int) and not isinstance(last_active, bool):
        metadata["lastActiveStep"] = max(last_active, new_step)
    else:
        metadata["lastActiveStep"] = new_step
    metadata["completedSteps"] = steps
    state["metadata"] = metadata


def _mark_all_steps_done(state: dict) -> None:
    metadata = state.get("metadata")
    if not isinstance(metadata, Mapping):
        return
    metadata = dict(metadata)
    metadata["completedSteps"] = list(range(MIN_STEP, MAX_STEP + 1))
    metadata["lastActiveStep"] = MAX_STEP
    state["metadata"] = metadata
