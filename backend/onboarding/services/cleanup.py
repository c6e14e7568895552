"""Staleness sweeps over onboarding sessions.

Four independent policies, run in this order by ``run_cleanup``:

  expired   expires_at < now
  orphaned  not completed, not expired, updated_at older than 24h
  stuck     not completed, not expired, current_step == 1,
            created_at older than 6h
  old       not completed, created_at older than max age (72h)

Each policy supports a dry run that counts instead of deleting.  A failing
policy is recorded in ``CleanupResult.errors`` and the rest still run.

The janitor holds no timer; see ``onboarding.services.scheduler`` and
``onboarding.cli`` for what invokes it.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta

from onboarding.middleware.exceptions import SessionStoreError
from onboarding.models.onboarding_session import OnboardingSession
from onboarding.services.session_store import OnboardingSessionStore

logger = logging.getLogger("onboarding.cleanup")

EMERGENCY_MAX_AGE_HOURS = 24
EMERGENCY_BATCH_SIZE = 500


@dataclass
class CleanupOptions:
    max_age_hours: int | None = None
    batch_size: int | None = None
    dry_run: bool = False


@dataclass
class CleanupResult:
    success: bool
    cleaned_sessions: int
    by_policy: dict[str, int] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    duration_ms: int = 0
    dry_run: bool = False


@dataclass
class CleanupStats:
    total: int = 0
    expired: int = 0
    orphaned: int = 0
    stuck: int = 0
    old: int = 0


def recommendations(stats: CleanupStats) -> dict:
    """Operator hints shown next to the cleanup stats."""
    if stats.old > 0:
        priority = "high"
    elif stats.orphaned > 50:
        priority = "medium"
    else:
        priority = "low"
    return {
        "needsCleanup": stats.orphaned > 10 or stats.stuck > 5 or stats.old > 0,
        "priority": priority,
        "estimatedCleanupCount": stats.expired + stats.orphaned + stats.stuck + stats.old,
    }


class OnboardingCleanupManager:
    def __init__(
        self,
        store: OnboardingSessionStore,
        *,
        max_age_hours: int = 72,
        orphaned_hours: int = 24,
        stuck_hours: int = 6,
        batch_size: int = 100,
    ):
        self.store = store
        self.max_age_hours = max_age_hours
        self.orphaned_threshold = timedelta(hours=orphaned_hours)
        self.stuck_threshold = timedelta(hours=stuck_hours)
        self.batch_size = batch_size

    # ── criteria ───────────────────────────────────────────────

    def _orphaned_criteria(self, now):
        return (
            OnboardingSession.is_completed.is_(False),
            OnboardingSession.expires_at > now,
            OnboardingSession.updated_at < now - self.orphaned_threshold,
        )

    def _stuck_criteria(self, now):
        # Creation time, not update time: a session edited in place on
        # step 1 is still stuck.
        return (
            OnboardingSession.is_completed.is_(False),
            OnboardingSession.expires_at > now,
            OnboardingSession.current_step == 1,
            OnboardingSession.created_at < now - self.stuck_threshold,
        )

    def _old_criteria(self, now, max_age_hours: int):
        return (
            OnboardingSession.is_completed.is_(False),
            OnboardingSession.created_at < now - timedelta(hours=max_age_hours),
        )

    async def _sweep(self, policy: str, criteria, dry_run: bool, batch_size: int) -> int:
        if dry_run:
            count = await self.store.count(*criteria)
            logger.info("Dry run: would clean %d %s sessions", count, policy)
            return count

        cleaned = 0
        while True:
            ids = await self.store.find_ids(*criteria, limit=batch_size)
            if not ids:
                break
            deleted = await self.store.delete_many(ids)
            cleaned += deleted
            if deleted == 0 or len(ids) < batch_size:
                break

        logger.info("Cleaned %d %s sessions", cleaned, policy)
        return cleaned

    # ── policies ───────────────────────────────────────────────

    async def clean_expired_sessions(self, dry_run: bool = False) -> int:
        if dry_run:
            count = await self.store.count(OnboardingSession.expires_at < self.store.clock())
            logger.info("Dry run: would clean %d expired sessions", count)
            return count
        return await self.store.delete_expired()

    async def clean_orphaned_sessions(
        self, dry_run: bool = False, batch_size: int | None = None
    ) -> int:
        criteria = self._orphaned_criteria(self.store.clock())
        return await self._sweep("orphaned", criteria, dry_run, batch_size or self.batch_size)

    async def clean_stuck_sessions(
        self, dry_run: bool = False, batch_size: int | None = None
    ) -> int:
        criteria = self._stuck_criteria(self.store.clock())
        return await self._sweep("stuck", criteria, dry_run, batch_size or self.batch_size)

    async def clean_old_sessions(
        self,
        max_age_hours: int | None = None,
        dry_run: bool = False,
        batch_size: int | None = None,
    ) -> int:
        max_age_hours = max_age_hours or self.max_age_hours
        criteria = self._old_criteria(self.store.clock(), max_age_hours)
        return await self._sweep("old", criteria, dry_run, batch_size or self.batch_size)

    # ── composite ──────────────────────────────────────────────

    async def run_cleanup(self, options: CleanupOptions | None = None) -> CleanupResult:
        options = options or CleanupOptions()
        max_age = options.max_age_hours or self.max_age_hours
        batch_size = options.batch_size or self.batch_size
        started = time.monotonic()

        logger.info(
            "Starting onboarding session cleanup (max_age=%dh, batch=%d, dry_run=%s)",
            max_age,
            batch_size,
            options.dry_run,
        )

        policies = (
            ("expired", lambda: self.clean_expired_sessions(options.dry_run)),
            ("orphaned", lambda: self.clean_orphaned_sessions(options.dry_run, batch_size)),
            ("stuck", lambda: self.clean_stuck_sessions(options.dry_run, batch_size)),
            ("old", lambda: self.clean_old_sessions(max_age, options.dry_run, batch_size)),
        )

        by_policy: dict[str, int] = {}
        errors: list[str] = []
        for name, run in policies:
            try:
                by_policy[name] = await run()
            except SessionStoreError as exc:
                logger.error("Cleanup policy %s failed: %s", name, exc.message)
                by_policy[name] = 0
                errors.append(f"{name}: {exc.message}")

        result = CleanupResult(
            success=not errors,
            cleaned_sessions=sum(by_policy.values()),
            by_policy=by_policy,
            errors=errors,
            duration_ms=int((time.monotonic() - started) * 1000),
            dry_run=options.dry_run,
        )
        logger.info(
            "Onboarding session cleanup completed: %d sessions in %dms (dry_run=%s, errors=%d)",
            result.cleaned_sessions,
            result.duration_ms,
            result.dry_run,
            len(errors),
        )
        return result

    async def emergency_cleanup(self) -> CleanupResult:
        logger.warning("Emergency onboarding cleanup initiated")
        return await self.run_cleanup(
            CleanupOptions(
                max_age_hours=EMERGENCY_MAX_AGE_HOURS,
                batch_size=EMERGENCY_BATCH_SIZE,
            )
        )

    async def get_cleanup_stats(self) -> CleanupStats:
        """Per-category counts, read-only."""
        now = self.store.clock()
        try:
            totals = await self.store.get_stats()
            return CleanupStats(
                total=totals.total,
                expired=await self.store.count(OnboardingSession.expires_at < now),
                orphaned=await self.store.count(*self._orphaned_criteria(now)),
                stuck=await self.store.count(*self._stuck_criteria(now)),
                old=await self.store.count(*self._old_criteria(now, self.max_age_hours)),
            )
        except SessionStoreError:
            logger.exception("Failed to get cleanup stats")
            return CleanupStats()
