"""Service wiring and FastAPI dependencies.

The store, recovery manager and janitor are built once per process by
``ServiceContainer.build`` (called from the app lifespan) and hung on
``app.state.services``.  Handlers get them through the dependencies below:

  get_session_store      → OnboardingSessionStore
  get_recovery_manager   → OnboardingRecoveryManager
  get_cleanup_manager    → OnboardingCleanupManager
  require_maintenance_key → guards the cleanup endpoints
"""

import logging
import secrets
from dataclasses import dataclass

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from onboarding.config import Settings, settings
from onboarding.middleware.exceptions import (
    ConfigurationError,
    CSRFValidationError,
    PermissionDeniedError,
)
from onboarding.services.cleanup import OnboardingCleanupManager
from onboarding.services.csrf import validate_packed
from onboarding.services.encryption import StateCipher, resolve_master_secret
from onboarding.services.recovery import OnboardingRecoveryManager
from onboarding.services.session_store import OnboardingSessionStore

logger = logging.getLogger("onboarding.dependencies")


@dataclass
class ServiceContainer:
    settings: Settings
    store: OnboardingSessionStore
    recovery: OnboardingRecoveryManager
    cleanup: OnboardingCleanupManager

    @classmethod
    def build(
        cls,
        config: Settings,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        cipher: StateCipher | None = None,
        **store_options,
    ) -> "ServiceContainer":
        if session_factory is None:
            from onboarding.database import async_session

            session_factory = async_session
        if cipher is None:
            cipher = StateCipher(resolve_master_secret(config))

        store = OnboardingSessionStore(
            session_factory,
            cipher,
            expiry_hours=config.session_expiry_hours,
            max_sessions_per_ip=config.max_sessions_per_ip,
            **store_options,
        )
        return cls(
            settings=config,
            store=store,
            recovery=OnboardingRecoveryManager(store),
            cleanup=OnboardingCleanupManager(
                store,
                max_age_hours=config.cleanup_max_age_hours,
                orphaned_hours=config.cleanup_orphaned_hours,
                stuck_hours=config.cleanup_stuck_hours,
                batch_size=config.cleanup_batch_size,
            ),
        )


def get_services(request: Request) -> ServiceContainer:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise ConfigurationError("Onboarding services are not initialised")
    return services


def get_session_store(
    services: ServiceContainer = Depends(get_services),
) -> OnboardingSessionStore:
    return services.store


def get_recovery_manager(
    services: ServiceContainer = Depends(get_services),
) -> OnboardingRecoveryManager:
    return services.recovery


def get_cleanup_manager(
    services: ServiceContainer = Depends(get_services),
) -> OnboardingCleanupManager:
    return services.cleanup


def get_settings(services: ServiceContainer = Depends(get_services)) -> Settings:
    return services.settings


# ── Request guards ──────────────────────────────────────────

def verify_csrf(
    packed: str,
    max_age_seconds: int = settings.csrf_max_age_seconds,
    expected: str | None = None,
) -> None:
    """Raise ``CSRFValidationError`` unless ``packed`` is fresh and well formed.

    When ``expected`` is given (the token stored on the session) the two
    must also match.
    """
    if not validate_packed(packed, max_age_seconds):
        raise CSRFValidationError()
    if expected is not None and packed != expected:
        raise CSRFValidationError()


async def require_maintenance_key(
    x_maintenance_key: str | None = Header(default=None),
    config: Settings = Depends(get_settings),
) -> None:
    """Cleanup endpoints need ``X-Maintenance-Key``.

    Outside production an unset key leaves them open for local use.
    """
    expected = config.maintenance_api_key
    if not expected:
        if config.is_production:
            raise PermissionDeniedError("Maintenance endpoints are disabled")
        return
    if not x_maintenance_key or not secrets.compare_digest(x_maintenance_key, expected):
        logger.warning("Rejected maintenance request with missing or bad key")
        raise PermissionDeniedError("Invalid maintenance key")
