"""Aggregate model imports for Alembic auto-detection."""

from onboarding.models.onboarding_session import OnboardingSession  # noqa: F401
