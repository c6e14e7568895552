"""Staging record for an in-progress signup wizard.

One row per wizard run.  The wizard payload lives in ``state`` as an
AES-256-GCM blob; everything the janitor filters on (step, timestamps,
completion, origin address) is kept in clear columns.

Rows are deleted physically on expiry, abandonment or cleanup.  The raw
bearer token is never stored, only its SHA-256 digest.
"""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from onboarding.database import Base, utcnow


class OnboardingSession(Base):
    __tablename__ = "onboarding_sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    session_token: Mapped[str] = mapped_column(String(64), index=True)
    current_step: Mapped[int] = mapped_column(Integer, default=1)
    # base64(salt | nonce | tag | ciphertext)
    state: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, index=True
    )
    is_completed: Mapped[bool] = mapped_column(Boolean, default=False)
    user_agent: Mapped[str | None] = mapped_column(String(500), default=None)
    ip_address: Mapped[str | None] = mapped_column(
        String(45), default=None, index=True
    )
    # "<32 hex>:<issued epoch seconds>"
    csrf_token: Mapped[str | None] = mapped_column(String(64), default=None)

    __table_args__ = (
        Index("ix_onboarding_sessions_cleanup", "is_completed", "current_step", "created_at"),
    )
