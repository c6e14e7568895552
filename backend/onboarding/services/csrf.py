"""Short-lived anti-forgery tokens for the onboarding wizard.

A token is 16 random bytes, hex encoded, paired with its issue time in
epoch seconds.  It travels to the client and back packed as
``"<token>:<issued_at>"``.

Validation answers only yes/no: callers get no hint about which check
failed.  This is an anti-forgery nonce, not a secret, so the comparison
does not need to be constant-time.
"""

import logging
import math
import re
import secrets
import time
from dataclasses import dataclass

logger = logging.getLogger("onboarding.csrf")

TOKEN_BYTES = 16
DEFAULT_MAX_AGE_SECONDS = 3600

_TOKEN_RE = re.compile(r"[a-f0-9]{32}")


@dataclass(frozen=True)
class CSRFToken:
    token: str
    issued_at: int

    def pack(self) -> str:
        return f"{self.token}:{self.issued_at}"


def issue_csrf_token(now: float | None = None) -> CSRFToken:
    issued_at = int(time.time() if now is None else now)
    return CSRFToken(token=secrets.token_hex(TOKEN_BYTES), issued_at=issued_at)


def validate_csrf_token(
    token: str,
    issued_at: float,
    max_age_seconds: int = DEFAULT_MAX_AGE_SECONDS,
    now: float | None = None,
) -> bool:
    if not isinstance(token, str) or not _TOKEN_RE.fullmatch(token):
        logger.debug("CSRF token rejected")
        return False

    if (
        isinstance(issued_at, bool)
        or not isinstance(issued_at, (int, float))
        or not math.isfinite(issued_at)
        or issued_at < 0
    ):
        logger.debug("CSRF token rejected")
        return False

    current = time.time() if now is None else now
    if current - issued_at > max_age_seconds:
        logger.debug("CSRF token rejected")
        return False

    return True


def parse_packed(value: str | None) -> CSRFToken | None:
    """Split ``"<token>:<issued_at>"``; None if the shape is wrong."""
    if not value or not isinstance(value, str):
        return None
    parts = value.split(":")
    if len(parts) != 2:
        return None
    token, issued = parts
    try:
        issued_at = int(issued, 10)
    except ValueError:
        return None
    return CSRFToken(token=token, issued_at=issued_at)


def validate_packed(
    value: str | None,
    max_age_seconds: int = DEFAULT_MAX_AGE_SECONDS,
    now: float | None = None,
) -> bool:
    parsed = parse_packed(value)
    if parsed is None:
        return False
    return validate_csrf_token(parsed.token, parsed.issued_at, max_age_seconds, now)
