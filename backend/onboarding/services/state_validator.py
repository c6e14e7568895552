"""Structural and step-consistency validation of onboarding state.

Pure functions over the wire (camelCase dict) form of ``OnboardingState``.
Nothing here raises on bad input: every check reports a fixed vocabulary of
``Violation`` codes so callers (the session store on write, the recovery
manager on resume) can branch on them.

Structural validation (``validate_state``) is what the store applies on
create / read / update.  The step checks (``check_step_consistency``) need
the session's ``current_step`` and are applied by recovery on top.

Step data requirements:
  - step >= 2: organization name
  - step >= 3: at least one location entry
  - step 4:    every location has a name and an address
"""

import enum
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError

from onboarding.schemas.onboarding import OnboardingState

logger = logging.getLogger("onboarding.validator")

MIN_STEP = 1
MAX_STEP = 4

# Fields a partial update may touch.  Anything else in a patch is dropped;
# step metadata is written only by the store.
MERGEABLE_FIELDS = (
    "organizationName",
    "firstName",
    "lastName",
    "locations",
)
TEXT_FIELDS = ("organizationName", "firstName", "lastName")
MAX_TEXT_LENGTH = 1000

PLACEHOLDER_LOCATION = {"id": "1", "name": "", "address": ""}


class Violation(str, enum.Enum):
    SCHEMA_INVALID = "schema_invalid"
    METADATA_INVALID = "metadata_invalid"
    LOCATIONS_MISSING = "locations_missing"
    TOO_MANY_LOCATIONS = "too_many_locations"
    LOCATIONS_INCOMPLETE = "locations_incomplete"
    INVALID_CURRENT_STEP = "invalid_current_step"
    INCONSISTENT_STEP_PROGRESSION = "inconsistent_step_progression"
    MISSING_ORGANIZATION_NAME = "missing_organization_name"
    DECRYPT_FAILED = "decrypt_failed"


@dataclass
class ValidationResult:
    """Tagged result: ``state`` on success, ``violations`` otherwise."""

    state: OnboardingState | None = None
    violations: list[Violation] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state is not None and not self.violations


def _add(violations: list[Violation], violation: Violation) -> None:
    if violation not in violations:
        violations.append(violation)


# ── Structural validation ───────────────────────────────────

def validate_state(raw: Any) -> ValidationResult:
    """Validate types, bounds and required structure of a state dict."""
    if isinstance(raw, OnboardingState):
        raw = raw.to_wire()
    if not isinstance(raw, Mapping):
        return ValidationResult(violations=[Violation.SCHEMA_INVALID])

    violations: list[Violation] = []
    locations = raw.get("locations")
    if locations is None or (isinstance(locations, list) and not locations):
        # A missing array is a defect of its own, not "no locations"
        _add(violations, Violation.LOCATIONS_MISSING)

    try:
        state = OnboardingState.model_validate(raw)
    except ValidationError as exc:
        for error in exc.errors():
            _add(violations, _classify(error))
        return ValidationResult(violations=violations)

    metadata = state.metadata
    if metadata.last_active_step < max(metadata.completed_steps, default=0):
        _add(violations, Violation.INCONSISTENT_STEP_PROGRESSION)

    if violations:
        return ValidationResult(violations=violations)
    return ValidationResult(state=state)


def _classify(error: dict) -> Violation:
    loc = error.get("loc") or ()
    head = loc[0] if loc else None
    if head == "locations":
        if len(loc) == 1:
            if error.get("type") == "too_long":
                return Violation.TOO_MANY_LOCATIONS
            return Violation.LOCATIONS_MISSING
        return Violation.SCHEMA_INVALID
    if head == "metadata":
        return Violation.METADATA_INVALID
    return Violation.SCHEMA_INVALID


# ── Step-machine checks ─────────────────────────────────────

def _locations(raw: Mapping) -> list:
    locations = raw.get("locations")
    return locations if isinstance(locations, list) else []


def has_organization_name(raw: Mapping) -> bool:
    name = raw.get("organizationName")
    return isinstance(name, str) and bool(name.strip())


def _location_complete(location: Any) -> bool:
    return (
        isinstance(location, Mapping)
        and bool(location.get("name"))
        and bool(location.get("address"))
    )


def has_complete_location(raw: Mapping) -> bool:
    """At least one location with both a name and an address."""
    return any(_location_complete(loc) for loc in _locations(raw))


def all_locations_complete(raw: Mapping) -> bool:
    locations = _locations(raw)
    return bool(locations) and all(_location_complete(loc) for loc in locations)


def step_in_range(step: Any) -> bool:
    return isinstance(step, int) and not isinstance(step, bool) and MIN_STEP <= step <= MAX_STEP


def clamp_step(step: Any) -> int:
    if not isinstance(step, int) or isinstance(step, bool):
        return MIN_STEP
    return max(MIN_STEP, min(MAX_STEP, step))


def completed_steps(raw: Mapping) -> list[int]:
    metadata = raw.get("metadata")
    if not isinstance(metadata, Mapping):
        return []
    steps = metadata.get("completedSteps")
    if not isinstance(steps, list):
        return []
    return [s for s in steps if isinstance(s, int) and not isinstance(s, bool)]


def step_prerequisites_met(step: int, raw: Mapping) -> bool:
    """Whether the state carries the data needed to stand on ``step``."""
    if step == MIN_STEP:
        return True
    if step in (2, 3):
        return has_organization_name(raw)
    if step == MAX_STEP:
        return has_organization_name(raw) and has_complete_location(raw)
    return False


def check_step_consistency(current_step: Any, raw: Any) -> list[Violation]:
    """State-machine checks that structural validation cannot see."""
    violations: list[Violation] = []
    if not step_in_range(current_step):
        _add(violations, Violation.INVALID_CURRENT_STEP)
    if not isinstance(raw, Mapping):
        return violations

    metadata = raw.get("metadata")
    if isinstance(metadata, Mapping):
        last_active = metadata.get("lastActiveStep")
        done = completed_steps(raw)
        if isinstance(last_active, int) and last_active < max(done, default=0):
            _add(violations, Violation.INCONSISTENT_STEP_PROGRESSION)

    step = clamp_step(current_step)
    if step >= 2 and not has_organization_name(raw):
        _add(violations, Violation.MISSING_ORGANIZATION_NAME)
    if step >= 3 and not _locations(raw):
        _add(violations, Violation.LOCATIONS_MISSING)
    if step == MAX_STEP and _locations(raw) and not all_locations_complete(raw):
        _add(violations, Violation.LOCATIONS_INCOMPLETE)
    return violations


# ── Construction / merge ────────────────────────────────────

def default_state(started_at: datetime) -> dict:
    """Initial state for a fresh session: one blank placeholder location."""
    return {
        "locations": [dict(PLACEHOLDER_LOCATION)],
        "metadata": {
            "startedAt": started_at.replace(tzinfo=timezone.utc).isoformat(),
            "completedSteps": [],
            "lastActiveStep": 1,
        },
    }


_ANGLE_BRACKETS = re.compile(r"[<>]")
_JS_PROTOCOL = re.compile(r"javascript:", re.IGNORECASE)
_EVENT_HANDLER = re.compile(r"on\w+=", re.IGNORECASE)


def sanitize_text(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    value = _ANGLE_BRACKETS.sub("", value)
    value = _JS_PROTOCOL.sub("", value)
    value = _EVENT_HANDLER.sub("", value)
    return value.strip()[:MAX_TEXT_LENGTH]


def sanitize_patch(patch: Mapping) -> dict:
    """Strip markup from the free-text fields of a partial state."""
    cleaned = dict(patch)
    for key in TEXT_FIELDS:
        if cleaned.get(key):
            cleaned[key] = sanitize_text(cleaned[key])
    if isinstance(cleaned.get("locations"), list):
        cleaned["locations"] = [
            {
                "id": sanitize_text(loc.get("id", "")),
                "name": sanitize_text(loc.get("name", "")),
                "address": sanitize_text(loc.get("address", "")),
            }
            for loc in cleaned["locations"]
            if isinstance(loc, Mapping)
        ]
    return cleaned


def merge_state(existing: Mapping, patch: Mapping | None) -> dict:
    """Shallow, field-by-field merge of ``patch`` over ``existing``."""
    merged = dict(existing)
    if not patch:
        return merged
    for key, value in patch.items():
        if key not in MERGEABLE_FIELDS:
            logger.debug("Dropping unknown state field %r from patch", key)
            continue
        merged[key] = value
    return merged
