"""Tests for onboarding state validation, sanitization and merge."""

from datetime import datetime

import pytest

from onboarding.services.state_validator import (
    PLACEHOLDER_LOCATION,
    Violation,
    check_step_consistency,
    default_state,
    merge_state,
    sanitize_patch,
    sanitize_text,
    step_prerequisites_met,
    validate_state,
)

STARTED = datetime(2026, 3, 2, 9, 0, 0)


def make_state(**overrides) -> dict:
    state = default_state(STARTED)
    state.update(overrides)
    return state


def complete_location(i: int = 1) -> dict:
    return {"id": str(i), "name": f"Store {i}", "address": f"{i} Main Street"}


@pytest.mark.unit
class TestValidateState:
    """Structural validation."""

    def test_default_state_is_valid(self):
        result = validate_state(default_state(STARTED))
        assert result.ok
        assert result.state.locations[0].id == "1"
        assert result.state.metadata.last_active_step == 1
        assert result.state.metadata.completed_steps == []

    def test_non_mapping_is_schema_invalid(self):
        result = validate_state("not a state")
        assert not result.ok
        assert result.violations == [Violation.SCHEMA_INVALID]

    def test_missing_locations_reported_as_locations_missing(self):
        state = make_state()
        del state["locations"]
        result = validate_state(state)
        assert not result.ok
        assert Violation.LOCATIONS_MISSING in result.violations

    def test_empty_locations_reported_as_locations_missing(self):
        result = validate_state(make_state(locations=[]))
        assert Violation.LOCATIONS_MISSING in result.violations

    def test_more_than_ten_locations(self):
        result = validate_state(make_state(locations=[complete_location(i) for i in range(11)]))
        assert result.violations == [Violation.TOO_MANY_LOCATIONS]

    def test_bad_metadata(self):
        state = make_state()
        state["metadata"]["lastActiveStep"] = 9
        result = validate_state(state)
        assert result.violations == [Violation.METADATA_INVALID]

    def test_last_active_step_behind_completed_steps(self):
        state = make_state()
        state["metadata"]["completedSteps"] = [1, 2, 3, 4]
        state["metadata"]["lastActiveStep"] = 1
        result = validate_state(state)
        assert not result.ok
        assert result.violations == [Violation.INCONSISTENT_STEP_PROGRESSION]

    def test_organization_name_too_long(self):
        result = validate_state(make_state(organizationName="x" * 101))
        assert result.violations == [Violation.SCHEMA_INVALID]

    def test_location_address_too_long(self):
        location = {"id": "1", "name": "Depot", "address": "a" * 201}
        result = validate_state(make_state(locations=[location]))
        assert result.violations == [Violation.SCHEMA_INVALID]

    def test_completed_steps_are_deduplicated(self):
        state = make_state()
        state["metadata"]["completedSteps"] = [1, 2, 1]
        state["metadata"]["lastActiveStep"] = 3
        result = validate_state(state)
        assert result.ok
        assert result.state.metadata.completed_steps == [1, 2]

    def test_wire_form_uses_camel_case(self):
        result = validate_state(make_state(organizationName="Acme"))
        wire = result.state.to_wire()
        assert wire["organizationName"] == "Acme"
        assert "completedSteps" in wire["metadata"]
        assert "firstName" not in wire


@pytest.mark.unit
class TestStepConsistency:
    """State-machine checks layered on top of structural validation."""

    def test_fresh_session_is_consistent(self):
        assert check_step_consistency(1, default_state(STARTED)) == []

    def test_out_of_range_step(self):
        assert Violation.INVALID_CURRENT_STEP in check_step_consistency(7, default_state(STARTED))
        assert Violation.INVALID_CURRENT_STEP in check_step_consistency(0, default_state(STARTED))

    def test_last_active_behind_completed_steps(self):
        state = make_state(organizationName="Acme")
        state["metadata"]["completedSteps"] = [1, 2]
        state["metadata"]["lastActiveStep"] = 1
        assert Violation.INCONSISTENT_STEP_PROGRESSION in check_step_consistency(2, state)

    def test_step_two_needs_organization_name(self):
        assert Violation.MISSING_ORGANIZATION_NAME in check_step_consistency(2, default_state(STARTED))

    def test_step_three_accepts_placeholder_location(self):
        state = make_state(organizationName="Acme")
        state["metadata"]["completedSteps"] = [1, 2]
        state["metadata"]["lastActiveStep"] = 3
        assert check_step_consistency(3, state) == []

    def test_step_three_without_locations(self):
        state = make_state(organizationName="Acme", locations=[])
        assert Violation.LOCATIONS_MISSING in check_step_consistency(3, state)

    def test_step_four_needs_complete_locations(self):
        state = make_state(organizationName="Acme", locations=[complete_location(1), dict(PLACEHOLDER_LOCATION, id="2")])
        assert Violation.LOCATIONS_INCOMPLETE in check_step_consistency(4, state)

        state["locations"] = [complete_location(1), complete_location(2)]
        assert check_step_consistency(4, state) == []


@pytest.mark.unit
class TestPrerequisites:

    @pytest.mark.parametrize(
        "step, state, expected",
        [
            (1, {}, True),
            (2, {}, False),
            (2, {"organizationName": "Acme"}, True),
            (3, {"organizationName": "Acme"}, True),
            (4, {"organizationName": "Acme", "locations": [dict(PLACEHOLDER_LOCATION)]}, False),
            (4, {"organizationName": "Acme", "locations": [complete_location()]}, True),
            (4, {"locations": [complete_location()]}, False),
            (5, {"organizationName": "Acme"}, False),
        ],
    )
    def test_step_prerequisites(self, step, state, expected):
        assert step_prerequisites_met(step, state) is expected


@pytest.mark.unit
class TestSanitizeAndMerge:

    def test_sanitize_text_strips_markup(self):
        assert sanitize_text("  <b>Acme</b> ") == "bAcme/b"
        assert sanitize_text("javascript:alert(1)") == "alert(1)"
        assert sanitize_text('x onclick=evil()') == "x evil()"
        assert len(sanitize_text("a" * 5000)) == 1000

    def test_sanitize_patch_cleans_locations(self):
        patch = sanitize_patch({
            "organizationName": "<Acme>",
            "locations": [{"id": "1", "name": " <i>Depot</i> ", "address": "1 Road"}],
        })
        assert patch["organizationName"] == "Acme"
        assert patch["locations"] == [{"id": "1", "name": "iDepot/i", "address": "1 Road"}]

    def test_merge_replaces_named_fields_only(self):
        existing = make_state(organizationName="Old")
        merged = merge_state(existing, {"organizationName": "New", "isAdmin": True})
        assert merged["organizationName"] == "New"
        assert "isAdmin" not in merged
        assert merged["locations"] == existing["locations"]

    def test_merge_keeps_existing_metadata(self):
        existing = make_state()
        merged = merge_state(existing, {"metadata": {"completedSteps": [1, 2, 3]}})
        assert merged["metadata"] == existing["metadata"]

    def test_merge_does_not_mutate_existing(self):
        existing = make_state()
        merge_state(existing, {"organizationName": "Acme"})
        assert "organizationName" not in existing

    def test_merge_without_patch(self):
        existing = make_state()
        assert merge_state(existing, None) == existing
