"""Recovery manager tests: diagnosis, repair, next-step and resume checks."""

from datetime import datetime

import pytest

from conftest import flip_state_byte, load_row, read_raw_state, set_columns, write_raw_state
from onboarding.services.recovery import (
    REASON_COMPLETED,
    REASON_CORRUPTED,
    REASON_NOT_FOUND,
    REASON_UNDECRYPTABLE,
    determine_next_step,
    repair_state,
)
from onboarding.services.state_validator import Violation, default_state

HQ = {"id": "1", "name": "HQ", "address": "1 Main Street"}


async def session_at_step_three(store):
    created = await store.create()
    sid, token = created.session_id, created.session_token
    assert await store.update(sid, token, current_step=2, state_patch={"organizationName": "Acme"})
    assert await store.update(sid, token, current_step=3)
    return created


@pytest.mark.integration
@pytest.mark.asyncio
class TestRecoverSession:

    async def test_healthy_session_resumes_on_current_step(self, store, recovery):
        created = await store.create()
        result = await recovery.recover_session(created.session_id, created.session_token)

        assert result.success
        assert result.can_continue
        assert result.next_step == 1
        assert result.session.id == created.session_id

    async def test_unknown_session(self, store, recovery):
        created = await store.create()
        result = await recovery.recover_session(created.session_id, "e" * 64)

        assert not result.success
        assert not result.can_continue
        assert result.reason == REASON_NOT_FOUND

    async def test_expired_session(self, store, recovery, clock):
        created = await store.create()
        clock.advance(hours=30)
        result = await recovery.recover_session(created.session_id, created.session_token)
        assert result.reason == REASON_NOT_FOUND

    async def test_completed_session(self, store, recovery):
        created = await store.create()
        await store.complete(created.session_id, created.session_token)

        result = await recovery.recover_session(created.session_id, created.session_token)
        assert result.success
        assert not result.can_continue
        assert result.reason == REASON_COMPLETED

    async def test_undecryptable_session_is_not_repairable(self, store, recovery, session_factory):
        created = await store.create()
        await flip_state_byte(session_factory, created.session_id)

        assert await store.get(created.session_id, created.session_token) is None
        result = await recovery.recover_session(created.session_id, created.session_token)

        assert not result.success
        assert not result.can_continue
        assert result.reason == REASON_UNDECRYPTABLE
        assert result.missing_data == [Violation.DECRYPT_FAILED.value]

    async def test_missing_locations_are_reseeded(self, store, recovery, session_factory, cipher):
        created = await session_at_step_three(store)
        raw = await read_raw_state(session_factory, cipher, created.session_id)
        del raw["locations"]
        await write_raw_state(session_factory, cipher, created.session_id, raw)

        result = await recovery.recover_session(created.session_id, created.session_token)

        assert result.success
        assert result.can_continue
        assert result.next_step == 3
        repaired = await read_raw_state(session_factory, cipher, created.session_id)
        assert repaired["locations"] == [{"id": "1", "name": "", "address": ""}]
        assert repaired["organizationName"] == "Acme"

    async def test_inconsistent_progression_is_repaired(self, store, recovery, session_factory, cipher):
        created = await session_at_step_three(store)
        raw = await read_raw_state(session_factory, cipher, created.session_id)
        raw["metadata"]["completedSteps"] = [1, 2, 3]
        raw["metadata"]["lastActiveStep"] = 2
        await write_raw_state(session_factory, cipher, created.session_id, raw)

        result = await recovery.recover_session(created.session_id, created.session_token)

        assert result.can_continue
        assert result.next_step == 3
        metadata = result.session.state.metadata
        assert metadata.completed_steps == [1, 2]
        assert metadata.last_active_step == 3

    async def test_out_of_range_step_is_clamped(self, store, recovery, session_factory, cipher):
        created = await store.create()
        raw = default_state(datetime(2026, 3, 2, 9, 0))
        raw["organizationName"] = "Acme"
        raw["locations"] = [HQ]
        raw["metadata"]["completedSteps"] = [1, 2, 3]
        raw["metadata"]["lastActiveStep"] = 3
        await write_raw_state(session_factory, cipher, created.session_id, raw)
        await set_columns(session_factory, created.session_id, current_step=9)

        result = await recovery.recover_session(created.session_id, created.session_token)

        assert result.can_continue
        assert result.next_step == 4
        assert (await load_row(session_factory, created.session_id)).current_step == 4

    async def test_missing_user_data_is_not_invented(self, store, recovery, session_factory):
        created = await store.create()
        await set_columns(session_factory, created.session_id, current_step=2)

        result = await recovery.recover_session(created.session_id, created.session_token)

        assert not result.can_continue
        assert result.reason == REASON_CORRUPTED
        assert Violation.MISSING_ORGANIZATION_NAME.value in result.missing_data

    async def test_repair_can_be_disabled(self, store, recovery, session_factory, cipher):
        created = await session_at_step_three(store)
        raw = await read_raw_state(session_factory, cipher, created.session_id)
        raw["locations"] = []
        await write_raw_state(session_factory, cipher, created.session_id, raw)

        result = await recovery.recover_session(
            created.session_id, created.session_token, repair=False
        )

        assert not result.can_continue
        assert result.missing_data == [Violation.LOCATIONS_MISSING.value]

    async def test_second_recovery_writes_nothing(self, store, recovery, session_factory, cipher, clock):
        created = await session_at_step_three(store)
        raw = await read_raw_state(session_factory, cipher, created.session_id)
        del raw["locations"]
        await write_raw_state(session_factory, cipher, created.session_id, raw)

        await recovery.recover_session(created.session_id, created.session_token)
        after_first = await load_row(session_factory, created.session_id)

        clock.advance(minutes=1)
        result = await recovery.recover_session(created.session_id, created.session_token)
        after_second = await load_row(session_factory, created.session_id)

        assert result.can_continue
        assert after_second.state == after_first.state
        assert after_second.updated_at == after_first.updated_at


@pytest.mark.unit
class TestRepairState:

    def test_repair_is_idempotent(self):
        raw = default_state(datetime(2026, 3, 2, 9, 0))
        raw["organizationName"] = "Acme"
        del raw["locations"]
        raw["metadata"]["completedSteps"] = [1, 2, 3]
        raw["metadata"]["lastActiveStep"] = 2
        violations = [Violation.LOCATIONS_MISSING, Violation.INCONSISTENT_STEP_PROGRESSION]

        step, repaired, changed = repair_state(3, raw, violations)
        assert changed
        assert step == 3

        again_step, again, changed_again = repair_state(step, repaired, violations)
        assert not changed_again
        assert again_step == step
        assert again == repaired

    def test_user_values_are_kept(self):
        raw = {"organizationName": "Acme", "firstName": "Ada", "locations": []}
        _, repaired, _ = repair_state(3, raw, [Violation.LOCATIONS_MISSING])
        assert repaired["organizationName"] == "Acme"
        assert repaired["firstName"] == "Ada"

    def test_clamps_step(self):
        step, _, changed = repair_state(0, {}, [Violation.INVALID_CURRENT_STEP])
        assert (step, changed) == (1, True)


@pytest.mark.unit
class TestDetermineNextStep:

    def state(self, completed, organization=None, locations=None):
        raw = default_state(datetime(2026, 3, 2, 9, 0))
        raw["metadata"]["completedSteps"] = completed
        if organization:
            raw["organizationName"] = organization
        if locations is not None:
            raw["locations"] = locations
        return raw

    def test_resume_uncompleted_current_step(self):
        assert determine_next_step(2, self.state([1], "Acme")) == 2

    def test_advance_when_prerequisites_met(self):
        assert determine_next_step(2, self.state([1, 2], "Acme")) == 3

    def test_fall_back_when_prerequisites_missing(self):
        assert determine_next_step(3, self.state([1, 2, 3], "Acme")) == 3
        assert determine_next_step(1, self.state([1])) == 1

    def test_advance_to_final_step(self):
        assert determine_next_step(3, self.state([1, 2, 3], "Acme", [HQ])) == 4

    def test_never_past_final_step(self):
        assert determine_next_step(4, self.state([1, 2, 3, 4], "Acme", [HQ])) == 4


@pytest.mark.integration
@pytest.mark.asyncio
class TestResume:

    async def test_step_one_always_allowed(self, store, recovery):
        created = await store.create()
        check = await recovery.can_resume_from_step(created.session_id, created.session_token, 1)
        assert check.can_resume

    async def test_organization_name_required(self, store, recovery):
        created = await store.create()
        check = await recovery.can_resume_from_step(created.session_id, created.session_token, 3)
        assert not check.can_resume
        assert check.reason == "Organization name required for step 3"

    async def test_complete_location_required_for_final_step(self, store, recovery):
        created = await session_at_step_three(store)
        check = await recovery.can_resume_from_step(created.session_id, created.session_token, 4)
        assert not check.can_resume
        assert check.reason == "Valid location required for step 4"

    async def test_invalid_target(self, store, recovery):
        created = await store.create()
        check = await recovery.can_resume_from_step(created.session_id, created.session_token, 6)
        assert not check.can_resume
        assert check.reason == "Invalid target step"

    async def test_force_resume_moves_back(self, store, recovery):
        created = await session_at_step_three(store)
        check = await recovery.force_resume_from_step(created.session_id, created.session_token, 2)
        assert check.can_resume

        session = await store.get(created.session_id, created.session_token)
        assert session.current_step == 2
        assert session.state.metadata.last_active_step == 3

    async def test_force_resume_blocked(self, store, recovery):
        created = await session_at_step_three(store)
        check = await recovery.force_resume_from_step(created.session_id, created.session_token, 4)
        assert not check.can_resume

        session = await store.get(created.session_id, created.session_token)
        assert session.current_step == 3


@pytest.mark.integration
@pytest.mark.asyncio
class TestRecoveryStats:

    async def test_stats_scan_live_sessions(self, store, recovery, session_factory):
        await store.create()
        broken = await store.create()
        done = await store.create()
        await flip_state_byte(session_factory, broken.session_id)
        await store.complete(done.session_id, done.session_token)

        stats = await recovery.get_recovery_stats()

        assert stats.total_sessions == 3
        assert stats.recoverable_sessions == 1
        assert stats.corrupted_sessions == 1
        assert stats.completed_sessions == 1
