"""Tests for the daily prompt ledgers."""

import pytest

from chatapp.auth.schemas import UserProfile
from chatapp.chat.exceptions import PersistenceError
from chatapp.chat.quota import GuestLedger, QuotaLedger

from conftest import TODAY, YESTERDAY, FakeStore


def _profile(store: FakeStore, **kwargs) -> UserProfile:
    return UserProfile.from_row(store.add_profile("user-1", **kwargs))


class TestCheckAndMaybeReset:
    def test_stale_day_resets_counter_in_memory_and_in_store(self) -> None:
        store = FakeStore()
        profile = _profile(store, used=5, reset=YESTERDAY)

        updated = QuotaLedger(store).check_and_maybe_reset(profile, TODAY)

        assert updated.daily_prompts_used == 0
        assert updated.daily_prompts_reset_date == TODAY
        assert store.profiles["user-1"]["daily_prompts_used"] == 0
        assert store.profiles["user-1"]["daily_prompts_reset_date"] == TODAY.isoformat()

    def test_same_day_leaves_profile_alone(self) -> None:
        store = FakeStore()
        profile = _profile(store, used=3, reset=TODAY)

        updated = QuotaLedger(store).check_and_maybe_reset(profile, TODAY)

        assert updated.daily_prompts_used == 3
        assert "reset_daily_prompts" not in store.calls

    def test_never_reset_profile_is_reset(self) -> None:
        store = FakeStore()
        profile = _profile(store, used=2, reset=None)

        updated = QuotaLedger(store).check_and_maybe_reset(profile, TODAY)

        assert updated.daily_prompts_used == 0
        assert store.profiles["user-1"]["daily_prompts_reset_date"] == TODAY.isoformat()

    def test_reset_already_done_by_another_request_keeps_its_count(self) -> None:
        store = FakeStore()
        profile = _profile(store, used=5, reset=YESTERDAY)
        # A concurrent request reset the row and counted one prompt since
        store.profiles["user-1"].update({"daily_prompts_used": 1, "daily_prompts_reset_date": TODAY.isoformat()})

        updated = QuotaLedger(store).check_and_maybe_reset(profile, TODAY)

        assert updated.daily_prompts_used == 1
        assert updated.daily_prompts_reset_date == TODAY

    def test_missing_profile_row_is_created(self) -> None:
        store = FakeStore()
        profile = UserProfile(id="new-user", email="new@example.com", persisted=False)

        updated = QuotaLedger(store).check_and_maybe_reset(profile, TODAY)

        assert updated.persisted
        assert updated.daily_prompts_used == 0
        assert store.profiles["new-user"]["tier"] == "free"
        assert store.profiles["new-user"]["daily_prompts_reset_date"] == TODAY.isoformat()

    def test_unpersisted_profile_that_exists_is_reloaded(self) -> None:
        store = FakeStore()
        store.add_profile("user-1", used=4, reset=TODAY)
        profile = UserProfile(id="user-1", persisted=False)

        updated = QuotaLedger(store).check_and_maybe_reset(profile, TODAY)

        assert updated.daily_prompts_used == 4

    def test_store_failure_still_returns_reset_view(self) -> None:
        store = FakeStore()
        profile = _profile(store, used=5, reset=YESTERDAY)
        store.fail.add("reset_daily_prompts")

        updated = QuotaLedger(store).check_and_maybe_reset(profile, TODAY)

        assert updated.daily_prompts_used == 0

    def test_without_store(self) -> None:
        profile = UserProfile(id="user-1", daily_prompts_used=5, daily_prompts_reset_date=YESTERDAY)

        updated = QuotaLedger(None).check_and_maybe_reset(profile, TODAY)

        assert updated.daily_prompts_used == 0

    def test_uses_clock_when_no_date_given(self) -> None:
        store = FakeStore()
        profile = _profile(store, used=5, reset=YESTERDAY)

        updated = QuotaLedger(store, clock=lambda: TODAY).check_and_maybe_reset(profile)

        assert updated.daily_prompts_reset_date == TODAY


class TestIncrement:
    def test_increments_by_one(self) -> None:
        store = FakeStore()
        profile = _profile(store, used=4)

        updated = QuotaLedger(store).increment(profile)

        assert updated.daily_prompts_used == 5
        assert store.profiles["user-1"]["daily_prompts_used"] == 5

    def test_lost_race_retries_from_current_value(self) -> None:
        store = FakeStore()
        profile = _profile(store, used=2)
        store.profiles["user-1"]["daily_prompts_used"] = 3

        updated = QuotaLedger(store).increment(profile)

        assert updated.daily_prompts_used == 4
        assert store.profiles["user-1"]["daily_prompts_used"] == 4
        assert store.calls.count("compare_and_set_prompts") == 2

    def test_store_error_raises_persistence_error(self) -> None:
        store = FakeStore()
        profile = _profile(store, used=1)
        store.fail.add("compare_and_set_prompts")

        with pytest.raises(PersistenceError):
            QuotaLedger(store).increment(profile)

    def test_missing_row_raises_persistence_error(self) -> None:
        profile = UserProfile(id="ghost", daily_prompts_used=1)

        with pytest.raises(PersistenceError):
            QuotaLedger(FakeStore()).increment(profile)


class TestGuestLedger:
    def test_unknown_guest_has_used_nothing(self) -> None:
        assert GuestLedger(FakeStore()).used_today("abc", TODAY) == 0

    def test_increment_creates_then_counts(self) -> None:
        store = FakeStore()
        ledger = GuestLedger(store)

        ledger.increment("abc", TODAY)
        ledger.increment("abc", TODAY)

        assert ledger.used_today("abc", TODAY) == 2

    def test_new_day_starts_over(self) -> None:
        store = FakeStore()
        store.guest_usage["abc"] = {"prompts_used": 2, "reset_date": YESTERDAY.isoformat()}
        ledger = GuestLedger(store)

        assert ledger.used_today("abc", TODAY) == 0
        ledger.increment("abc", TODAY)
        assert store.guest_usage["abc"] == {"prompts_used": 1, "reset_date": TODAY.isoformat()}

    def test_read_failure_counts_as_zero(self) -> None:
        store = FakeStore()
        store.fail.add("get_guest_usage")

        assert GuestLedger(store).used_today("abc", TODAY) == 0

    def test_no_store_is_a_no_op(self) -> None:
        ledger = GuestLedger(None)

        ledger.increment("abc", TODAY)
        assert ledger.used_today("abc", TODAY) == 0
