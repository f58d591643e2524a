"""
Daily prompt ledger.

Signed-in users: counter lives on the profiles row, reset the first time the
user is seen on a new UTC day and bumped once per successful exchange.
Guests: same semantics on a guest_usage row keyed by hashed IP.

Counters are never decremented except by the daily reset.
"""

import logging
from datetime import date, datetime, timezone
from typing import Callable, Optional

from chatapp.auth.schemas import UserProfile
from chatapp.chat.exceptions import PersistenceError

logger = logging.getLogger(__name__)

MAX_CAS_ATTEMPTS = 3


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


class QuotaLedger:
    def __init__(self, store, clock: Callable[[], date] = utc_today):
        self.store = store
        self.clock = clock

    def today(self) -> date:
        return self.clock()

    def check_and_maybe_reset(self, profile: UserProfile, today: Optional[date] = None) -> UserProfile:
        """Return the profile as it must be seen by the limit check for `today`.

        The returned copy already reflects a reset, so a user who hit the limit
        yesterday is evaluated against a zero count in this same request.
        """
        today = today or self.today()
        if profile.daily_prompts_reset_date == today:
            return profile

        fresh = profile.model_copy(update={
            "daily_prompts_used": 0,
            "daily_prompts_reset_date": today,
            "persisted": True,
        })
        if self.store is None:
            return fresh

        try:
            if not profile.persisted:
                inserted = self.store.insert_profile(profile.id, {
                    "email": profile.email,
                    "tier": profile.tier.value,
                    "daily_prompts_used": 0,
                    "daily_prompts_reset_date": today.isoformat(),
                })
                if inserted is not None:
                    logger.info(f"Created profile for {profile.id}")
                    return fresh
                profile = self._reload(profile)
                if profile.daily_prompts_reset_date == today:
                    return profile

            row = self.store.reset_daily_prompts(profile.id, today)
            if row is not None:
                logger.info(f"Reset daily prompts for {profile.id} ({profile.daily_prompts_reset_date} -> {today})")
                return fresh

            # Someone else reset it first; their increments since then count.
            return self._reload(profile)
        except Exception as e:
            logger.warning(f"Could not persist daily reset for {profile.id}: {e}")
        return fresh

    def _reload(self, profile: UserProfile) -> UserProfile:
        row = self.store.get_profile(profile.id)
        if not row:
            raise PersistenceError(f"profile {profile.id} not found")
        # Tier may carry an admin override that isn't stored
        return UserProfile.from_row(row, email=profile.email).model_copy(update={"tier": profile.tier})

    def increment(self, profile: UserProfile) -> UserProfile:
        """Count one successful exchange. Raises PersistenceError if the write can't land."""
        if self.store is None:
            return profile.model_copy(update={"daily_prompts_used": profile.daily_prompts_used + 1})

        expected = profile.daily_prompts_used
        for attempt in range(MAX_CAS_ATTEMPTS):
            try:
                row = self.store.compare_and_set_prompts(profile.id, expected, expected + 1)
                if row is not None:
                    return profile.model_copy(update={"daily_prompts_used": expected + 1})
                current = self.store.get_profile(profile.id)
            except Exception as e:
                raise PersistenceError(f"increment failed for {profile.id}: {e}") from e
            if not current:
                raise PersistenceError(f"profile {profile.id} disappeared during increment")
            logger.info(f"Prompt counter moved under us for {profile.id} (attempt {attempt + 1})")
            expected = current.get("daily_prompts_used") or 0

        raise PersistenceError(f"increment for {profile.id} lost {MAX_CAS_ATTEMPTS} races")


class GuestLedger:
    """Server-side counter for signed-out callers, keyed by hashed client IP."""

    def __init__(self, store, clock: Callable[[], date] = utc_today):
        self.store = store
        self.clock = clock

    def used_today(self, ip_hash: Optional[str], today: Optional[date] = None) -> int:
        if self.store is None or not ip_hash:
            return 0
        today = today or self.clock()
        try:
            row = self.store.get_guest_usage(ip_hash)
        except Exception as e:
            logger.warning(f"Could not fetch guest usage: {e}")
            return 0
        if not row or row.get("reset_date") != today.isoformat():
            return 0
        return row.get("prompts_used") or 0

    def increment(self, ip_hash: Optional[str], today: Optional[date] = None) -> None:
        if self.store is None or not ip_hash:
            return
        today = today or self.clock()
        day = today.isoformat()
        for _ in range(MAX_CAS_ATTEMPTS):
            try:
                row = self.store.get_guest_usage(ip_hash)
                if row is None:
                    if self.store.insert_guest_usage(ip_hash, today):
                        return
                    continue
                stored_day = row.get("reset_date")
                used = row.get("prompts_used") or 0
                new = used + 1 if stored_day == day else 1
                if self.store.compare_and_set_guest_usage(ip_hash, used, stored_day, new, today):
                    return
            except Exception as e:
                raise PersistenceError(f"guest increment failed: {e}") from e
        raise PersistenceError(f"guest increment lost {MAX_CAS_ATTEMPTS} races")
