from datetime import date
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class Tier(str, Enum):
    FREE = "free"
    PRO = "pro"
    ADMIN = "admin"


class IdentityKind(str, Enum):
    AUTHENTICATED = "authenticated"
    GUEST = "guest"
    ANONYMOUS = "anonymous"


class UserProfile(BaseModel):
    id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    tier: Tier = Tier.FREE
    daily_prompts_used: int = Field(0, ge=0)
    daily_prompts_reset_date: Optional[date] = None
    # False until the row exists in the profiles table
    persisted: bool = Field(True, exclude=True)

    @classmethod
    def from_row(cls, row: dict, email: Optional[str] = None) -> "UserProfile":
        tier = row.get("tier") or row.get("subscription_tier") or Tier.FREE.value
        if tier not in {t.value for t in Tier}:
            tier = Tier.FREE.value
        return cls(
            id=row["id"],
            email=email or row.get("email"),
            display_name=row.get("display_name"),
            tier=tier,
            daily_prompts_used=row.get("daily_prompts_used") or 0,
            daily_prompts_reset_date=row.get("daily_prompts_reset_date"),
        )


class Identity(BaseModel):
    """Who is calling: a signed-in user with a profile, or a guest keyed by hashed IP."""

    kind: IdentityKind
    profile: Optional[UserProfile] = None
    guest_key: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return self.kind == IdentityKind.AUTHENTICATED and self.profile is not None

    @property
    def user_id(self) -> Optional[str]:
        return self.profile.id if self.profile else None

    @property
    def tier(self) -> Optional[Tier]:
        return self.profile.tier if self.profile else None
