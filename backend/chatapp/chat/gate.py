"""
Request gate: decides, before any paid upstream call, whether a prompt is served.

Limits:
  Guest / anonymous:  2 prompts per day (client counter, plus hashed-IP counter when enabled)
  Signed-in free:     5 prompts per UTC day
  Signed-in pro/admin: unlimited
"""

from dataclasses import dataclass
from typing import Optional

from chatapp.auth.schemas import Identity, Tier
from chatapp.config import Settings

LIMIT_REACHED = "limit_reached"


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[str] = None
    message: str = ""
    status_code: int = 200
    limit: Optional[int] = None
    used: int = 0
    tier: str = "guest"
    sign_in_required: bool = False

    @property
    def remaining(self) -> Optional[int]:
        if self.limit is None:
            return None
        return max(0, self.limit - self.used)

    def limits(self) -> dict:
        return {
            "tier": self.tier,
            "limit": self.limit if self.limit is not None else "unlimited",
            "used": self.used,
            "remaining": self.remaining if self.limit is not None else "unlimited",
        }

    def to_body(self) -> dict:
        return {
            "error": "Limit Reached",
            "reason": self.reason,
            "message": self.message,
            "sign_in_required": self.sign_in_required,
            **self.limits(),
        }


def evaluate(identity: Identity, prompts_used: int, settings: Settings) -> Decision:
    if identity.is_authenticated:
        tier = identity.tier
        if tier in (Tier.PRO, Tier.ADMIN):
            return Decision(allowed=True, tier=tier.value, used=prompts_used)

        limit = settings.free_daily_prompts
        if prompts_used >= limit:
            return Decision(
                allowed=False,
                reason=LIMIT_REACHED,
                message=f"Limit Reached. You have used your {limit} free daily prompts.",
                status_code=403,
                limit=limit,
                used=prompts_used,
                tier=tier.value,
            )
        return Decision(allowed=True, limit=limit, used=prompts_used, tier=tier.value)

    limit = settings.guest_prompt_limit
    if prompts_used >= limit:
        return Decision(
            allowed=False,
            reason=LIMIT_REACHED,
            message=f"You've reached the free limit of {limit} prompts. Please sign in to continue.",
            status_code=403,
            limit=limit,
            used=prompts_used,
            tier="guest",
            sign_in_required=True,
        )
    return Decision(allowed=True, limit=limit, used=prompts_used, tier="guest")
