from fastapi import APIRouter, Depends

from chatapp.auth.dependencies import resolve_identity
from chatapp.auth.schemas import Identity
from chatapp.chat.pipeline import ChatPipeline
from chatapp.chat.router import get_pipeline

router = APIRouter()


@router.get("/me")
async def get_me(
    identity: Identity = Depends(resolve_identity),
    pipeline: ChatPipeline = Depends(get_pipeline),
):
    """Get current user profile. Returns null user if not authenticated."""
    if not identity.is_authenticated:
        return {"user": None}

    # Same daily-reset view the chat endpoint would apply
    decision = pipeline.admit(identity)
    profile = identity.profile
    return {"user": {
        "id": profile.id,
        "email": profile.email,
        "display_name": profile.display_name,
        "tier": profile.tier.value,
        "daily_prompts_used": profile.daily_prompts_used,
        "daily_prompts_reset_date": profile.daily_prompts_reset_date,
        "limits": decision.limits(),
    }}
