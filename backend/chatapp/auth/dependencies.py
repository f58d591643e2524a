from fastapi import Depends, HTTPException, Header, Request
from typing import Optional
import hashlib
import logging
import httpx

from chatapp.auth.schemas import Identity, IdentityKind, Tier, UserProfile
from chatapp.chat.store import SupabaseStore, get_store
from chatapp.config import get_settings, Settings

logger = logging.getLogger(__name__)


def get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def hash_ip(ip: str) -> str:
    return hashlib.sha256(ip.encode()).hexdigest()


async def fetch_auth_user(token: str, settings: Settings) -> Optional[dict]:
    """Verify a Supabase JWT against the auth service. None when the token is rejected."""
    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            resp = await client.get(
                f"{settings.supabase_url}/auth/v1/user",
                headers={
                    "Authorization": f"Bearer {token}",
                    "apikey": settings.supabase_service_key,
                },
            )
            if resp.status_code == 200:
                return resp.json()
            elif resp.status_code == 401:
                return None  # Expired/invalid token, treat as anonymous
            else:
                logger.warning(f"Supabase auth returned {resp.status_code}: {resp.text[:200]}")
                return None
    except httpx.ConnectError:
        logger.error("Cannot connect to Supabase: project may be paused or URL is wrong")
        raise HTTPException(
            status_code=503,
            detail="Authentication service is temporarily unavailable. Please try again later."
        )
    except httpx.TimeoutException:
        logger.error("Supabase auth request timed out")
        raise HTTPException(
            status_code=503,
            detail="Authentication service timed out. Please try again."
        )
    except Exception as e:
        logger.error(f"Unexpected auth error: {e}")
        return None


def load_profile(user: dict, store: Optional[SupabaseStore], settings: Settings) -> UserProfile:
    """Profile row for an authenticated user. A missing row gives a fresh free profile."""
    email = user.get("email")
    profile = None
    if store is not None:
        try:
            row = store.get_profile(user["id"])
            if row:
                profile = UserProfile.from_row(row, email=email)
        except Exception as e:
            logger.warning(f"Could not fetch profile for {user['id']}: {e}")
    if profile is None:
        profile = UserProfile(id=user["id"], email=email, persisted=store is None)

    if email and email.lower() in settings.admin_email_list:
        profile.tier = Tier.ADMIN
    return profile


async def resolve_identity(
    request: Request,
    authorization: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
    store: Optional[SupabaseStore] = Depends(get_store),
) -> Identity:
    """Who is calling. Bad or expired tokens fall through to anonymous, never to an error."""
    guest_key = hash_ip(get_client_ip(request))

    if not authorization or not authorization.startswith("Bearer "):
        return Identity(kind=IdentityKind.GUEST, guest_key=guest_key)

    token = authorization.split(" ", 1)[1]
    if not settings.supabase_url:
        return Identity(kind=IdentityKind.ANONYMOUS, guest_key=guest_key)

    user = await fetch_auth_user(token, settings)
    if not isinstance(user, dict) or not user.get("id"):
        return Identity(kind=IdentityKind.ANONYMOUS, guest_key=guest_key)

    return Identity(
        kind=IdentityKind.AUTHENTICATED,
        profile=load_profile(user, store, settings),
    )


async def require_auth(
    identity: Identity = Depends(resolve_identity),
) -> Identity:
    """Require authenticated user. Raises 401 if not logged in."""
    if not identity.is_authenticated:
        raise HTTPException(status_code=401, detail="Authentication required")
    return identity
