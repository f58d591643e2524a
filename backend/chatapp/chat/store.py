"""
Supabase table access for the chat backend.

Tables:
  profiles        id, email, display_name, tier, daily_prompts_used, daily_prompts_reset_date
  guest_usage     ip_hash, prompts_used, reset_date
  conversations   id, user_id, title, created_at
  messages        id, conversation_id, user_id, role, content, created_at

Quota counters are only ever changed through conditional updates so two
requests racing on the same row cannot both apply a stale value.
"""

import logging
from datetime import date
from typing import Optional

from chatapp.config import get_supabase_client

logger = logging.getLogger(__name__)


class SupabaseStore:
    def __init__(self, client):
        self.sb = client

    # ═══════════════════════════════════════
    # Profiles
    # ═══════════════════════════════════════

    def get_profile(self, user_id: str) -> Optional[dict]:
        result = self.sb.table("profiles").select("*").eq("id", user_id).execute()
        if result.data:
            return result.data[0]
        return None

    def insert_profile(self, user_id: str, fields: dict) -> Optional[dict]:
        """Create the row unless it exists. Returns None when it was already there."""
        result = self.sb.table("profiles").upsert(
            {"id": user_id, **fields}, on_conflict="id", ignore_duplicates=True
        ).execute()
        return result.data[0] if result.data else None

    def reset_daily_prompts(self, user_id: str, today: date) -> Optional[dict]:
        """Zero the counter unless it was already reset today. Returns the row if this call reset it."""
        day = today.isoformat()
        result = self.sb.table("profiles") \
            .update({"daily_prompts_used": 0, "daily_prompts_reset_date": day}) \
            .eq("id", user_id) \
            .or_(f"daily_prompts_reset_date.is.null,daily_prompts_reset_date.neq.{day}") \
            .execute()
        return result.data[0] if result.data else None

    def compare_and_set_prompts(self, user_id: str, expected: int, new: int) -> Optional[dict]:
        """Set daily_prompts_used to `new` only if it still equals `expected`."""
        result = self.sb.table("profiles") \
            .update({"daily_prompts_used": new}) \
            .eq("id", user_id) \
            .eq("daily_prompts_used", expected) \
            .execute()
        return result.data[0] if result.data else None

    # ═══════════════════════════════════════
    # Guest usage
    # ═══════════════════════════════════════

    def get_guest_usage(self, ip_hash: str) -> Optional[dict]:
        result = self.sb.table("guest_usage").select("prompts_used, reset_date") \
            .eq("ip_hash", ip_hash).execute()
        return result.data[0] if result.data else None

    def insert_guest_usage(self, ip_hash: str, today: date) -> bool:
        result = self.sb.table("guest_usage").upsert(
            {"ip_hash": ip_hash, "prompts_used": 1, "reset_date": today.isoformat()},
            on_conflict="ip_hash",
            ignore_duplicates=True,
        ).execute()
        return bool(result.data)

    def compare_and_set_guest_usage(
        self, ip_hash: str, expected: int, expected_date: Optional[str], new: int, today: date
    ) -> bool:
        query = self.sb.table("guest_usage") \
            .update({"prompts_used": new, "reset_date": today.isoformat()}) \
            .eq("ip_hash", ip_hash) \
            .eq("prompts_used", expected)
        if expected_date is None:
            query = query.is_("reset_date", "null")
        else:
            query = query.eq("reset_date", expected_date)
        result = query.execute()
        return bool(result.data)

    # ═══════════════════════════════════════
    # Conversations
    # ═══════════════════════════════════════

    def insert_conversation(self, user_id: str, title: str, conversation_id: Optional[str] = None) -> dict:
        row = {"user_id": user_id, "title": title}
        if conversation_id:
            row["id"] = conversation_id
        result = self.sb.table("conversations").insert(row).execute()
        return result.data[0]

    def get_conversation(self, conversation_id: str, user_id: str) -> Optional[dict]:
        result = self.sb.table("conversations").select("id, title, created_at") \
            .eq("id", conversation_id).eq("user_id", user_id).execute()
        return result.data[0] if result.data else None

    def list_conversations(self, user_id: str, limit: int = 50) -> list[dict]:
        result = self.sb.table("conversations").select("id, title, created_at") \
            .eq("user_id", user_id).order("created_at", desc=True).limit(limit).execute()
        return result.data or []

    def rename_conversation(self, conversation_id: str, user_id: str, title: str) -> Optional[dict]:
        result = self.sb.table("conversations").update({"title": title}) \
            .eq("id", conversation_id).eq("user_id", user_id).execute()
        return result.data[0] if result.data else None

    def delete_conversation(self, conversation_id: str, user_id: str) -> bool:
        self.sb.table("messages").delete() \
            .eq("conversation_id", conversation_id).eq("user_id", user_id).execute()
        result = self.sb.table("conversations").delete() \
            .eq("id", conversation_id).eq("user_id", user_id).execute()
        return bool(result.data)

    # ═══════════════════════════════════════
    # Messages
    # ═══════════════════════════════════════

    def insert_messages(self, rows: list[dict]) -> list[dict]:
        """Insert turns keyed by id; rows whose id already exists are left untouched."""
        result = self.sb.table("messages").upsert(
            rows, on_conflict="id", ignore_duplicates=True
        ).execute()
        return result.data or []

    def list_messages(self, conversation_id: str, user_id: str) -> list[dict]:
        result = self.sb.table("messages").select("id, role, content, created_at") \
            .eq("conversation_id", conversation_id).eq("user_id", user_id) \
            .order("created_at").execute()
        return result.data or []


def get_store() -> Optional[SupabaseStore]:
    """FastAPI dependency. None when Supabase is not configured."""
    sb = get_supabase_client()
    if not sb:
        return None
    return SupabaseStore(sb)
