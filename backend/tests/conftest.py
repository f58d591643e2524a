"""Shared fixtures: in-memory Supabase store, scripted model provider, pipeline factory."""

import asyncio
import itertools
from datetime import date, datetime, timedelta, timezone
from typing import Optional

import pytest

from chatapp.auth.schemas import Identity, IdentityKind, UserProfile
from chatapp.chat.exceptions import UpstreamError
from chatapp.chat.pipeline import ChatPipeline
from chatapp.chat.quota import GuestLedger, QuotaLedger
from chatapp.chat.recorder import PersistenceRecorder
from chatapp.chat.service import ModelAdapter
from chatapp.config import Settings

TODAY = date(2026, 10, 19)
YESTERDAY = TODAY - timedelta(days=1)
VALID_KEY = "AIzaSyA-test-key-0123456789abcdefghijk"


class FakeStore:
    """Dict-backed stand-in for SupabaseStore with the same conditional-update semantics."""

    def __init__(self):
        self.profiles: dict[str, dict] = {}
        self.guest_usage: dict[str, dict] = {}
        self.conversations: dict[str, dict] = {}
        self.messages: dict[str, dict] = {}
        self.calls: list[str] = []
        self.fail: set[str] = set()
        self._ids = itertools.count(1)

    def _call(self, name: str):
        self.calls.append(name)
        if name in self.fail:
            raise RuntimeError(f"{name} unavailable")

    # profiles
    def get_profile(self, user_id):
        self._call("get_profile")
        row = self.profiles.get(user_id)
        return dict(row) if row else None

    def insert_profile(self, user_id, fields):
        self._call("insert_profile")
        if user_id in self.profiles:
            return None
        self.profiles[user_id] = {"id": user_id, **fields}
        return dict(self.profiles[user_id])

    def reset_daily_prompts(self, user_id, today):
        self._call("reset_daily_prompts")
        row = self.profiles.get(user_id)
        if not row or row.get("daily_prompts_reset_date") == today.isoformat():
            return None
        row.update({"daily_prompts_used": 0, "daily_prompts_reset_date": today.isoformat()})
        return dict(row)

    def compare_and_set_prompts(self, user_id, expected, new):
        self._call("compare_and_set_prompts")
        row = self.profiles.get(user_id)
        if not row or row.get("daily_prompts_used", 0) != expected:
            return None
        row["daily_prompts_used"] = new
        return dict(row)

    # guest usage
    def get_guest_usage(self, ip_hash):
        self._call("get_guest_usage")
        row = self.guest_usage.get(ip_hash)
        return dict(row) if row else None

    def insert_guest_usage(self, ip_hash, today):
        self._call("insert_guest_usage")
        if ip_hash in self.guest_usage:
            return False
        self.guest_usage[ip_hash] = {"prompts_used": 1, "reset_date": today.isoformat()}
        return True

    def compare_and_set_guest_usage(self, ip_hash, expected, expected_date, new, today):
        self._call("compare_and_set_guest_usage")
        row = self.guest_usage.get(ip_hash)
        if not row or row["prompts_used"] != expected or row["reset_date"] != expected_date:
            return False
        row.update({"prompts_used": new, "reset_date": today.isoformat()})
        return True

    # conversations
    def insert_conversation(self, user_id, title, conversation_id=None):
        self._call("insert_conversation")
        conversation_id = conversation_id or f"conv-{next(self._ids)}"
        row = {
            "id": conversation_id,
            "user_id": user_id,
            "title": title,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        self.conversations[conversation_id] = row
        return dict(row)

    def get_conversation(self, conversation_id, user_id):
        self._call("get_conversation")
        row = self.conversations.get(conversation_id)
        if not row or row["user_id"] != user_id:
            return None
        return {k: row[k] for k in ("id", "title", "created_at")}

    def list_conversations(self, user_id, limit=50):
        self._call("list_conversations")
        rows = [r for r in self.conversations.values() if r["user_id"] == user_id]
        rows.sort(key=lambda r: r["created_at"], reverse=True)
        return [{k: r[k] for k in ("id", "title", "created_at")} for r in rows[:limit]]

    def rename_conversation(self, conversation_id, user_id, title):
        self._call("rename_conversation")
        row = self.conversations.get(conversation_id)
        if not row or row["user_id"] != user_id:
            return None
        row["title"] = title
        return dict(row)

    def delete_conversation(self, conversation_id, user_id):
        self._call("delete_conversation")
        row = self.conversations.get(conversation_id)
        if not row or row["user_id"] != user_id:
            return False
        del self.conversations[conversation_id]
        self.messages = {
            k: m for k, m in self.messages.items() if m["conversation_id"] != conversation_id
        }
        return True

    # messages
    def insert_messages(self, rows):
        self._call("insert_messages")
        inserted = []
        for row in rows:
            if row["id"] not in self.messages:
                self.messages[row["id"]] = dict(row)
                inserted.append(dict(row))
        return inserted

    def list_messages(self, conversation_id, user_id):
        self._call("list_messages")
        rows = [
            m for m in self.messages.values()
            if m["conversation_id"] == conversation_id and m["user_id"] == user_id
        ]
        rows.sort(key=lambda m: m["created_at"])
        return [{k: m[k] for k in ("id", "role", "content", "created_at")} for m in rows]

    # helpers
    def add_profile(self, user_id, tier="free", used=0, reset: Optional[date] = TODAY, email=None):
        self.profiles[user_id] = {
            "id": user_id,
            "email": email,
            "tier": tier,
            "daily_prompts_used": used,
            "daily_prompts_reset_date": reset.isoformat() if reset else None,
        }
        return self.profiles[user_id]


class FakeProvider:
    """Model provider that answers from a script instead of the network."""

    def __init__(self, reply="Hello from Gemini", chunks=None, error=None, delay=0.0, fail_after=None):
        self.reply = reply
        self.chunks = chunks if chunks is not None else ["Hello", " from", " Gemini"]
        self.error = error
        self.delay = delay
        self.fail_after = fail_after
        self.contexts = []
        self.closed = False

    @property
    def calls(self) -> int:
        return len(self.contexts)

    async def generate(self, context):
        self.contexts.append(context)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.reply

    async def open_stream(self, context):
        self.contexts.append(context)
        if self.error:
            raise self.error
        return self._stream()

    async def _stream(self):
        try:
            for i, chunk in enumerate(self.chunks):
                if self.fail_after is not None and i == self.fail_after:
                    raise UpstreamError()
                if self.delay:
                    await asyncio.sleep(self.delay)
                yield chunk
        finally:
            self.closed = True


def make_settings(**overrides) -> Settings:
    values = {
        "gemini_api_key": VALID_KEY,
        "supabase_url": "https://example.supabase.co",
        "supabase_service_key": "service-key",
        "request_timeout_seconds": 2.0,
        "admin_emails": "owner@example.com",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_pipeline(settings, store, provider, today=TODAY) -> ChatPipeline:
    clock = lambda: today  # noqa: E731
    return ChatPipeline(
        ledger=QuotaLedger(store, clock=clock),
        guest_ledger=GuestLedger(store, clock=clock),
        adapter=ModelAdapter(provider, settings),
        recorder=PersistenceRecorder(store),
        settings=settings,
    )


def user_identity(store: FakeStore, user_id="user-1", **profile) -> Identity:
    row = store.add_profile(user_id, **profile)
    return Identity(kind=IdentityKind.AUTHENTICATED, profile=UserProfile.from_row(row))


def guest_identity(kind=IdentityKind.GUEST, key="guest-hash") -> Identity:
    return Identity(kind=kind, guest_key=key)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def pipeline(settings, store, provider) -> ChatPipeline:
    return make_pipeline(settings, store, provider)
