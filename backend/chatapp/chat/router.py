"""
Chat Router

Limits:
  Per-minute (slowapi):  CHAT_RATE_LIMIT per IP
  Guest:                 2 prompts per day (client counter + hashed-IP counter)
  Signed-in free:        5 prompts per UTC day
  Signed-in pro/admin:   unlimited

POST /api/chat answers with JSON or, with "stream": true, a chunked text body.
Limit denials are 403 with reason "limit_reached" so the client can show the
upgrade prompt instead of a generic error.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse

from chatapp.auth.dependencies import require_auth, resolve_identity
from chatapp.auth.schemas import Identity
from chatapp.chat.gate import Decision
from chatapp.chat.pipeline import ChatPipeline
from chatapp.chat.quota import GuestLedger, QuotaLedger
from chatapp.chat.recorder import PersistenceRecorder
from chatapp.chat.schemas import ChatRequest, RenameConversation
from chatapp.chat.service import GeminiProvider, ModelAdapter
from chatapp.chat.store import SupabaseStore, get_store
from chatapp.config import get_settings, Settings
from chatapp.middleware import limiter

logger = logging.getLogger(__name__)
router = APIRouter()


def get_provider(settings: Settings = Depends(get_settings)) -> GeminiProvider:
    return GeminiProvider(settings)


def get_pipeline(
    settings: Settings = Depends(get_settings),
    store: Optional[SupabaseStore] = Depends(get_store),
    provider: GeminiProvider = Depends(get_provider),
) -> ChatPipeline:
    return ChatPipeline(
        ledger=QuotaLedger(store),
        guest_ledger=GuestLedger(store),
        adapter=ModelAdapter(provider, settings),
        recorder=PersistenceRecorder(store),
        settings=settings,
    )


def _deny(decision: Decision) -> JSONResponse:
    return JSONResponse(status_code=decision.status_code, content=decision.to_body())


def _require_store(store: Optional[SupabaseStore]) -> SupabaseStore:
    if store is None:
        raise HTTPException(status_code=503, detail="Database not configured")
    return store


# ═══════════════════════════════════════
# GET /api/limits (frontend calls this to display remaining)
# ═══════════════════════════════════════

@router.get("/limits")
async def get_limits(
    request: Request,
    identity: Identity = Depends(resolve_identity),
    pipeline: ChatPipeline = Depends(get_pipeline),
    guest_prompt_count: int = 0,
):
    """Returns remaining prompts for the current user or guest."""
    decision = pipeline.admit(identity, guest_prompt_count)
    return decision.limits()


# ═══════════════════════════════════════
# POST /api/chat
# ═══════════════════════════════════════

@router.post("/chat")
@limiter.limit(lambda: get_settings().chat_rate_limit)
async def chat(
    request: Request,
    req: ChatRequest,
    identity: Identity = Depends(resolve_identity),
    pipeline: ChatPipeline = Depends(get_pipeline),
):
    decision = pipeline.admit(identity, req.guest_prompt_count)
    if not decision.allowed:
        logger.info(f"Denied chat for {identity.user_id or 'guest'}: {decision.reason} ({decision.used}/{decision.limit})")
        return _deny(decision)

    if req.stream:
        exchange = await pipeline.open_stream(
            identity, req, decision, is_disconnected=request.is_disconnected
        )
        headers = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
        if exchange.conversation_id:
            headers["X-Conversation-Id"] = exchange.conversation_id
        return StreamingResponse(
            exchange.body(),
            media_type="text/plain; charset=utf-8",
            headers=headers,
        )

    outcome = await pipeline.run(identity, req, decision)
    body = {
        "response": outcome.response,
        "conversationId": outcome.conversation_id,
        "limits": outcome.limits,
    }
    if outcome.warning:
        body["warning"] = outcome.warning
    return body


# ═══════════════════════════════════════
# Conversations
# ═══════════════════════════════════════

@router.get("/conversations")
async def list_conversations(
    identity: Identity = Depends(require_auth),
    store: Optional[SupabaseStore] = Depends(get_store),
):
    if store is None:
        return {"conversations": []}
    try:
        return {"conversations": store.list_conversations(identity.user_id)}
    except Exception as e:
        logger.warning(f"Could not fetch conversations: {e}")
        return {"conversations": []}


@router.get("/conversations/{conversation_id}/messages")
async def list_messages(
    conversation_id: str,
    identity: Identity = Depends(require_auth),
    store: Optional[SupabaseStore] = Depends(get_store),
):
    store = _require_store(store)
    try:
        conversation = store.get_conversation(conversation_id, identity.user_id)
        if not conversation:
            raise HTTPException(status_code=404, detail="Conversation not found")
        return {
            "conversation": conversation,
            "messages": store.list_messages(conversation_id, identity.user_id),
        }
    except HTTPException:
        raise
    except Exception:
        logger.exception(f"Could not fetch messages for {conversation_id}")
        raise HTTPException(status_code=500, detail="Could not fetch messages")


@router.patch("/conversations/{conversation_id}")
async def rename_conversation(
    conversation_id: str,
    body: RenameConversation,
    identity: Identity = Depends(require_auth),
    store: Optional[SupabaseStore] = Depends(get_store),
):
    store = _require_store(store)
    try:
        row = store.rename_conversation(conversation_id, identity.user_id, body.title.strip())
        if not row:
            raise HTTPException(status_code=404, detail="Conversation not found")
        return {"status": "success", "conversation": row}
    except HTTPException:
        raise
    except Exception:
        logger.exception(f"Could not rename conversation {conversation_id}")
        raise HTTPException(status_code=500, detail="Could not rename conversation")


@router.delete("/conversations/{conversation_id}")
async def delete_conversation(
    conversation_id: str,
    identity: Identity = Depends(require_auth),
    store: Optional[SupabaseStore] = Depends(get_store),
):
    store = _require_store(store)
    try:
        if not store.delete_conversation(conversation_id, identity.user_id):
            raise HTTPException(status_code=404, detail="Conversation not found")
        return {"status": "success", "message": "Conversation deleted"}
    except HTTPException:
        raise
    except Exception:
        logger.exception(f"Could not delete conversation {conversation_id}")
        raise HTTPException(status_code=500, detail="Could not delete conversation")
