"""
Quota-gated chat pipeline.

Order inside one request:
  daily reset -> gate decision -> model call -> increment + record

Denials never reach the model. The post-exchange step (counter bump and
history write) runs once per successful exchange, for both the single-shot
and the streaming shape, and never for a failed or abandoned one.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Optional

from chatapp.auth.schemas import Identity
from chatapp.config import Settings
from chatapp.chat.exceptions import ChatError, PersistenceError, UpstreamError
from chatapp.chat.gate import Decision, evaluate
from chatapp.chat.modes import parse_mode
from chatapp.chat.quota import GuestLedger, QuotaLedger
from chatapp.chat.recorder import PersistenceRecorder
from chatapp.chat.schemas import ChatRequest, ChatTurn
from chatapp.chat.service import ModelAdapter, ModelContext

logger = logging.getLogger(__name__)


@dataclass
class ExchangeOutcome:
    response: str
    conversation_id: Optional[str]
    limits: dict
    warnings: list[str] = field(default_factory=list)

    @property
    def warning(self) -> Optional[str]:
        return self.warnings[0] if self.warnings else None


class ChatPipeline:
    def __init__(
        self,
        ledger: QuotaLedger,
        guest_ledger: GuestLedger,
        adapter: ModelAdapter,
        recorder: PersistenceRecorder,
        settings: Settings,
    ):
        self.ledger = ledger
        self.guest_ledger = guest_ledger
        self.adapter = adapter
        self.recorder = recorder
        self.settings = settings

    # ═══════════════════════════════════════
    # Gate
    # ═══════════════════════════════════════

    def admit(self, identity: Identity, client_guest_count: int = 0) -> Decision:
        """Apply the daily reset, then decide. Mutates `identity.profile` to the reset view."""
        if identity.is_authenticated:
            identity.profile = self.ledger.check_and_maybe_reset(identity.profile)
            return evaluate(identity, identity.profile.daily_prompts_used, self.settings)

        used = client_guest_count
        if self.settings.enforce_guest_quota:
            used = max(used, self.guest_ledger.used_today(identity.guest_key))
        return evaluate(identity, used, self.settings)

    # ═══════════════════════════════════════
    # Single-shot
    # ═══════════════════════════════════════

    async def run(self, identity: Identity, req: ChatRequest, decision: Decision) -> ExchangeOutcome:
        if not decision.allowed:
            raise ValueError("run() called for a denied request")
        self._check_conversation(identity, req)
        user_turn = ChatTurn(role="user", content=req.query)
        text = await self.adapter.invoke(self._context(req))
        assistant_turn = ChatTurn(role="assistant", content=text)
        return self._complete_exchange(
            identity, decision, user_turn, assistant_turn,
            conversation_id=req.conversation_id if identity.is_authenticated else None,
            exchange_id=req.request_id or str(uuid.uuid4()),
        )

    # ═══════════════════════════════════════
    # Streaming
    # ═══════════════════════════════════════

    async def open_stream(
        self,
        identity: Identity,
        req: ChatRequest,
        decision: Decision,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> "StreamingExchange":
        """Open upstream and pull the first chunk, so early failures still get a JSON error."""
        if not decision.allowed:
            raise ValueError("open_stream() called for a denied request")
        self._check_conversation(identity, req)
        user_turn = ChatTurn(role="user", content=req.query)
        chunks = await self.adapter.open_stream(self._context(req))
        try:
            first = await anext(chunks, None)
        except BaseException:
            await chunks.aclose()
            raise
        if first is None:
            await chunks.aclose()
            raise UpstreamError("The AI returned an empty response. Please try again.")

        # Announced in the response header, written only once the exchange completes
        conversation_id = req.conversation_id if identity.is_authenticated else None
        new_conversation_id = None
        if identity.is_authenticated and self.recorder.store is not None and not conversation_id:
            new_conversation_id = str(uuid.uuid4())

        return StreamingExchange(
            pipeline=self,
            identity=identity,
            decision=decision,
            user_turn=user_turn,
            first=first,
            chunks=chunks,
            conversation_id=conversation_id,
            new_conversation_id=new_conversation_id,
            exchange_id=req.request_id or str(uuid.uuid4()),
            is_disconnected=is_disconnected,
        )

    # ═══════════════════════════════════════
    # Shared
    # ═══════════════════════════════════════

    def _context(self, req: ChatRequest) -> ModelContext:
        mode = parse_mode(req.ai_mode)
        return self.adapter.context_for(req.messages, req.query, mode, req.selected_language)

    def _check_conversation(self, identity: Identity, req: ChatRequest):
        if identity.is_authenticated and req.conversation_id:
            self.recorder.verify_conversation(identity.user_id, req.conversation_id)

    def _complete_exchange(
        self,
        identity: Identity,
        decision: Decision,
        user_turn: ChatTurn,
        assistant_turn: ChatTurn,
        conversation_id: Optional[str],
        exchange_id: str,
        new_conversation_id: Optional[str] = None,
    ) -> ExchangeOutcome:
        warnings = []
        used = decision.used + 1

        if identity.is_authenticated:
            try:
                identity.profile = self.ledger.increment(identity.profile)
                used = identity.profile.daily_prompts_used
            except PersistenceError as e:
                logger.warning(f"Could not count prompt: {e}")

            result = self.recorder.record_exchange(
                identity.user_id, conversation_id, user_turn, assistant_turn, exchange_id,
                new_conversation_id=new_conversation_id,
            )
            conversation_id = result.conversation_id
            if result.warning:
                warnings.append(result.warning)
        elif self.settings.enforce_guest_quota:
            try:
                self.guest_ledger.increment(identity.guest_key)
            except PersistenceError as e:
                logger.warning(f"Could not count guest prompt: {e}")

        limits = evaluate(identity, used, self.settings).limits()
        return ExchangeOutcome(
            response=assistant_turn.content,
            conversation_id=conversation_id,
            limits=limits,
            warnings=warnings,
        )


class StreamingExchange:
    """A model stream already past its first chunk, plus the once-only completion hook."""

    def __init__(
        self,
        pipeline: ChatPipeline,
        identity: Identity,
        decision: Decision,
        user_turn: ChatTurn,
        first: str,
        chunks: AsyncIterator[str],
        conversation_id: Optional[str],
        exchange_id: str,
        new_conversation_id: Optional[str] = None,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ):
        self.pipeline = pipeline
        self.identity = identity
        self.decision = decision
        self.user_turn = user_turn
        self.first = first
        self.chunks = chunks
        self.selected_conversation_id = conversation_id
        self.new_conversation_id = new_conversation_id
        self.exchange_id = exchange_id
        self.is_disconnected = is_disconnected
        self.outcome: Optional[ExchangeOutcome] = None
        self._parts: list[str] = []

    @property
    def conversation_id(self) -> Optional[str]:
        return self.selected_conversation_id or self.new_conversation_id

    def _finish(self):
        if self.outcome is not None:
            return
        self.outcome = self.pipeline._complete_exchange(
            self.identity,
            self.decision,
            self.user_turn,
            ChatTurn(role="assistant", content="".join(self._parts)),
            conversation_id=self.selected_conversation_id,
            exchange_id=self.exchange_id,
            new_conversation_id=self.new_conversation_id,
        )

    async def body(self) -> AsyncIterator[str]:
        record_truncated = self.pipeline.settings.record_truncated_streams
        truncated = False
        try:
            self._parts.append(self.first)
            yield self.first
            async for chunk in self.chunks:
                if self.is_disconnected is not None and await self.is_disconnected():
                    logger.info(f"Client disconnected during stream {self.exchange_id}")
                    truncated = True
                    break
                self._parts.append(chunk)
                yield chunk
        except ChatError as e:
            logger.warning(f"Stream {self.exchange_id} failed after {len(self._parts)} chunks: {e.message}")
            return
        except (GeneratorExit, asyncio.CancelledError):
            logger.info(f"Stream {self.exchange_id} cancelled by client")
            if record_truncated:
                self._finish()
            raise
        finally:
            await self.chunks.aclose()

        if not truncated or record_truncated:
            self._finish()
