"""
Chat Service: model invocation for the chat endpoint.

Talks to Gemini through its OpenAI-compatible endpoint. One adapter, two call
shapes: `invoke` waits for the whole reply, `open_stream` hands back text
chunks. Both share context building, credential checks and the wall-clock
deadline, so the pipeline wires quota and persistence the same way for each.

No automatic retries: the client retries by resending.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional

from openai import AsyncOpenAI, APITimeoutError, AuthenticationError, PermissionDeniedError

from chatapp.config import Settings
from chatapp.chat.exceptions import (
    ChatError,
    ConfigurationError,
    InvalidCredentialError,
    ModelPermissionDenied,
    ModelTimeoutError,
    UpstreamError,
)
from chatapp.chat.modes import Mode, system_instruction
from chatapp.chat.schemas import ChatTurn

MIN_KEY_LENGTH = 30
_EXHAUSTED = object()


def _log(msg: str):
    print(f"[Chat] {msg}", flush=True)


# ═══════════════════════════════════════
# Context
# ═══════════════════════════════════════

@dataclass
class ModelContext:
    system_instruction: str
    prompt: str
    history: list[dict] = field(default_factory=list)

    def to_messages(self) -> list[dict]:
        return [
            {"role": "system", "content": self.system_instruction},
            *self.history,
            {"role": "user", "content": self.prompt},
        ]


def build_context(
    history: list[ChatTurn],
    prompt: str,
    mode: Mode,
    language: Optional[str] = None,
    window: int = 10,
) -> ModelContext:
    """Keep only the last `window` prior turns. Older turns are dropped, not summarized."""
    recent = history[-window:] if window > 0 else []
    turns = [
        {"role": "user" if t.role == "user" else "assistant", "content": t.content}
        for t in recent
    ]
    return ModelContext(
        system_instruction=system_instruction(mode, language),
        prompt=prompt,
        history=turns,
    )


# ═══════════════════════════════════════
# Errors
# ═══════════════════════════════════════

def classify_error(e: Exception) -> ChatError:
    """Map an SDK failure onto the chat failure kinds."""
    if isinstance(e, ChatError):
        return e
    text = str(e)
    if isinstance(e, (APITimeoutError, asyncio.TimeoutError)):
        return ModelTimeoutError()
    if isinstance(e, AuthenticationError) or "API_KEY_INVALID" in text or "API key not valid" in text:
        return InvalidCredentialError()
    if isinstance(e, PermissionDeniedError) or "PERMISSION_DENIED" in text:
        return ModelPermissionDenied()
    return UpstreamError()


def check_api_key(api_key: str):
    if not api_key:
        raise ConfigurationError(
            "Gemini API key not found. Please add GEMINI_API_KEY to your environment variables."
        )
    if api_key == "your_api_key_here" or api_key.startswith("your_api_k"):
        raise ConfigurationError(
            "Please replace the placeholder API key with your actual Google Gemini API key. "
            "Get one from https://aistudio.google.com/app/apikey"
        )
    if len(api_key) < MIN_KEY_LENGTH:
        raise ConfigurationError(
            "Gemini API key appears to be invalid (too short). Please check your API key."
        )


# ═══════════════════════════════════════
# Provider
# ═══════════════════════════════════════

class GeminiProvider:
    def __init__(self, settings: Settings, client: Optional[AsyncOpenAI] = None):
        self.settings = settings
        self.model = settings.gemini_model
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self.settings.gemini_api_key,
                base_url=self.settings.gemini_base_url,
                timeout=self.settings.request_timeout_seconds,
                max_retries=0,
            )
        return self._client

    async def generate(self, context: ModelContext) -> str:
        completion = await self.client.chat.completions.create(
            model=self.model,
            messages=context.to_messages(),
        )
        if completion.usage:
            u = completion.usage
            _log(f"  [Gemini] Tokens: {u.prompt_tokens}+{u.completion_tokens}={u.total_tokens}")
        return completion.choices[0].message.content or ""

    async def open_stream(self, context: ModelContext) -> AsyncIterator[str]:
        stream = await self.client.chat.completions.create(
            model=self.model,
            messages=context.to_messages(),
            stream=True,
        )
        return self._chunks(stream)

    async def _chunks(self, stream) -> AsyncIterator[str]:
        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    yield delta
        finally:
            await stream.close()


# ═══════════════════════════════════════
# Adapter
# ═══════════════════════════════════════

async def _next_chunk(it):
    try:
        return await it.__anext__()
    except StopAsyncIteration:
        return _EXHAUSTED


class ModelAdapter:
    def __init__(self, provider, settings: Settings):
        self.provider = provider
        self.settings = settings

    @property
    def timeout(self) -> float:
        return self.settings.request_timeout_seconds

    def context_for(self, history: list[ChatTurn], prompt: str, mode: Mode, language: Optional[str]) -> ModelContext:
        return build_context(history, prompt, mode, language, window=self.settings.context_window_turns)

    async def invoke(self, context: ModelContext) -> str:
        check_api_key(self.settings.gemini_api_key)
        start = time.time()
        _log(f"  [Gemini] {self.settings.gemini_model} single-shot, {len(context.history)} prior turns")
        try:
            text = await asyncio.wait_for(self.provider.generate(context), self.timeout)
        except asyncio.TimeoutError:
            _log(f"  [Gemini] TIMEOUT after {self.timeout:.0f}s")
            raise ModelTimeoutError() from None
        except Exception as e:
            err = classify_error(e)
            _log(f"  [Gemini] {err.reason}: {e}")
            raise err from e

        if not text.strip():
            raise UpstreamError("The AI returned an empty response. Please try again.")
        _log(f"  [Gemini] done in {time.time() - start:.1f}s ({len(text)} chars)")
        return text

    async def open_stream(self, context: ModelContext) -> AsyncIterator[str]:
        """Open the upstream stream. Auth and permission failures surface here, before any chunk."""
        check_api_key(self.settings.gemini_api_key)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        _log(f"  [Gemini] {self.settings.gemini_model} stream, {len(context.history)} prior turns")
        try:
            upstream = await asyncio.wait_for(self.provider.open_stream(context), self.timeout)
        except asyncio.TimeoutError:
            _log(f"  [Gemini] TIMEOUT opening stream")
            raise ModelTimeoutError() from None
        except Exception as e:
            err = classify_error(e)
            _log(f"  [Gemini] {err.reason}: {e}")
            raise err from e
        return self._bounded(upstream, deadline)

    async def _bounded(self, upstream, deadline: float) -> AsyncIterator[str]:
        loop = asyncio.get_running_loop()
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise ModelTimeoutError()
                try:
                    chunk = await asyncio.wait_for(_next_chunk(upstream), remaining)
                except asyncio.TimeoutError:
                    _log(f"  [Gemini] stream TIMEOUT after {self.timeout:.0f}s")
                    raise ModelTimeoutError() from None
                except ChatError:
                    raise
                except Exception as e:
                    raise classify_error(e) from e
                if chunk is _EXHAUSTED:
                    return
                yield chunk
        finally:
            aclose = getattr(upstream, "aclose", None)
            if aclose is not None:
                await aclose()
