"""
Chat Service (Brain Layer)

Responsibilities:
- Validate chat requests and normalise conversation history
- Serve repeated messages from the response cache
- Pick an API key per upstream call (round-robin)
- Call Gemini single-shot, with history, or streamed
- Shape replies into the public JSON contract

UI-agnostic, FastAPI-ready. All mutable state (key cursor, cache)
belongs to the ChatService instance.
"""

import json
import logging
from datetime import datetime, UTC
from typing import Any, AsyncGenerator, AsyncIterator, Dict, List, Optional, Tuple

from pydantic import BaseModel

import core.metrics as metrics
from agents.gemini_client import GeminiClient, GeminiReply
from core.config import Settings
from core.exceptions import ChatValidationError, UpstreamError, error_body
from core.key_rotator import KeyRotator, mask
from core.response_cache import ResponseCache

logger = logging.getLogger("chat_service")

# ----------------------------------------------------------------------
# Constants
# ----------------------------------------------------------------------
METADATA_MARKER = "\n---METADATA---\n"

ROLE_ALIASES = {"user": "user", "model": "model", "assistant": "model"}


class ChatRequest(BaseModel):
    message: Optional[str] = None
    history: Optional[List[Any]] = None
    stream: bool = False


def _utc_now() -> str:
    return datetime.now(UTC).isoformat()


def _item_text(item: Dict[str, Any]) -> Optional[str]:
    """
    Text of one inbound history item, or None when it carries none.

    Accepts `parts` as a string, a list of strings, or a list of
    {"text": ...} objects, and `content` as a string.
    """
    parts = item.get("parts")
    if isinstance(parts, str):
        return parts
    if isinstance(parts, list) and parts:
        texts = []
        for part in parts:
            if isinstance(part, str):
                texts.append(part)
            elif isinstance(part, dict) and isinstance(part.get("text"), str):
                texts.append(part["text"])
            else:
                return None
        return "".join(texts)

    content = item.get("content")
    if isinstance(content, str):
        return content
    return None


class ChatService:
    """Owns the key rotator, the response cache and the Gemini adapter."""

    def __init__(
        self,
        settings: Settings,
        client: Optional[GeminiClient] = None,
        rotator: Optional[KeyRotator] = None,
        cache: Optional[ResponseCache] = None,
    ):
        self.settings = settings
        self.rotator = rotator or KeyRotator(settings.api_keys)
        self.cache = cache or ResponseCache(
            ttl=settings.cache_ttl_seconds,
            maxsize=settings.cache_max_entries,
            include_history=settings.cache_include_history,
        )
        self.client = client or GeminiClient(settings.model_id)
        metrics.API_KEYS_CONFIGURED.set(len(self.rotator))

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    def validate(self, request: ChatRequest) -> Tuple[str, List[Dict[str, Any]]]:
        """Return (message, gemini_history) or raise ChatValidationError."""
        message = request.message
        if message is None or not message.strip():
            raise ChatValidationError("message is required", code="MESSAGE_REQUIRED")
        if len(message) > self.settings.max_message_length:
            raise ChatValidationError(
                f"message exceeds {self.settings.max_message_length} characters",
                code="MESSAGE_TOO_LONG",
            )
        return message, self.format_history(request.history or [])

    def format_history(self, history: Any) -> List[Dict[str, Any]]:
        """
        Validate inbound history and convert it to Gemini turns.

        Every item is checked before truncation to the last
        `max_history_turns`. Leading model turns are dropped because
        Gemini requires a conversation to open with a user turn.
        """
        if not isinstance(history, list):
            raise ChatValidationError("history must be an array", code="INVALID_HISTORY")

        turns = []
        for index, item in enumerate(history):
            if not isinstance(item, dict):
                raise ChatValidationError(f"history[{index}] must be an object", code="INVALID_HISTORY")
            role = item.get("role")
            if role not in ROLE_ALIASES:
                raise ChatValidationError(
                    f"history[{index}].role must be one of: user, model, assistant",
                    code="INVALID_HISTORY",
                )
            text = _item_text(item)
            if text is None:
                raise ChatValidationError(
                    f"history[{index}] needs text in 'parts' or 'content'",
                    code="INVALID_HISTORY",
                )
            if text:
                turns.append({"role": ROLE_ALIASES[role], "parts": [{"text": text}]})

        if self.settings.max_history_turns > 0:
            turns = turns[-self.settings.max_history_turns:]
        else:
            turns = []
        while turns and turns[0]["role"] == "model":
            turns.pop(0)
        return turns

    # ------------------------------------------------------------------
    # Response shaping
    # ------------------------------------------------------------------
    def _metadata(self, payload: Dict[str, Any], from_cache: bool) -> Dict[str, Any]:
        return {
            "nextHistoryItem": {"role": "model", "parts": [{"text": payload["reply"]}]},
            "safety": payload.get("safety") or [],
            "timestamp": _utc_now(),
            "model": self.settings.model_id,
            "tokensUsed": payload.get("tokensUsed"),
            "fromCache": from_cache,
        }

    def _response(self, payload: Dict[str, Any], from_cache: bool) -> Dict[str, Any]:
        return {"reply": payload["reply"], **self._metadata(payload, from_cache)}

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------
    async def reply(self, request: ChatRequest) -> Dict[str, Any]:
        """Blocking chat: one JSON reply, served from cache when fresh."""
        message, history = self.validate(request)
        cache_key = self.cache.make_key(message, history)

        entry = self.cache.lookup(cache_key)
        metrics.record_cache_lookup(entry is not None)
        if entry is not None:
            logger.info("Cache hit", extra={"history_turns": len(history)})
            return self._response(entry.payload, from_cache=True)

        api_key = self.rotator.next()
        logger.info(
            "Calling Gemini",
            extra={"key": mask(api_key), "history_turns": len(history), "model": self.settings.model_id},
        )
        if history:
            result = await self.client.chat(api_key, message, history, self.settings.system_prompt)
        else:
            result = await self.client.generate(api_key, message, self.settings.system_prompt)

        payload = {"reply": result.text, "safety": result.safety, "tokensUsed": result.tokens_used}
        self.cache.store(cache_key, payload)
        return self._response(payload, from_cache=False)

    async def stream(self, request: ChatRequest) -> "ChatStream":
        """
        Streaming chat. The first upstream chunk is awaited here so that
        failures before any output still surface as a normal error status.
        """
        message, history = self.validate(request)
        cache_key = self.cache.make_key(message, history)
        metrics.STREAM_REQUESTS.labels(status="started").inc()

        entry = self.cache.lookup(cache_key)
        metrics.record_cache_lookup(entry is not None)
        if entry is not None:
            logger.info("Cache hit (stream)", extra={"history_turns": len(history)})
            return ChatStream(self, cache_key, cached=entry.payload)

        api_key = self.rotator.next()
        logger.info(
            "Streaming from Gemini",
            extra={"key": mask(api_key), "history_turns": len(history), "model": self.settings.model_id},
        )
        chunks = self.client.stream_chat(api_key, message, history, self.settings.system_prompt)
        stream = ChatStream(self, cache_key, chunks=chunks)
        try:
            await stream.prime()
        except UpstreamError:
            metrics.STREAM_REQUESTS.labels(status="error").inc()
            raise
        return stream

    # ------------------------------------------------------------------
    # Models & key pool
    # ------------------------------------------------------------------
    async def list_models(self) -> List[Dict[str, Any]]:
        return await self.client.list_models(self.rotator.next())

    def list_keys(self) -> List[str]:
        return [mask(key) for key in self.rotator.keys]

    def add_key(self, key: str) -> bool:
        added = self.rotator.add(key)
        metrics.API_KEYS_CONFIGURED.set(len(self.rotator))
        return added

    def remove_key(self, key: str) -> bool:
        removed = self.rotator.remove(key)
        if removed:
            self.client.forget(key)
            metrics.API_KEYS_CONFIGURED.set(len(self.rotator))
        return removed

    def health(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "model": self.settings.model_id,
            "timestamp": _utc_now(),
            "cacheSize": self.cache.size,
            "apiKeysCount": len(self.rotator),
        }


class ChatStream:
    """
    One streamed reply: raw text chunks, then METADATA_MARKER and a JSON
    object. The full text is cached once the upstream stream completes.
    """

    def __init__(
        self,
        service: ChatService,
        cache_key: str,
        chunks: Optional[AsyncIterator[GeminiReply]] = None,
        cached: Optional[Dict[str, Any]] = None,
    ):
        self._service = service
        self._cache_key = cache_key
        self._chunks = chunks
        self._cached = cached
        self._first: Optional[GeminiReply] = None
        self._exhausted = False

    @property
    def from_cache(self) -> bool:
        return self._cached is not None

    async def prime(self) -> None:
        if self._chunks is None:
            return
        try:
            self._first = await self._chunks.__anext__()
        except StopAsyncIteration:
            self._exhausted = True

    async def _upstream(self) -> AsyncGenerator[GeminiReply, None]:
        if self._first is not None:
            yield self._first
        if self._exhausted:
            return
        async for piece in self._chunks:
            yield piece

    def _trailer(self, body: Dict[str, Any]) -> str:
        return METADATA_MARKER + json.dumps(body, ensure_ascii=False)

    async def body(self) -> AsyncGenerator[str, None]:
        service = self._service

        if self._cached is not None:
            if self._cached["reply"]:
                yield self._cached["reply"]
            yield self._trailer(service._metadata(self._cached, from_cache=True))
            metrics.STREAM_REQUESTS.labels(status="success").inc()
            return

        parts: List[str] = []
        safety: List[Dict[str, Any]] = []
        tokens_used = None
        try:
            async for piece in self._upstream():
                if piece.text:
                    parts.append(piece.text)
                    yield piece.text
                if piece.safety:
                    safety = piece.safety
                if piece.tokens_used is not None:
                    tokens_used = piece.tokens_used
        except UpstreamError as exc:
            # Headers are already sent; report the failure in the trailer
            logger.warning("Stream failed mid-response", extra={"code": exc.code, "error": str(exc)})
            metrics.STREAM_REQUESTS.labels(status="error").inc()
            yield self._trailer(error_body(exc, not service.settings.is_production))
            return

        payload = {"reply": "".join(parts), "safety": safety, "tokensUsed": tokens_used}
        service.cache.store(self._cache_key, payload)
        metrics.STREAM_REQUESTS.labels(status="success").inc()
        yield self._trailer(service._metadata(payload, from_cache=False))
