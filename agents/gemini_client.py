# agents/gemini_client.py
"""
Gemini adapter (collaborator boundary).

Wraps the google-genai SDK behind four async calls used by the chat
service: generate (single-shot), chat (history + one message),
stream_chat (incremental chunks) and list_models.

Every SDK failure leaves this module as a typed UpstreamError subclass.
Gemini reports most failures only through the error text, so the
substring matching lives here in classify_upstream_error() and nowhere
else.
"""

# NOTE:
# Metrics (GEMINI_REQUESTS / GEMINI_LATENCY) are recorded here, once per
# public call, so cache hits never show up as upstream traffic.

import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

from google import genai
from google.genai import types

import core.metrics as metrics
from core.exceptions import (
    BadUpstreamRequestError,
    QuotaExceededError,
    SafetyBlockedError,
    UpstreamAuthError,
    UpstreamError,
    UpstreamUnknownError,
)
from core.key_rotator import mask

logger = logging.getLogger(__name__)


@dataclass
class GeminiReply:
    text: str
    safety: List[Dict[str, Any]] = field(default_factory=list)
    tokens_used: Optional[int] = None


# ----------------------------------------------------------------------
# Error classification
# ----------------------------------------------------------------------
def classify_upstream_error(exc: Exception) -> UpstreamError:
    """
    Map an SDK exception to a typed UpstreamError.

    Checks the error text first and falls back to the HTTP status the
    SDK attaches (google.genai.errors.APIError.code). Auth is checked
    before bad-request because Gemini reports an invalid key as a 400.
    """
    if isinstance(exc, UpstreamError):
        return exc

    text = str(exc) or exc.__class__.__name__
    lowered = text.lower()
    status = getattr(exc, "code", None)
    if not isinstance(status, int):
        status = None

    if "api_key" in lowered or "api key" in lowered or status in (401, 403):
        return UpstreamAuthError(text)
    if "quota" in lowered or "resource_exhausted" in lowered or status == 429:
        return QuotaExceededError(text)
    if "safety" in lowered or "blocked" in lowered:
        return SafetyBlockedError(text)
    if "invalid_argument" in lowered or "bad request" in lowered or status == 400:
        return BadUpstreamRequestError(text)
    return UpstreamUnknownError(text)


# ----------------------------------------------------------------------
# Response helpers
# ----------------------------------------------------------------------
def _enum_name(value: Any) -> Optional[str]:
    if value is None:
        return None
    return getattr(value, "value", None) or str(value)


def _extract_safety(response: Any) -> List[Dict[str, Any]]:
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        return []
    ratings = getattr(candidates[0], "safety_ratings", None) or []
    return [
        {
            "category": _enum_name(getattr(r, "category", None)),
            "probability": _enum_name(getattr(r, "probability", None)),
        }
        for r in ratings
    ]


def _extract_tokens(response: Any) -> Optional[int]:
    usage = getattr(response, "usage_metadata", None)
    return getattr(usage, "total_token_count", None) if usage is not None else None


def _check_blocked(response: Any) -> None:
    """Raise SafetyBlockedError when the prompt or candidate was filtered."""
    feedback = getattr(response, "prompt_feedback", None)
    block_reason = getattr(feedback, "block_reason", None) if feedback is not None else None
    if block_reason:
        raise SafetyBlockedError(f"Prompt blocked by safety filter: {_enum_name(block_reason)}")

    candidates = getattr(response, "candidates", None) or []
    if candidates and _enum_name(getattr(candidates[0], "finish_reason", None)) == "SAFETY":
        raise SafetyBlockedError("Response blocked by safety filter: SAFETY")


def _to_reply(response: Any) -> GeminiReply:
    _check_blocked(response)
    return GeminiReply(
        text=response.text or "",
        safety=_extract_safety(response),
        tokens_used=_extract_tokens(response),
    )


def _to_contents(history: List[Dict[str, Any]]) -> List[types.Content]:
    """Gemini-shaped dict turns ({role, parts:[{text}]}) to SDK Content objects."""
    return [
        types.Content(
            role=turn["role"],
            parts=[types.Part.from_text(text=part["text"]) for part in turn["parts"]],
        )
        for turn in history
    ]


# ----------------------------------------------------------------------
# Client
# ----------------------------------------------------------------------
class GeminiClient:
    """One SDK client per API key, created lazily and reused."""

    def __init__(self, model: str):
        self.model = model
        self._clients: Dict[str, genai.Client] = {}

    def _client(self, api_key: str) -> genai.Client:
        client = self._clients.get(api_key)
        if client is None:
            client = genai.Client(api_key=api_key)
            self._clients[api_key] = client
            logger.debug("Created Gemini client", extra={"key": mask(api_key)})
        return client

    def forget(self, api_key: str) -> None:
        """Drop the cached SDK client for a key removed from the pool."""
        self._clients.pop(api_key, None)

    def _config(self, system_prompt: Optional[str]) -> types.GenerateContentConfig:
        return types.GenerateContentConfig(system_instruction=system_prompt or None)

    async def generate(self, api_key: str, message: str, system_prompt: Optional[str] = None) -> GeminiReply:
        start = time.monotonic()
        try:
            response = await self._client(api_key).aio.models.generate_content(
                model=self.model,
                contents=message,
                config=self._config(system_prompt),
            )
            reply = _to_reply(response)
        except Exception as exc:
            metrics.record_gemini_call("generate", "error", time.monotonic() - start)
            raise classify_upstream_error(exc) from exc
        metrics.record_gemini_call("generate", "success", time.monotonic() - start)
        return reply

    async def chat(
        self,
        api_key: str,
        message: str,
        history: List[Dict[str, Any]],
        system_prompt: Optional[str] = None,
    ) -> GeminiReply:
        start = time.monotonic()
        try:
            session = self._client(api_key).aio.chats.create(
                model=self.model,
                config=self._config(system_prompt),
                history=_to_contents(history),
            )
            response = await session.send_message(message)
            reply = _to_reply(response)
        except Exception as exc:
            metrics.record_gemini_call("chat", "error", time.monotonic() - start)
            raise classify_upstream_error(exc) from exc
        metrics.record_gemini_call("chat", "success", time.monotonic() - start)
        return reply

    async def stream_chat(
        self,
        api_key: str,
        message: str,
        history: List[Dict[str, Any]],
        system_prompt: Optional[str] = None,
    ) -> AsyncIterator[GeminiReply]:
        """
        Yield one GeminiReply per upstream chunk, in arrival order.

        Chunks without text are skipped. safety/tokens_used on a chunk
        reflect what the SDK reported with it (usually only the last one).
        """
        start = time.monotonic()
        try:
            session = self._client(api_key).aio.chats.create(
                model=self.model,
                config=self._config(system_prompt),
                history=_to_contents(history),
            )
            async for chunk in await session.send_message_stream(message):
                piece = _to_reply(chunk)
                if piece.text or piece.safety or piece.tokens_used:
                    yield piece
        except Exception as exc:
            metrics.record_gemini_call("stream", "error", time.monotonic() - start)
            raise classify_upstream_error(exc) from exc
        metrics.record_gemini_call("stream", "success", time.monotonic() - start)

    async def list_models(self, api_key: str) -> List[Dict[str, Any]]:
        start = time.monotonic()
        models = []
        try:
            async for model in await self._client(api_key).aio.models.list():
                models.append({
                    "name": model.name,
                    "displayName": getattr(model, "display_name", None),
                    "inputTokenLimit": getattr(model, "input_token_limit", None),
                    "outputTokenLimit": getattr(model, "output_token_limit", None),
                    "supportedActions": list(getattr(model, "supported_actions", None) or []),
                })
        except Exception as exc:
            metrics.record_gemini_call("models", "error", time.monotonic() - start)
            raise classify_upstream_error(exc) from exc
        metrics.record_gemini_call("models", "success", time.monotonic() - start)
        return models
