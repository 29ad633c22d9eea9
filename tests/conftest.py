# tests/conftest.py
import types

import pytest
from fastapi.testclient import TestClient

from agents.chat_service import ChatService
from api.app import create_app
from core.config import Settings


def _response(text, tokens=12, finish_reason="STOP", block_reason=None):
    """Object shaped like google.genai GenerateContentResponse."""
    rating = types.SimpleNamespace(category="HARM_CATEGORY_DANGEROUS_CONTENT", probability="NEGLIGIBLE")
    candidate = types.SimpleNamespace(safety_ratings=[rating], finish_reason=finish_reason)
    return types.SimpleNamespace(
        text=text,
        candidates=[candidate] if block_reason is None else [],
        usage_metadata=types.SimpleNamespace(total_token_count=tokens),
        prompt_feedback=types.SimpleNamespace(block_reason=block_reason) if block_reason else None,
    )


class FakeBackend:
    """
    Stand-in for the Gemini API behind the google-genai SDK.
    Tests tweak its attributes to script replies and failures.
    """

    def __init__(self):
        self.reply = "Rest and drink plenty of fluids."
        self.chunks = ["Rest ", "and drink ", "plenty of fluids."]
        self.error = None
        self.stream_error_after = None
        self.block_reason = None
        self.models = [
            types.SimpleNamespace(
                name="models/gemini-1.5-flash",
                display_name="Gemini 1.5 Flash",
                input_token_limit=1048576,
                output_token_limit=8192,
                supported_actions=["generateContent", "countTokens"],
            )
        ]
        self.calls = []

    def respond(self):
        if self.error is not None:
            raise self.error
        return _response(self.reply, block_reason=self.block_reason)


class FakeChat:
    def __init__(self, backend, api_key, history):
        self.backend = backend
        self.api_key = api_key
        self.history = history

    async def send_message(self, message):
        self.backend.calls.append(("chat", self.api_key, message, self.history))
        return self.backend.respond()

    async def send_message_stream(self, message):
        backend = self.backend
        backend.calls.append(("stream", self.api_key, message, self.history))
        if backend.error is not None and backend.stream_error_after is None:
            raise backend.error

        async def gen():
            for index, chunk in enumerate(backend.chunks):
                if backend.stream_error_after is not None and index == backend.stream_error_after:
                    raise backend.error
                yield _response(chunk, tokens=None)
            yield _response(None, tokens=21)
        return gen()


class FakeSDKClient:
    def __init__(self, backend, api_key):
        self.api_key = api_key
        backend.created.append(api_key)

        async def generate_content(model, contents, config=None):
            backend.calls.append(("generate", api_key, contents, None))
            return backend.respond()

        async def list_models():
            backend.calls.append(("models", api_key, None, None))
            if backend.error is not None:
                raise backend.error

            async def pager():
                for model in backend.models:
                    yield model
            return pager()

        self.aio = types.SimpleNamespace(
            models=types.SimpleNamespace(generate_content=generate_content, list=list_models),
            chats=types.SimpleNamespace(
                create=lambda model, config=None, history=None: FakeChat(backend, api_key, history)
            ),
        )


@pytest.fixture
def backend(monkeypatch):
    """Patch genai.Client so the real GeminiClient adapter talks to FakeBackend."""
    fake = FakeBackend()
    fake.created = []
    monkeypatch.setattr(
        "agents.gemini_client.genai.Client",
        lambda api_key: FakeSDKClient(fake, api_key),
    )
    return fake


@pytest.fixture
def settings():
    return Settings(
        api_keys=("key-alpha-0001", "key-bravo-0002", "key-charlie-0003"),
        model_id="gemini-1.5-flash",
        max_message_length=200,
        max_history_turns=4,
        rate_limit_max_requests=0,
    )


@pytest.fixture
def service(settings, backend):
    return ChatService(settings)


@pytest.fixture
def client(service):
    with TestClient(create_app(service)) as c:
        yield c
