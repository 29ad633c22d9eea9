import pytest

from agents.chat_service import ChatRequest, ChatService
from core.exceptions import ChatValidationError, QuotaExceededError


@pytest.mark.asyncio
async def test_second_identical_request_served_from_cache(service, backend):
    first = await service.reply(ChatRequest(message="I have a sore throat"))
    second = await service.reply(ChatRequest(message="  i have a SORE throat "))

    assert first["reply"] == second["reply"] == backend.reply
    assert first["fromCache"] is False
    assert second["fromCache"] is True
    assert len(backend.calls) == 1


@pytest.mark.asyncio
async def test_reply_shape(service, backend):
    result = await service.reply(ChatRequest(message="hello"))

    assert result["nextHistoryItem"] == {"role": "model", "parts": [{"text": backend.reply}]}
    assert result["model"] == "gemini-1.5-flash"
    assert result["tokensUsed"] == 12
    assert result["safety"]
    assert result["timestamp"]


@pytest.mark.asyncio
async def test_keys_rotate_across_cache_misses(service, backend):
    for i in range(4):
        await service.reply(ChatRequest(message=f"question {i}"))

    used = [call[1] for call in backend.calls]
    assert used == ["key-alpha-0001", "key-bravo-0002", "key-charlie-0003", "key-alpha-0001"]


@pytest.mark.asyncio
async def test_cache_hit_does_not_advance_rotation(service, backend):
    await service.reply(ChatRequest(message="same"))
    await service.reply(ChatRequest(message="same"))
    await service.reply(ChatRequest(message="other"))

    assert [call[1] for call in backend.calls] == ["key-alpha-0001", "key-bravo-0002"]


@pytest.mark.asyncio
async def test_history_switches_to_chat_mode(service, backend):
    history = [{"role": "user", "content": "Hi"}, {"role": "assistant", "content": "Hello, how can I help?"}]

    await service.reply(ChatRequest(message="My knee hurts", history=history))

    mode, _, message, sent = backend.calls[-1]
    assert mode == "chat"
    assert [c.role for c in sent] == ["user", "model"]


@pytest.mark.asyncio
async def test_too_long_message_rejected_without_upstream_call(service, backend):
    with pytest.raises(ChatValidationError) as exc_info:
        await service.reply(ChatRequest(message="x" * 201))

    assert exc_info.value.code == "MESSAGE_TOO_LONG"
    assert backend.calls == []


@pytest.mark.asyncio
async def test_upstream_error_is_not_cached(service, backend):
    backend.error = Exception("quota exceeded")
    with pytest.raises(QuotaExceededError):
        await service.reply(ChatRequest(message="hello"))

    backend.error = None
    result = await service.reply(ChatRequest(message="hello"))
    assert result["fromCache"] is False


@pytest.mark.parametrize("message", [None, "", "   "])
def test_blank_message_required(service, message):
    with pytest.raises(ChatValidationError) as exc_info:
        service.validate(ChatRequest(message=message))
    assert exc_info.value.code == "MESSAGE_REQUIRED"


@pytest.mark.parametrize("item", [
    {"parts": [{"text": "no role"}]},
    {"role": "user"},
    {"role": "system", "content": "not allowed"},
    {"role": "user", "parts": [{"nope": 1}]},
    "just a string",
])
def test_invalid_history_items(service, item):
    with pytest.raises(ChatValidationError) as exc_info:
        service.format_history([item])
    assert exc_info.value.code == "INVALID_HISTORY"


def test_history_accepts_all_part_shapes(service):
    turns = service.format_history([
        {"role": "user", "parts": "plain"},
        {"role": "model", "parts": ["a", "b"]},
        {"role": "user", "parts": [{"text": "c"}, {"text": "d"}]},
        {"role": "assistant", "content": "e"},
    ])
    assert turns == [
        {"role": "user", "parts": [{"text": "plain"}]},
        {"role": "model", "parts": [{"text": "ab"}]},
        {"role": "user", "parts": [{"text": "cd"}]},
        {"role": "model", "parts": [{"text": "e"}]},
    ]


def test_history_truncated_to_recent_turns(service):
    history = []
    for i in range(5):
        history.append({"role": "user", "content": f"q{i}"})
        history.append({"role": "model", "content": f"a{i}"})

    turns = service.format_history(history)

    # max_history_turns=4 keeps q3 a3 q4 a4
    assert [t["parts"][0]["text"] for t in turns] == ["q3", "a3", "q4", "a4"]


def test_leading_model_turns_dropped(service):
    turns = service.format_history([
        {"role": "model", "content": "Welcome!"},
        {"role": "user", "content": "Hi"},
    ])
    assert turns == [{"role": "user", "parts": [{"text": "Hi"}]}]


def test_health(service):
    health = service.health()
    assert health["ok"] is True
    assert health["apiKeysCount"] == 3
    assert health["cacheSize"] == 0
    assert health["model"] == "gemini-1.5-flash"


def test_service_refuses_empty_key_pool(settings, backend):
    from dataclasses import replace
    from core.exceptions import NoCredentialsError

    with pytest.raises(NoCredentialsError):
        ChatService(replace(settings, api_keys=()))
