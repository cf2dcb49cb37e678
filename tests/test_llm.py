from __future__ import annotations

import asyncio

import httpx
import pytest
from pydantic_ai.messages import (
    ModelMessage,
    ModelResponse,
    SystemPromptPart,
    TextPart,
    UserPromptPart,
)
from pydantic_ai.models.function import AgentInfo, FunctionModel

from conftest import VALID_KEY
from papertutor.llm import (
    ChatBackend,
    CompletionFailure,
    filter_chat_models,
    is_valid_api_key,
    prompt_for_level,
)
from papertutor.models import ModelInfo


def _backend_for(function, **kwargs) -> ChatBackend:
    return ChatBackend(lambda credential, model_id: FunctionModel(function), **kwargs)


def _parts(messages: list[ModelMessage]) -> list:
    return [part for message in messages for part in message.parts]


def test_prompt_for_level_wraps_text() -> None:
    assert prompt_for_level("eli5", "TEXT") == (
        "Explain this text as if you're explaining to a 5-year-old:\n\nTEXT"
    )
    assert prompt_for_level("highlevel", "TEXT").startswith("Provide a high-level overview")
    assert prompt_for_level("detailed", "TEXT").startswith("Give a detailed, technical explanation")
    assert prompt_for_level("detailed", "TEXT").endswith("\n\nTEXT")


def test_api_key_format() -> None:
    assert is_valid_api_key(VALID_KEY)
    assert not is_valid_api_key("sk-short")
    assert not is_valid_api_key("pk-" + "a" * 60)
    assert not is_valid_api_key("")


def test_filter_chat_models_keeps_gpt_chat_family_sorted() -> None:
    models = [
        ModelInfo(id=i, label=i)
        for i in ["gpt-4o", "whisper-1", "gpt-3.5-turbo-instruct", "gpt-3.5-turbo", "dall-e-3"]
    ]
    assert [m.id for m in filter_chat_models(models)] == ["gpt-3.5-turbo", "gpt-4o"]


def test_complete_sends_single_leading_system_turn() -> None:
    seen: list[list[ModelMessage]] = []

    def respond(messages: list[ModelMessage], info: AgentInfo) -> ModelResponse:
        seen.append(messages)
        return ModelResponse(parts=[TextPart(content="Photosynthesis turns light into sugar.")])

    backend = _backend_for(respond)
    reply = asyncio.run(
        backend.complete(
            VALID_KEY,
            "You are a tutor.",
            [("user", "Hi"), ("assistant", "Hello!"), ("user", "What is X?")],
            "gpt-4o",
        )
    )

    assert reply == "Photosynthesis turns light into sugar."
    parts = _parts(seen[0])
    system_parts = [p for p in parts if isinstance(p, SystemPromptPart)]
    assert len(system_parts) == 1
    assert parts[0] is system_parts[0]
    assert system_parts[0].content == "You are a tutor."
    user_parts = [p.content for p in parts if isinstance(p, UserPromptPart)]
    assert user_parts == ["Hi", "What is X?"]
    assert [p.content for p in parts if isinstance(p, TextPart)] == ["Hello!"]


def test_complete_requires_credential() -> None:
    backend = _backend_for(lambda messages, info: ModelResponse(parts=[TextPart(content="x")]))
    with pytest.raises(CompletionFailure, match="API key is required"):
        asyncio.run(backend.complete("", "sys", [("user", "hi")], "gpt-4o"))


def test_complete_wraps_backend_errors() -> None:
    def explode(messages: list[ModelMessage], info: AgentInfo) -> ModelResponse:
        raise RuntimeError("connection reset")

    backend = _backend_for(explode)
    with pytest.raises(CompletionFailure, match="connection reset"):
        asyncio.run(backend.complete(VALID_KEY, "sys", [("user", "hi")], "gpt-4o"))


def test_complete_treats_blank_reply_as_failure() -> None:
    backend = _backend_for(lambda messages, info: ModelResponse(parts=[TextPart(content="   ")]))
    with pytest.raises(CompletionFailure):
        asyncio.run(backend.complete(VALID_KEY, "sys", [("user", "hi")], "gpt-4o"))


def test_complete_times_out() -> None:
    async def slow(messages: list[ModelMessage], info: AgentInfo) -> ModelResponse:
        await asyncio.sleep(5)
        return ModelResponse(parts=[TextPart(content="late")])

    backend = _backend_for(slow, timeout=0.05)
    with pytest.raises(CompletionFailure, match="timed out"):
        asyncio.run(backend.complete(VALID_KEY, "sys", [("user", "hi")], "gpt-4o"))


def test_test_connection_never_raises() -> None:
    def explode(messages: list[ModelMessage], info: AgentInfo) -> ModelResponse:
        raise RuntimeError("boom")

    ok = _backend_for(lambda messages, info: ModelResponse(parts=[TextPart(content="T")]))
    broken = _backend_for(explode)

    assert asyncio.run(ok.test_connection(VALID_KEY, "gpt-4o")) is True
    assert asyncio.run(broken.test_connection(VALID_KEY, "gpt-4o")) is False
    assert asyncio.run(ok.test_connection("sk-short", "gpt-4o")) is False
    assert asyncio.run(ok.test_connection(VALID_KEY, "")) is False


def test_test_connection_survives_model_construction_errors() -> None:
    def unbuildable(credential: str, model_id: str):
        raise ValueError("bad base url")

    backend = ChatBackend(unbuildable)

    assert asyncio.run(backend.test_connection(VALID_KEY, "gpt-4o")) is False
    with pytest.raises(CompletionFailure):
        asyncio.run(backend.complete(VALID_KEY, "sys", [("user", "hi")], "gpt-4o"))


def test_list_models_reads_listing_endpoint() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/models"
        assert request.headers["authorization"] == f"Bearer {VALID_KEY}"
        return httpx.Response(
            200,
            json={
                "data": [
                    {"id": "gpt-4o", "owned_by": "openai"},
                    {"id": "whisper-1", "owned_by": "openai-internal"},
                ]
            },
        )

    backend = ChatBackend(
        base_url="https://api.example.test/v1", transport=httpx.MockTransport(handler)
    )
    models = asyncio.run(backend.list_models(VALID_KEY))

    assert [(m.id, m.owned_by, m.provenance) for m in models] == [
        ("gpt-4o", "openai", "remote"),
        ("whisper-1", "openai-internal", "remote"),
    ]


def test_list_models_maps_auth_errors() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(401, json={"error": {}}))
    backend = ChatBackend(base_url="https://api.example.test/v1", transport=transport)

    with pytest.raises(CompletionFailure, match="Invalid API key"):
        asyncio.run(backend.list_models(VALID_KEY))


def test_list_models_rejects_malformed_payload() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"nope": 1}))
    backend = ChatBackend(base_url="https://api.example.test/v1", transport=transport)

    with pytest.raises(CompletionFailure):
        asyncio.run(backend.list_models(VALID_KEY))


def test_list_models_checks_key_prefix() -> None:
    with pytest.raises(CompletionFailure, match="should start with"):
        asyncio.run(ChatBackend().list_models("not-a-key"))
