"""Chat-completion and model-listing backend.

Completions go through a pydantic-ai Agent over an OpenAI chat model; the
model list comes straight from the provider's /models endpoint.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Sequence

import httpx
from pydantic_ai import Agent
from pydantic_ai.exceptions import ModelHTTPError, UnexpectedModelBehavior
from pydantic_ai.messages import (
    ModelMessage,
    ModelRequest,
    ModelResponse,
    SystemPromptPart,
    TextPart,
    UserPromptPart,
)
from pydantic_ai.models import Model
from pydantic_ai.models.openai import OpenAIChatModel
from pydantic_ai.providers.openai import OpenAIProvider
from pydantic_ai.settings import ModelSettings

from papertutor.config import (
    API_KEY_MIN_LENGTH,
    API_KEY_PREFIX,
    COMPLETION_TEMPERATURE,
    OPENAI_BASE_URL,
    REQUEST_TIMEOUT,
)
from papertutor.models import ExplanationLevel, Message, ModelInfo

log = logging.getLogger(__name__)

ModelFactory = Callable[[str, str], Model]
Turn = tuple[str, str]  # (role, content)

_LEVEL_TEMPLATES: dict[str, str] = {
    "eli5": "Explain this text as if you're explaining to a 5-year-old:\n\n{text}",
    "highlevel": "Provide a high-level overview of the main concepts in this text:\n\n{text}",
    "detailed": (
        "Give a detailed, technical explanation of this text, including key "
        "concepts and their relationships:\n\n{text}"
    ),
}


class CompletionFailure(Exception):
    """Raised when the chat backend cannot serve a request."""


def prompt_for_level(level: ExplanationLevel, text: str) -> str:
    template = _LEVEL_TEMPLATES.get(level, "Explain this text:\n\n{text}")
    return template.format(text=text)


def is_valid_api_key(key: str | None) -> bool:
    return bool(key) and key.startswith(API_KEY_PREFIX) and len(key) >= API_KEY_MIN_LENGTH


def filter_chat_models(models: Iterable[ModelInfo]) -> list[ModelInfo]:
    """Keep the GPT chat family, drop instruct variants, sort by id."""
    chat = [m for m in models if m.id.startswith("gpt-") and "instruct" not in m.id]
    return sorted(chat, key=lambda m: m.id)


def to_turns(messages: Iterable[Message]) -> list[Turn]:
    return [(m.role, m.content) for m in messages]


def _build_history(system_prompt: str, turns: Sequence[Turn]) -> list[ModelMessage]:
    history: list[ModelMessage] = []
    if system_prompt:
        history.append(ModelRequest(parts=[SystemPromptPart(content=system_prompt)]))
    for role, content in turns:
        if role == "assistant":
            history.append(ModelResponse(parts=[TextPart(content=content)]))
        else:
            history.append(ModelRequest(parts=[UserPromptPart(content=content)]))
    return history


def _describe(exc: BaseException) -> str:
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return "The request timed out. Please try again."
    status = None
    if isinstance(exc, ModelHTTPError):
        status = exc.status_code
    elif isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
    if status == 401:
        return "Invalid API key. Please check your OpenAI API key."
    if status == 404:
        return "Model not found or not accessible."
    if status == 429:
        return "Insufficient quota or rate limit reached. Please check your OpenAI billing."
    if isinstance(exc, httpx.TransportError):
        return "Network error. Please check your internet connection."
    return str(exc) or exc.__class__.__name__


def openai_model_factory(credential: str, model_id: str) -> Model:
    provider = OpenAIProvider(api_key=credential, base_url=OPENAI_BASE_URL)
    return OpenAIChatModel(model_id, provider=provider)


class ChatBackend:
    def __init__(
        self,
        model_factory: ModelFactory = openai_model_factory,
        *,
        base_url: str = OPENAI_BASE_URL,
        timeout: float = REQUEST_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._model_factory = model_factory
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def _run(
        self,
        credential: str,
        system_prompt: str,
        turns: Sequence[Turn],
        model_id: str,
        settings: ModelSettings,
    ) -> str:
        if not credential:
            raise CompletionFailure("OpenAI API key is required. Please add it in Settings.")
        if not turns or turns[-1][0] != "user":
            raise CompletionFailure("A completion request must end with a user turn.")
        if not model_id:
            raise CompletionFailure("No model selected.")

        *prior, (_, final_user) = turns
        try:
            agent = Agent(self._model_factory(credential, model_id), output_type=str)
            result = await asyncio.wait_for(
                agent.run(
                    final_user,
                    message_history=_build_history(system_prompt, prior),
                    model_settings=settings,
                ),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, ModelHTTPError, UnexpectedModelBehavior, httpx.HTTPError) as e:
            raise CompletionFailure(_describe(e)) from e
        except Exception as e:
            # Provider SDK errors (auth, quota, connection) arrive as their own types
            log.exception("Completion request to %s failed", model_id)
            raise CompletionFailure(_describe(e)) from e
        return result.output

    async def complete(
        self,
        credential: str,
        system_prompt: str,
        turns: Sequence[Turn],
        model_id: str,
    ) -> str:
        """Send one leading system turn plus `turns` and return the reply text.

        Raises:
            CompletionFailure: On any backend failure, timeout, or empty reply.
        """
        settings = ModelSettings(temperature=COMPLETION_TEMPERATURE, timeout=self.timeout)
        output = await self._run(credential, system_prompt, turns, model_id, settings)
        if not output or not output.strip():
            raise CompletionFailure("The model returned an empty response.")
        return output

    async def test_connection(self, credential: str, model_id: str) -> bool:
        """Issue a one-token request. Never raises."""
        if not model_id:
            log.error("Invalid model id: %r", model_id)
            return False
        if not is_valid_api_key(credential):
            log.error(
                "Invalid API key format. API key should start with %r and be at least %d characters long.",
                API_KEY_PREFIX,
                API_KEY_MIN_LENGTH,
            )
            return False
        settings = ModelSettings(max_tokens=1, temperature=0.1, timeout=self.timeout)
        try:
            await self._run(credential, "", [("user", "Test")], model_id, settings)
        except CompletionFailure as e:
            log.error("Connection test failed: %s", e)
            return False
        return True

    async def list_models(self, credential: str) -> list[ModelInfo]:
        """Fetch every model id visible to `credential`.

        Raises:
            CompletionFailure: If the key is malformed or the listing fails.
        """
        if not credential or not credential.startswith(API_KEY_PREFIX):
            raise CompletionFailure(
                f'Invalid API key format. API key should start with "{API_KEY_PREFIX}".'
            )
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.get(
                    "/models", headers={"Authorization": f"Bearer {credential}"}
                )
                response.raise_for_status()
                payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise CompletionFailure(_describe(e)) from e

        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list):
            raise CompletionFailure("Unexpected response from the model listing endpoint.")
        return [
            ModelInfo(id=item["id"], label=item["id"], owned_by=item.get("owned_by"))
            for item in data
            if isinstance(item, dict) and isinstance(item.get("id"), str)
        ]
