"""Message list and request lifecycle for the open document's chat."""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable

from papertutor.llm import (
    ChatBackend,
    CompletionFailure,
    filter_chat_models,
    prompt_for_level,
    to_turns,
)
from papertutor.models import Message, ModelInfo
from papertutor.preferences import BUILTIN_MODELS, Preferences

log = logging.getLogger(__name__)


class Conversation:
    """Owns the in-memory messages and talks to the completion backend.

    Backend failures never escape: they are appended as an assistant message
    starting with "Error:". Requests are serialised, so each call's messages
    land contiguously and in issue order.
    """

    def __init__(self, backend: ChatBackend, preferences: Preferences):
        self._backend = backend
        self._preferences = preferences
        self._messages: list[Message] = []
        self._lock = asyncio.Lock()
        # Bumped whenever the list is swapped out; replies for an older list are dropped
        self._generation = 0
        self.is_loading = False
        self.remote_models: list[ModelInfo] = []

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    def clear(self) -> None:
        self._messages = []
        self._generation += 1

    def replace_messages(self, messages: Iterable[Message]) -> None:
        self._messages = list(messages)
        self._generation += 1

    async def _request(self, prior: list[Message], user_content: str) -> Message:
        prefs = self._preferences
        self.is_loading = True
        try:
            reply = await self._backend.complete(
                prefs.api_key,
                prefs.system_prompt.prompt,
                [*to_turns(prior), ("user", user_content)],
                prefs.selected_model,
            )
            return Message(role="assistant", content=reply)
        except CompletionFailure as e:
            log.warning("Completion failed: %s", e)
            return Message(role="assistant", content=f"Error: {e}")
        finally:
            self.is_loading = False

    async def _exchange(self, opening: Message, user_content: str) -> list[Message]:
        generation = self._generation
        async with self._lock:
            if generation != self._generation:
                log.info("Conversation changed before the request started; skipping it")
                return []
            prior = list(self._messages)
            self._messages.append(opening)
            reply = await self._request(prior, user_content)
            if generation != self._generation:
                log.info("Conversation changed while waiting; dropping reply")
                return [opening]
            self._messages.append(reply)
            return [opening, reply]

    async def submit_user_message(self, text: str) -> list[Message]:
        """Append the user's message and the assistant's reply (or error).

        Returns the messages this call created. If the conversation is
        cleared or replaced before the reply arrives, the reply is dropped.
        """
        return await self._exchange(Message(role="user", content=text), text)

    async def explain_page(self, page_text: str, page_number: int) -> list[Message]:
        """Acknowledge the page, then ask for an explanation at the current difficulty."""
        ack = Message(
            role="assistant",
            content=f"I'm now looking at page {page_number}. Let me explain it for you.",
        )
        return await self._exchange(ack, prompt_for_level(self._preferences.difficulty, page_text))

    async def test_connection(self, credential: str, model_id: str) -> bool:
        return await self._backend.test_connection(credential, model_id)

    async def refresh_models(self, credential: str | None = None) -> list[ModelInfo]:
        """Reload the remote model list. Any failure leaves it empty, never stale."""
        credential = self._preferences.api_key if credential is None else credential
        try:
            models = await self._backend.list_models(credential)
        except CompletionFailure as e:
            log.warning("Failed to refresh models: %s", e)
            models = []
        self.remote_models = filter_chat_models(models)
        return list(self.remote_models)

    def available_models(self) -> list[ModelInfo]:
        if not self._preferences.api_key:
            return list(BUILTIN_MODELS)
        return list(self.remote_models)
