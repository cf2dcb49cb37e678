"""User selections that survive restarts: API key, prompt, model, custom prompts."""
from __future__ import annotations

import logging
import uuid
from typing import get_args

from papertutor.config import DEFAULT_MODEL
from papertutor.models import ExplanationLevel, ModelInfo, SystemPromptTemplate
from papertutor.store import LocalStorage

log = logging.getLogger(__name__)

API_KEY_RECORD = "openai_api_key"
SYSTEM_PROMPT_RECORD = "system_prompt"
SELECTED_MODEL_RECORD = "selected_model"
CUSTOM_PROMPTS_RECORD = "custom_prompts"

CUSTOM_PROMPT_PREFIX = "custom-"

DEFAULT_SYSTEM_PROMPTS: tuple[SystemPromptTemplate, ...] = (
    SystemPromptTemplate(
        id="default",
        name="Default Tutor",
        prompt=(
            "You are an expert tutor helping a student understand academic content. "
            "Provide clear, accurate explanations at the requested level of detail."
        ),
    ),
    SystemPromptTemplate(
        id="socratic",
        name="Socratic Teacher",
        prompt=(
            "You are a Socratic teacher who guides students through understanding by "
            "asking thought-provoking questions. Help them discover insights through "
            "careful questioning and dialogue."
        ),
    ),
    SystemPromptTemplate(
        id="expert",
        name="Domain Expert",
        prompt=(
            "You are a subject matter expert with deep knowledge in multiple fields. "
            "Provide detailed, technical explanations while making complex concepts accessible."
        ),
    ),
    SystemPromptTemplate(
        id="friendly",
        name="Friendly Guide",
        prompt=(
            "You are a friendly, approachable tutor who makes learning fun and engaging. "
            "Use analogies, examples, and conversational language to explain concepts."
        ),
    ),
)

# Offered only while no API key is configured
BUILTIN_MODELS: tuple[ModelInfo, ...] = (
    ModelInfo(
        id="gpt-4-0125-preview",
        label="GPT-4 Turbo Preview",
        provenance="builtin",
        description="Most capable GPT-4 model, better at complex tasks, fresher knowledge",
    ),
    ModelInfo(
        id="gpt-4-0613",
        label="GPT-4 0613",
        provenance="builtin",
        description="Stable GPT-4 release with broad capabilities",
    ),
    ModelInfo(
        id="gpt-4-32k",
        label="GPT-4 32k",
        provenance="builtin",
        description="Same capabilities as GPT-4 with 4x longer context window",
    ),
    ModelInfo(
        id="gpt-3.5-turbo",
        label="GPT-3.5 Turbo",
        provenance="builtin",
        description="Fast, inexpensive model for everyday explanations",
    ),
)


class Preferences:
    def __init__(self, storage: LocalStorage):
        self._storage = storage
        self.difficulty: ExplanationLevel = "highlevel"

    # -- API key ------------------------------------------------------------

    @property
    def api_key(self) -> str:
        return self._storage.get(API_KEY_RECORD, "") or ""

    def set_api_key(self, key: str) -> None:
        self._storage.set(API_KEY_RECORD, key.strip())

    # -- prompts ------------------------------------------------------------

    def custom_prompts(self) -> list[SystemPromptTemplate]:
        raw = self._storage.get(CUSTOM_PROMPTS_RECORD, []) or []
        return [SystemPromptTemplate.model_validate(p) for p in raw]

    def available_prompts(self) -> list[SystemPromptTemplate]:
        return [*DEFAULT_SYSTEM_PROMPTS, *self.custom_prompts()]

    @property
    def system_prompt(self) -> SystemPromptTemplate:
        saved = self._storage.get(SYSTEM_PROMPT_RECORD)
        if saved is None:
            return DEFAULT_SYSTEM_PROMPTS[0]
        return SystemPromptTemplate.model_validate(saved)

    def select_prompt(self, prompt_id: str) -> SystemPromptTemplate:
        for prompt in self.available_prompts():
            if prompt.id == prompt_id:
                self._storage.set(SYSTEM_PROMPT_RECORD, prompt.model_dump(mode="json"))
                return prompt
        raise KeyError(prompt_id)

    def add_custom_prompt(self, name: str, prompt: str) -> SystemPromptTemplate:
        template = SystemPromptTemplate(
            id=f"{CUSTOM_PROMPT_PREFIX}{uuid.uuid4().hex[:8]}", name=name, prompt=prompt
        )
        customs = [*self.custom_prompts(), template]
        self._storage.set(
            CUSTOM_PROMPTS_RECORD,
            [p.model_dump(mode="json") for p in customs if p.id.startswith(CUSTOM_PROMPT_PREFIX)],
        )
        log.info("Added custom prompt %s (%s)", template.id, name)
        return template

    # -- model & difficulty -------------------------------------------------

    @property
    def selected_model(self) -> str:
        return self._storage.get(SELECTED_MODEL_RECORD) or DEFAULT_MODEL

    def select_model(self, model_id: str) -> None:
        if not model_id:
            raise ValueError("model id must not be empty")
        self._storage.set(SELECTED_MODEL_RECORD, model_id)

    def set_difficulty(self, level: ExplanationLevel) -> None:
        if level not in get_args(ExplanationLevel):
            raise ValueError(f"unknown explanation level: {level!r}")
        self.difficulty = level
