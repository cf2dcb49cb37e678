from __future__ import annotations

import itertools
import time
import uuid
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

ExplanationLevel = Literal["eli5", "highlevel", "detailed"]
Role = Literal["user", "assistant"]

_message_seq = itertools.count()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _message_id() -> str:
    # Nanosecond clock plus a process-local counter, so ids sort in creation order
    return f"{time.time_ns():016x}-{next(_message_seq):06x}"


class Page(BaseModel):
    """One page of an ingested document. Images are rendered on demand."""

    model_config = ConfigDict(frozen=True)

    page_number: int = Field(ge=1)
    text: str = ""


class Document(BaseModel):
    """An ingested PDF. Immutable once created; the current page lives in the session."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    name: str
    total_pages: int
    pages: tuple[Page, ...]
    source: str  # blob handle holding the raw PDF bytes
    origin_url: str | None = None
    last_viewed: datetime | None = None

    @model_validator(mode="after")
    def _check_pages(self) -> Document:
        if self.total_pages != len(self.pages):
            raise ValueError(
                f"total_pages={self.total_pages} but {len(self.pages)} pages given"
            )
        numbers = [p.page_number for p in self.pages]
        if numbers != list(range(1, self.total_pages + 1)):
            raise ValueError("page numbers must be 1..total_pages without gaps")
        return self

    def page(self, page_number: int) -> Page | None:
        if 1 <= page_number <= self.total_pages:
            return self.pages[page_number - 1]
        return None


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_message_id)
    role: Role
    content: str
    timestamp: datetime = Field(default_factory=_now)


class HistoryEntry(BaseModel):
    """A persisted snapshot of a previously opened document."""

    id: str
    name: str
    total_pages: int
    last_viewed: datetime
    current_page: int | None = None
    source: str
    origin_url: str | None = None
    messages: list[Message] = Field(default_factory=list)


class SystemPromptTemplate(BaseModel):
    id: str
    name: str
    prompt: str


class ModelInfo(BaseModel):
    """A selectable completion model."""

    id: str
    label: str
    provenance: Literal["builtin", "remote"] = "remote"
    owned_by: str | None = None
    description: str = ""


class RenderedPage(BaseModel):
    """A rasterised page, PNG encoded."""

    model_config = ConfigDict(frozen=True)

    document_id: str
    page_number: int
    scale: float
    width: int
    height: int
    png: bytes


class UploadResponse(BaseModel):
    """Response from the upload endpoints."""

    document_id: str
    name: str
    total_pages: int
    current_page: int


class DocumentView(BaseModel):
    id: str
    name: str
    total_pages: int
    current_page: int
    origin_url: str | None = None
    last_viewed: datetime | None = None


class IngestUrlRequest(BaseModel):
    """Request body for POST /documents/url."""

    url: str


class PageRequest(BaseModel):
    page: int


class ChatRequest(BaseModel):
    text: str


class ChatState(BaseModel):
    messages: list[Message]
    is_loading: bool


class SettingsView(BaseModel):
    has_api_key: bool
    api_key_hint: str = ""
    selected_model: str
    system_prompt: SystemPromptTemplate
    difficulty: ExplanationLevel


class SettingsUpdate(BaseModel):
    api_key: str | None = None
    selected_model: str | None = None
    system_prompt_id: str | None = None
    difficulty: ExplanationLevel | None = None


class CustomPromptRequest(BaseModel):
    name: str
    prompt: str


class ConnectionTestRequest(BaseModel):
    api_key: str | None = None
    model: str | None = None


class ConnectionTestResponse(BaseModel):
    ok: bool
