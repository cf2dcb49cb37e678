from __future__ import annotations

import logging
import os
from functools import lru_cache

from dotenv import load_dotenv
load_dotenv()

import logfire
logfire.configure(
    service_name="papertutor-server",
    environment=os.environ.get("PAPERTUTOR_ENVIRONMENT", "development"),
)
logging.basicConfig(level=logging.INFO, handlers=[logfire.LogfireLoggingHandler()])
logfire.instrument_pydantic_ai()
logfire.instrument_httpx()

from fastapi import Depends, FastAPI, File, HTTPException, Query, UploadFile
from fastapi.responses import Response

from papertutor.blobs import BlobStore
from papertutor.history import HistoryReplayFailed
from papertutor.ingest import UnsupportedFormat
from papertutor.llm import is_valid_api_key
from papertutor.models import (
    ChatRequest,
    ChatState,
    ConnectionTestRequest,
    ConnectionTestResponse,
    CustomPromptRequest,
    DocumentView,
    HistoryEntry,
    IngestUrlRequest,
    Message,
    ModelInfo,
    PageRequest,
    SettingsUpdate,
    SettingsView,
    SystemPromptTemplate,
    UploadResponse,
)
from papertutor.page_cache import RenderFailure
from papertutor.reader import NoDocumentOpen, PageNotFound, Reader
from papertutor.store import LocalStorage

app = FastAPI(title="papertutor", description="Page-by-page PDF reading companion")
logfire.instrument_fastapi(app)


@lru_cache(maxsize=1)
def get_reader() -> Reader:
    return Reader(LocalStorage(), BlobStore())


def _document_view(reader: Reader) -> DocumentView:
    doc = reader.document
    if doc is None:
        raise HTTPException(status_code=404, detail="No document is open")
    return DocumentView(
        id=doc.id,
        name=doc.name,
        total_pages=doc.total_pages,
        current_page=reader.current_page or 1,
        origin_url=doc.origin_url,
        last_viewed=doc.last_viewed,
    )


def _settings_view(reader: Reader) -> SettingsView:
    prefs = reader.preferences
    key = prefs.api_key
    return SettingsView(
        has_api_key=bool(key),
        api_key_hint=f"…{key[-4:]}" if len(key) > 8 else "",
        selected_model=prefs.selected_model,
        system_prompt=prefs.system_prompt,
        difficulty=prefs.difficulty,
    )


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------
@app.get("/health")
async def health():
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------
@app.post("/documents", response_model=UploadResponse)
async def upload_document(file: UploadFile = File(...), reader: Reader = Depends(get_reader)):
    """Upload a PDF and make it the current document."""
    raw = await file.read()
    try:
        doc = await reader.open_document(raw, file.filename or "document.pdf")
    except UnsupportedFormat as e:
        raise HTTPException(status_code=415, detail=str(e))
    return UploadResponse(
        document_id=doc.id, name=doc.name, total_pages=doc.total_pages, current_page=1
    )


@app.post("/documents/url", response_model=UploadResponse)
async def ingest_from_url(request: IngestUrlRequest, reader: Reader = Depends(get_reader)):
    """Download a PDF from a URL and make it the current document."""
    try:
        doc = await reader.open_url(request.url)
    except UnsupportedFormat as e:
        raise HTTPException(status_code=415, detail=str(e))
    return UploadResponse(
        document_id=doc.id, name=doc.name, total_pages=doc.total_pages, current_page=1
    )


@app.get("/document", response_model=DocumentView)
async def get_document(reader: Reader = Depends(get_reader)):
    return _document_view(reader)


@app.delete("/document")
async def close_document(reader: Reader = Depends(get_reader)):
    """Save the open document to history and go back to the upload screen."""
    await reader.close_document()
    return {"status": "closed"}


@app.put("/document/page", response_model=DocumentView)
async def set_page(request: PageRequest, reader: Reader = Depends(get_reader)):
    try:
        reader.go_to_page(request.page)
    except NoDocumentOpen as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _document_view(reader)


@app.get("/document/pages/{page_number}/text")
async def get_page_text(page_number: int, reader: Reader = Depends(get_reader)):
    try:
        text = reader.page_text(page_number)
    except (NoDocumentOpen, PageNotFound) as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"page_number": page_number, "text": text}


@app.get("/document/pages/{page_number}/image")
async def get_page_image(
    page_number: int,
    thumbnail: bool = Query(False),
    reader: Reader = Depends(get_reader),
):
    """Rendered page as PNG. Thumbnails are rendered and cached separately."""
    try:
        image = await reader.page_image(page_number, thumbnail=thumbnail)
    except (NoDocumentOpen, PageNotFound) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except RenderFailure as e:
        raise HTTPException(status_code=500, detail=str(e))
    if image is None:
        raise HTTPException(status_code=409, detail="The document changed while rendering")
    return Response(content=image.png, media_type="image/png")


@app.get("/document/thumbnails")
async def list_thumbnails(reader: Reader = Depends(get_reader)):
    """Which thumbnails rendered; fetch each via the image endpoint."""
    try:
        thumbs = await reader.thumbnails()
    except NoDocumentOpen as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {
        "pages": [
            {"page_number": n, "rendered": img is not None} for n, img in sorted(thumbs.items())
        ]
    }


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------
@app.get("/chat", response_model=ChatState)
async def get_chat(reader: Reader = Depends(get_reader)):
    conversation = reader.conversation
    return ChatState(messages=conversation.messages, is_loading=conversation.is_loading)


@app.post("/chat", response_model=list[Message])
async def post_chat(request: ChatRequest, reader: Reader = Depends(get_reader)):
    """Send a user message. Returns the messages appended by this call."""
    return await reader.ask(request.text)


@app.post("/chat/explain", response_model=list[Message])
async def explain_page(reader: Reader = Depends(get_reader)):
    """Explain the current page at the selected difficulty."""
    try:
        return await reader.explain_current_page()
    except NoDocumentOpen as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.delete("/chat")
async def clear_chat(reader: Reader = Depends(get_reader)):
    reader.clear_messages()
    return {"status": "cleared"}


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------
@app.get("/history", response_model=list[HistoryEntry])
async def list_history(reader: Reader = Depends(get_reader)):
    return reader.history_entries()


@app.post("/history/{history_id}/restore", response_model=DocumentView)
async def restore_history(history_id: str, reader: Reader = Depends(get_reader)):
    if reader.history.get(history_id) is None:
        raise HTTPException(status_code=404, detail="Not in history")
    try:
        await reader.restore(history_id)
    except HistoryReplayFailed as e:
        raise HTTPException(status_code=502, detail=str(e))
    return _document_view(reader)


@app.delete("/history")
async def clear_history(reader: Reader = Depends(get_reader)):
    removed = await reader.clear_history()
    return {"removed": removed}


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------
@app.get("/settings", response_model=SettingsView)
async def get_settings(reader: Reader = Depends(get_reader)):
    return _settings_view(reader)


@app.put("/settings", response_model=SettingsView)
async def update_settings(update: SettingsUpdate, reader: Reader = Depends(get_reader)):
    prefs = reader.preferences
    if update.api_key is not None:
        prefs.set_api_key(update.api_key)
    if update.system_prompt_id is not None:
        try:
            prefs.select_prompt(update.system_prompt_id)
        except KeyError:
            raise HTTPException(status_code=404, detail="Unknown system prompt")
    if update.selected_model:
        prefs.select_model(update.selected_model)
    if update.difficulty is not None:
        prefs.set_difficulty(update.difficulty)
    return _settings_view(reader)


@app.get("/settings/prompts", response_model=list[SystemPromptTemplate])
async def list_prompts(reader: Reader = Depends(get_reader)):
    return reader.preferences.available_prompts()


@app.post("/settings/prompts", response_model=SystemPromptTemplate)
async def add_prompt(request: CustomPromptRequest, reader: Reader = Depends(get_reader)):
    if not request.name.strip() or not request.prompt.strip():
        raise HTTPException(status_code=422, detail="Name and prompt are required")
    return reader.preferences.add_custom_prompt(request.name, request.prompt)


@app.get("/settings/models", response_model=list[ModelInfo])
async def list_models(reader: Reader = Depends(get_reader)):
    return reader.conversation.available_models()


@app.post("/settings/models/refresh", response_model=list[ModelInfo])
async def refresh_models(reader: Reader = Depends(get_reader)):
    return await reader.conversation.refresh_models()


@app.post("/settings/test-connection", response_model=ConnectionTestResponse)
async def test_connection(request: ConnectionTestRequest, reader: Reader = Depends(get_reader)):
    """Check a key/model pair without changing the saved settings."""
    prefs = reader.preferences
    key = request.api_key if request.api_key is not None else prefs.api_key
    if not is_valid_api_key(key):
        return ConnectionTestResponse(ok=False)
    ok = await reader.conversation.test_connection(key, request.model or prefs.selected_model)
    return ConnectionTestResponse(ok=ok)


def main():
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
