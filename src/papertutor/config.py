"""Runtime configuration, read once from the environment."""
from __future__ import annotations

import os
from pathlib import Path

DATA_DIR = Path(
    os.environ.get("PAPERTUTOR_DATA_DIR", Path(__file__).parent.parent.parent / "data")
)
STORAGE_PATH = DATA_DIR / "storage.json"
BLOB_DIR = DATA_DIR / "blobs"

# Seconds before a completion or model-listing call is abandoned
REQUEST_TIMEOUT = float(os.environ.get("PAPERTUTOR_REQUEST_TIMEOUT", "60"))

RENDER_CACHE_SIZE = int(os.environ.get("PAPERTUTOR_RENDER_CACHE_SIZE", "64"))
THUMBNAIL_CACHE_SIZE = int(os.environ.get("PAPERTUTOR_THUMBNAIL_CACHE_SIZE", "512"))
# Thumbnail renders allowed in flight at once
THUMBNAIL_CONCURRENCY = int(os.environ.get("PAPERTUTOR_THUMBNAIL_CONCURRENCY", "4"))
HISTORY_CAPACITY = int(os.environ.get("PAPERTUTOR_HISTORY_CAPACITY", "10"))

DEFAULT_MODEL = os.environ.get("PAPERTUTOR_DEFAULT_MODEL", "gpt-3.5-turbo")
OPENAI_BASE_URL = os.environ.get("OPENAI_BASE_URL", "https://api.openai.com/v1")

VIEWER_SCALE = 1.5
THUMBNAIL_SCALE = 0.2

API_KEY_PREFIX = "sk-"
API_KEY_MIN_LENGTH = 50

COMPLETION_TEMPERATURE = 0.7
