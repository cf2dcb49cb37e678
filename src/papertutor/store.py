"""Named-record persistence backed by a single JSON file.

Every durable piece of state (API key, selected prompt and model, custom
prompts, history) is one record in this file. Last write wins.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from papertutor.config import STORAGE_PATH


class LocalStorage:
    def __init__(self, db_path: Path = STORAGE_PATH):
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        if not self.db_path.exists():
            self.db_path.write_text("{}")

    def _load(self) -> dict[str, Any]:
        return json.loads(self.db_path.read_text())

    def _save(self, records: dict[str, Any]) -> None:
        self.db_path.write_text(json.dumps(records, indent=2))

    def get(self, name: str, default: Any = None) -> Any:
        return self._load().get(name, default)

    def set(self, name: str, value: Any) -> None:
        records = self._load()
        records[name] = value
        self._save(records)

    def delete(self, name: str) -> bool:
        records = self._load()
        if name not in records:
            return False
        del records[name]
        self._save(records)
        return True

    def keys(self) -> list[str]:
        return list(self._load())
