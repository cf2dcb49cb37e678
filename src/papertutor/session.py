from __future__ import annotations

from datetime import datetime, timezone

from papertutor.models import Document


class Session:
    """The current document and page. No document means the upload screen.

    `current_page` is defined exactly when a document is current. Documents
    are never mutated; `set_document` stores a stamped copy.
    """

    def __init__(self) -> None:
        self.document: Document | None = None
        self.current_page: int | None = None

    def set_document(self, document: Document) -> Document:
        self.document = document.model_copy(update={"last_viewed": datetime.now(timezone.utc)})
        self.current_page = 1
        return self.document

    def set_current_page(self, page_number: int) -> int | None:
        """Clamp into [1, total_pages] and apply. Ignored without a document."""
        if self.document is None:
            return None
        self.current_page = max(1, min(page_number, self.document.total_pages))
        return self.current_page

    def clear_document(self) -> None:
        self.document = None
        self.current_page = None
