"""Protocol for the grant document store.

Concrete implementation: client.IndexClient (Elasticsearch over HTTP).
Tests substitute in-memory fakes.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from breakglass.index.models import IndexResponse, SearchResponse


@runtime_checkable
class SearchIndex(Protocol):
    """Paginated full-text index holding one document per identity."""

    async def search(self, query: dict[str, Any] | str, index: str) -> SearchResponse:
        """Return every hit for the query, following pagination."""
        ...

    async def index(self, doc: Any, index: str) -> IndexResponse:
        """Synchronously write a single document."""
        ...

    def bulk_index(self, doc: Any, index: str, doc_id: str) -> bool:
        """Queue a document for the next bulk flush. Never blocks.

        Returns False when the document was dropped because the buffer is full.
        """
        ...
