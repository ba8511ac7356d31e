"""Elasticsearch access for the grant store."""

from breakglass.index.base import SearchIndex
from breakglass.index.bulk import BulkIndexer
from breakglass.index.client import IndexClient
from breakglass.index.models import BulkItem, IndexResponse, SearchHit, SearchResponse

__all__ = [
    "BulkIndexer",
    "BulkItem",
    "IndexClient",
    "IndexResponse",
    "SearchHit",
    "SearchIndex",
    "SearchResponse",
]
