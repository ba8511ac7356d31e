"""Pydantic models for Elasticsearch responses consumed by the index client."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class SearchHit(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default="", alias="_id")
    index: str = Field(default="", alias="_index")
    source: dict[str, Any] = Field(default_factory=dict, alias="_source")


class SearchResponse(BaseModel):
    hits: list[SearchHit] = Field(default_factory=list)
    total: int = 0

    @classmethod
    def from_es(cls, payload: dict[str, Any]) -> "SearchResponse":
        """Flatten the ``{"hits": {"total": ..., "hits": [...]}}`` envelope."""
        outer = payload.get("hits") or {}
        total = outer.get("total", 0)
        if isinstance(total, dict):
            total = total.get("value", 0)
        hits = [SearchHit.model_validate(h) for h in outer.get("hits") or []]
        return cls(hits=hits, total=int(total or 0))


class IndexResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default="", alias="_id")
    index: str = Field(default="", alias="_index")
    version: int = Field(default=0, alias="_version")
    seq_no: int = Field(default=0, alias="_seq_no")
    primary_term: int = Field(default=0, alias="_primary_term")
    shards: dict[str, Any] = Field(default_factory=dict, alias="_shards")
    result: str = ""


@dataclass
class BulkItem:
    """One pending ``index`` action for the bulk API."""
    index: str
    doc_id: str
    body: dict[str, Any]
    attempts: int = 0


@dataclass
class BulkResult:
    """Outcome of one ``_bulk`` request."""
    credential: int
    succeeded: int = 0
    failed: list[tuple[BulkItem, str]] = field(default_factory=list)
