"""Shared pytest fixtures for the breakglass test suite."""

from __future__ import annotations

from typing import Any

import pytest

from breakglass.crypto import KeyRing
from breakglass.errors import BreakGlassError, ErrorCode
from breakglass.grants import GrantCache, WriteGate
from breakglass.index.models import IndexResponse, SearchHit, SearchResponse
from breakglass.telemetry import clear_recent_spans

MASTER_KEY = bytes(range(32))
KEY_ID = 1_600_000_000
NOW = 1_700_000_000


class FakeClock:
    """Controllable replacement for time.time."""

    def __init__(self, now: float = NOW) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeIndex:
    """In-memory SearchIndex that records every bulk submission."""

    def __init__(self, hits: list[SearchHit] | None = None) -> None:
        self.hits = list(hits or [])
        self.bulk: list[tuple[Any, str, str]] = []
        self.indexed: list[tuple[Any, str]] = []
        self.searches: list[tuple[Any, str]] = []
        self.accept_bulk = True
        self.search_error: BreakGlassError | None = None
        self.total: int | None = None

    async def search(self, query, index):
        self.searches.append((query, index))
        if self.search_error is not None:
            raise self.search_error
        total = len(self.hits) if self.total is None else self.total
        return SearchResponse(hits=list(self.hits), total=total)

    async def index(self, doc, index):
        self.indexed.append((doc, index))
        return IndexResponse(id=f"doc-{len(self.indexed)}", index=index, result="created")

    def bulk_index(self, doc, index, doc_id):
        if not self.accept_bulk:
            return False
        self.bulk.append((doc, index, doc_id))
        return True

    def hits_from_bulk(self) -> list[SearchHit]:
        """Latest bulk submission per document id, as search hits."""
        latest = {doc_id: doc for doc, _index, doc_id in self.bulk}
        return [SearchHit(id=doc_id, source=doc.model_dump(by_alias=True)) for doc_id, doc in latest.items()]


@pytest.fixture(autouse=True)
def _clear_spans():
    clear_recent_spans()
    yield
    clear_recent_spans()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def keyring():
    return KeyRing({KEY_ID: MASTER_KEY})


@pytest.fixture
def fake_index():
    return FakeIndex()


@pytest.fixture
def open_gate():
    return WriteGate(enabled=True)


@pytest.fixture
def grant_cache(keyring, open_gate, fake_index, clock):
    """GrantCache with write-through enabled, backed by FakeIndex."""
    return GrantCache(keyring, open_gate, lambda: fake_index, clock=clock)


@pytest.fixture
def unavailable_index():
    def _provider():
        raise BreakGlassError(ErrorCode.INDEX_DISABLED, "elasticsearch is disabled")
    return _provider


@pytest.fixture
def master_key():
    return MASTER_KEY


@pytest.fixture
def key_id():
    return KEY_ID


@pytest.fixture
def make_index():
    """FakeIndex factory, for tests that need more than one index."""
    return FakeIndex
