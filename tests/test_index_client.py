"""Tests for IndexClient: status handling, pagination, credential rotation, bulk."""

from __future__ import annotations

import base64
import json

import httpx
import pytest

from breakglass.config import Config, IndexConfig, IndexCredential
from breakglass.errors import BreakGlassError, ErrorCode
from breakglass.grants.models import PersistedDocument
from breakglass.index.client import IndexClient, credentials_from_secret

CREDS = [IndexCredential(user="alpha", password="pa"), IndexCredential(user="beta", password="pb")]


def _user(request: httpx.Request) -> str:
    scheme, _, encoded = request.headers["Authorization"].partition(" ")
    assert scheme == "Basic"
    return base64.b64decode(encoded).decode().split(":", 1)[0]


class Recorder:
    """MockTransport handler driven by a queue of (status, body) per request."""

    def __init__(self, responses=None, default=(200, {"hits": {"total": {"value": 0}, "hits": []}})):
        self.responses = list(responses or [])
        self.default = default
        self.requests: list[httpx.Request] = []

    @property
    def users(self) -> list[str]:
        return [_user(r) for r in self.requests]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status, body = self.responses.pop(0) if self.responses else self.default
        return httpx.Response(status, json=body)


def _client(handler, **kwargs) -> IndexClient:
    return IndexClient("http://es.test:9200", CREDS, transport=httpx.MockTransport(handler), **kwargs)


def _hits(start: int, count: int) -> dict:
    return {
        "hits": {
            "total": {"value": 5},
            "hits": [{"_id": f"doc{i}", "_index": "breakglass", "_source": {"user": f"u{i}"}} for i in range(start, start + count)],
        }
    }


# ---------------------------------------------------------------------------
# construction
# ---------------------------------------------------------------------------

def test_requires_url_and_credentials():
    with pytest.raises(BreakGlassError) as exc_info:
        IndexClient("", CREDS)
    assert exc_info.value.code == ErrorCode.CONFIG_ERROR
    with pytest.raises(BreakGlassError) as exc_info:
        IndexClient("http://es", [])
    assert exc_info.value.code == ErrorCode.CONFIG_ERROR


def test_credentials_from_secret():
    raw = json.dumps({"Enabled": "true", "Url": "https://es", "User1": "a", "Password1": "1", "User2": "b", "Password2": "2"})
    enabled, url, creds = credentials_from_secret(raw)
    assert enabled is True
    assert url == "https://es"
    assert [(c.user, c.password) for c in creds] == [("a", "1"), ("b", "2")]


def test_credentials_from_secret_incomplete():
    raw = json.dumps({"Enabled": "true", "Url": "https://es", "User1": "a", "Password1": ""})
    with pytest.raises(BreakGlassError) as exc_info:
        credentials_from_secret(raw)
    assert exc_info.value.code == ErrorCode.CONFIG_ERROR


def test_from_config_uses_secret_env(monkeypatch):
    raw = json.dumps({"Enabled": "true", "Url": "https://es", "User1": "a", "Password1": "1"})
    monkeypatch.setenv("SECRETCREDENTIALS_es_key", raw)
    client = IndexClient.from_config(Config())
    assert client.current == 0


def test_from_config_disabled(monkeypatch):
    raw = json.dumps({"Enabled": "false", "Url": "https://es", "User1": "a", "Password1": "1"})
    monkeypatch.setenv("SECRETCREDENTIALS_es_key", raw)
    with pytest.raises(BreakGlassError) as exc_info:
        IndexClient.from_config(Config())
    assert exc_info.value.code == ErrorCode.INDEX_DISABLED


def test_from_config_missing_credentials(monkeypatch):
    monkeypatch.delenv("SECRETCREDENTIALS_es_key", raising=False)
    with pytest.raises(BreakGlassError) as exc_info:
        IndexClient.from_config(IndexConfig(url="http://es"))
    assert exc_info.value.code == ErrorCode.CONFIG_ERROR


def test_from_config_explicit_credentials():
    client = IndexClient.from_config(IndexConfig(url="http://es", credentials=CREDS))
    assert client.current == 0


# ---------------------------------------------------------------------------
# search / index
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_search_parses_hits():
    rec = Recorder([(200, _hits(0, 2))])
    client = _client(rec, page_size=10)
    resp = await client.search({"query": {"match_all": {}}}, "breakglass")
    await client.aclose()

    assert [h.id for h in resp.hits] == ["doc0", "doc1"]
    assert resp.hits[0].source == {"user": "u0"}
    assert rec.requests[0].url.path == "/breakglass/_search"
    assert json.loads(rec.requests[0].content)["size"] == 10


@pytest.mark.asyncio
async def test_search_accepts_json_string():
    rec = Recorder([(200, _hits(0, 1))])
    client = _client(rec)
    resp = await client.search('{"query": {"match_all": {}}}', "breakglass")
    await client.aclose()
    assert len(resp.hits) == 1
    assert json.loads(rec.requests[0].content)["query"] == {"match_all": {}}


@pytest.mark.asyncio
async def test_search_rejects_invalid_json_string():
    client = _client(Recorder())
    with pytest.raises(BreakGlassError) as exc_info:
        await client.search("{not json", "breakglass")
    assert exc_info.value.code == ErrorCode.VALIDATION_ERROR


@pytest.mark.asyncio
async def test_search_pages_until_short_page():
    rec = Recorder([(200, _hits(0, 2)), (200, _hits(2, 2)), (200, _hits(4, 1))])
    client = _client(rec, page_size=2)
    resp = await client.search({"query": {"match_all": {}}}, "breakglass")
    await client.aclose()

    assert [h.id for h in resp.hits] == [f"doc{i}" for i in range(5)]
    assert resp.total == 5
    assert [json.loads(r.content)["from"] for r in rec.requests] == [0, 2, 4]


class Corpus:
    """MockTransport handler serving ``count`` documents honouring from/size."""

    def __init__(self, count: int) -> None:
        self.count = count
        self.pages: list[tuple[int, int]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        start, size = body["from"], body["size"]
        self.pages.append((start, size))
        ids = range(start, min(start + size, self.count))
        return httpx.Response(200, json={"hits": {
            "total": {"value": self.count},
            "hits": [{"_id": f"doc{i}", "_source": {}} for i in ids],
        }})


@pytest.mark.asyncio
async def test_search_beyond_result_window_raises():
    corpus = Corpus(10_500)
    client = _client(corpus, page_size=1000)
    with pytest.raises(BreakGlassError) as exc_info:
        await client.search({"query": {"match_all": {}}}, "breakglass")
    await client.aclose()
    assert exc_info.value.code == ErrorCode.INDEX_ERROR
    assert exc_info.value.details["total"] == 10_500
    assert exc_info.value.details["collected"] == 10_000
    assert len(corpus.pages) == 10


@pytest.mark.asyncio
async def test_search_exactly_fills_result_window():
    corpus = Corpus(10_000)
    client = _client(corpus, page_size=5000)
    resp = await client.search({"query": {"match_all": {}}}, "breakglass")
    await client.aclose()
    assert len(resp.hits) == 10_000
    assert corpus.pages == [(0, 5000), (5000, 5000)]


@pytest.mark.asyncio
async def test_search_last_page_shrinks_to_result_window():
    corpus = Corpus(9500)
    client = _client(corpus, page_size=3000)
    resp = await client.search({"query": {"match_all": {}}}, "breakglass")
    await client.aclose()
    assert len(resp.hits) == 9500
    assert corpus.pages == [(0, 3000), (3000, 3000), (6000, 3000), (9000, 1000)]


@pytest.mark.asyncio
async def test_search_result_window_is_configurable():
    corpus = Corpus(10_500)
    client = _client(corpus, page_size=5000, result_window=20_000)
    resp = await client.search({"query": {"match_all": {}}}, "breakglass")
    await client.aclose()
    assert len(resp.hits) == 10_500


@pytest.mark.asyncio
async def test_search_expects_200():
    client = _client(Recorder([(201, {})]))
    with pytest.raises(BreakGlassError) as exc_info:
        await client.search({"query": {"match_all": {}}}, "breakglass")
    assert exc_info.value.code == ErrorCode.INDEX_ERROR
    assert exc_info.value.status_code == 201


@pytest.mark.asyncio
async def test_index_expects_201():
    rec = Recorder([(201, {"_id": "abc", "_index": "breakglass", "result": "created"})])
    client = _client(rec)
    resp = await client.index(PersistedDocument(user="u"), "breakglass")
    assert resp.id == "abc"
    assert rec.requests[0].url.path == "/breakglass/_doc"
    assert json.loads(rec.requests[0].content) == {"user": "u", "isAPI": "false", "keys": []}

    rec.responses.append((200, {"_id": "abc"}))
    with pytest.raises(BreakGlassError) as exc_info:
        await client.index({"user": "u"}, "breakglass")
    assert exc_info.value.status_code == 200
    await client.aclose()


@pytest.mark.asyncio
async def test_transport_error_is_index_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(handler)
    with pytest.raises(BreakGlassError) as exc_info:
        await client.search({"query": {"match_all": {}}}, "breakglass")
    assert exc_info.value.code == ErrorCode.INDEX_ERROR
    assert client.current == 0


# ---------------------------------------------------------------------------
# credential rotation
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_401_rotates_and_next_call_uses_new_credential():
    rec = Recorder([(401, {}), (200, _hits(0, 0)), (200, _hits(0, 0))])
    client = _client(rec)

    await client.search({"query": {"match_all": {}}}, "breakglass")
    assert client.current == 1
    await client.search({"query": {"match_all": {}}}, "breakglass")
    await client.aclose()

    assert rec.users == ["alpha", "beta", "beta"]


@pytest.mark.asyncio
async def test_401_on_both_credentials_raises():
    rec = Recorder([(401, {}), (401, {})])
    client = _client(rec)
    with pytest.raises(BreakGlassError) as exc_info:
        await client.search({"query": {"match_all": {}}}, "breakglass")
    assert exc_info.value.is_unauthorized
    assert exc_info.value.code == ErrorCode.INDEX_UNAUTHORIZED
    assert rec.users == ["alpha", "beta"]
    assert client.current == 0


@pytest.mark.asyncio
async def test_non_auth_error_does_not_rotate():
    rec = Recorder([(500, {})])
    client = _client(rec)
    with pytest.raises(BreakGlassError):
        await client.index({"user": "u"}, "breakglass")
    assert client.current == 0
    assert len(rec.requests) == 1


def test_stale_report_does_not_rotate_back():
    client = _client(Recorder())
    assert client.report_unauthorized(0) is True
    assert client.current == 1
    # a late failure against the old credential is ignored
    assert client.report_unauthorized(0) is False
    assert client.current == 1
    # failure observed on the new current credential rotates
    assert client.report_unauthorized(1) is True
    assert client.current == 0


def test_single_credential_never_switches():
    client = IndexClient("http://es", CREDS[:1])
    assert client.report_unauthorized(0) is False
    assert client.current == 0


# ---------------------------------------------------------------------------
# bulk
# ---------------------------------------------------------------------------

def _bulk_ok(request: httpx.Request) -> dict:
    lines = request.content.decode().strip().split("\n")
    actions = [json.loads(line) for line in lines[::2]]
    return {"errors": False, "items": [{"index": {"_id": a["index"]["_id"], "status": 201}} for a in actions]}


@pytest.mark.asyncio
async def test_bulk_index_sends_ndjson_on_flush():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json=_bulk_ok(request))

    client = _client(handler)
    assert client.bulk_index(PersistedDocument(user="u", is_api="true"), "breakglass", "api+I") is True
    sent = await client.bulk.flush()
    await client.aclose()

    assert sent == 1
    assert requests[0].url.path == "/_bulk"
    assert requests[0].headers["Content-Type"] == "application/x-ndjson"
    action, body = requests[0].content.decode().strip().split("\n")
    assert json.loads(action) == {"index": {"_index": "breakglass", "_id": "api+I"}}
    assert json.loads(body) == {"user": "u", "isAPI": "true", "keys": []}
    assert client.bulk.stats["flushed"] == 1


@pytest.mark.asyncio
async def test_bulk_401_rotates_and_requeues():
    users = []

    def handler(request):
        users.append(_user(request))
        if len(users) == 1:
            return httpx.Response(401, json={})
        return httpx.Response(200, json=_bulk_ok(request))

    client = _client(handler)
    client.bulk_index({"user": "u"}, "breakglass", "I")
    await client.bulk.flush()

    assert client.current == 1
    assert client.bulk.pending == 1

    await client.bulk.flush()
    await client.aclose()
    assert users == ["alpha", "beta"]
    assert client.bulk.pending == 0
    assert client.bulk.stats["flushed"] == 1


@pytest.mark.asyncio
async def test_bulk_item_failures_are_counted():
    def handler(request):
        return httpx.Response(200, json={"errors": True, "items": [
            {"index": {"_id": "I", "status": 400, "error": {"reason": "mapper_parsing_exception"}}},
        ]})

    client = _client(handler)
    client.bulk_index({"user": "u"}, "breakglass", "I")
    await client.bulk.flush()
    await client.aclose()
    assert client.bulk.stats["failed"] == 1
    assert client.current == 0


def test_bulk_index_rejects_unknown_type():
    client = _client(Recorder())
    with pytest.raises(BreakGlassError) as exc_info:
        client.bulk_index(object(), "breakglass", "I")
    assert exc_info.value.code == ErrorCode.VALIDATION_ERROR


@pytest.mark.asyncio
@pytest.mark.parametrize("content", [b"<html>gateway</html>", b'{"items": [{"index": {"_id": "I", "status": "n/a"}}]}'])
async def test_bulk_undecodable_response_is_counted_as_failed(content):
    def handler(request):
        return httpx.Response(200, content=content)

    client = _client(handler)
    client.bulk_index({"user": "u"}, "breakglass", "I")
    await client.bulk.flush()
    await client.aclose()
    assert client.bulk.stats["failed"] == 1
    assert client.bulk.stats["flushed"] == 0
    assert client.current == 0
