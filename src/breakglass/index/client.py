"""IndexClient: async httpx client for the Elasticsearch REST API.

The client holds an ordered list of credentials (two in practice, so that
passwords can be rotated without downtime) and a "current" credential. Every
request goes to the current credential. A 401 reported against the current
credential moves "current" to the next one; a 401 reported against a
credential that is no longer current is ignored, so concurrent failures do
not flip back and forth.

Usage:
    client = IndexClient.from_config(config)
    await client.start()
    hits = await client.search({"query": {"match_all": {}}}, "breakglass")
    client.bulk_index(doc, "breakglass", "api+IBMid-123")
    await client.aclose()
"""

from __future__ import annotations

import json
import logging
import os
import threading
from typing import Any, Awaitable, Callable, TypeVar

import httpx
from pydantic import BaseModel

from breakglass.config import Config, IndexConfig, IndexCredential
from breakglass.errors import BreakGlassError, ErrorCode
from breakglass.index.bulk import BulkIndexer
from breakglass.index.models import BulkItem, BulkResult, IndexResponse, SearchResponse

logger = logging.getLogger("breakglass.index")

T = TypeVar("T")

# index.max_result_window default; from+size beyond this is rejected by the server
MAX_RESULT_WINDOW = 10_000


def credentials_from_secret(raw: str) -> tuple[bool, str, list[IndexCredential]]:
    """Parse the legacy ``{"Enabled","Url","User1","Password1","User2","Password2"}`` secret."""
    try:
        data = json.loads(raw)
    except ValueError as exc:
        raise BreakGlassError(ErrorCode.CONFIG_ERROR, "index secret is not valid JSON") from exc
    if not isinstance(data, dict):
        raise BreakGlassError(ErrorCode.CONFIG_ERROR, "index secret must be a JSON object")

    lowered = {str(k).lower(): v for k, v in data.items()}
    creds = []
    n = 1
    while f"user{n}" in lowered or f"password{n}" in lowered:
        user, password = lowered.get(f"user{n}") or "", lowered.get(f"password{n}") or ""
        if not user or not password:
            raise BreakGlassError(ErrorCode.CONFIG_ERROR, "missing index credentials")
        creds.append(IndexCredential(user=user, password=password))
        n += 1
    enabled = str(lowered.get("enabled", "")).lower() == "true"
    return enabled, lowered.get("url") or "", creds


class IndexClient:
    """Elasticsearch client with credential rotation and a background bulk indexer."""

    def __init__(
        self,
        url: str,
        credentials: list[IndexCredential],
        *,
        timeout: float = 30.0,
        page_size: int = 1000,
        flush_interval: float = 300.0,
        workers: int = 1,
        flush_docs: int = 100,
        max_buffer: int = 1000,
        result_window: int = MAX_RESULT_WINDOW,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not url:
            raise BreakGlassError(ErrorCode.CONFIG_ERROR, "index url is required")
        if not url.startswith(("http://", "https://")):
            url = "http://" + url
        if not credentials:
            raise BreakGlassError(ErrorCode.CONFIG_ERROR, "missing index credentials")
        self._url = url.rstrip("/")
        self._credentials = list(credentials)
        self._timeout = timeout
        self._page_size = page_size
        self._result_window = result_window
        self._transport = transport
        self._clients: dict[int, httpx.AsyncClient] = {}

        self._current = 0
        self._current_lock = threading.Lock()

        self._bulk = BulkIndexer(
            self._send_bulk,
            flush_interval=flush_interval,
            workers=workers,
            flush_docs=flush_docs,
            max_buffer=max_buffer,
            on_error=self._on_bulk_error,
        )

    @classmethod
    def from_config(cls, config: Config | IndexConfig, transport: httpx.AsyncBaseTransport | None = None) -> "IndexClient":
        """Build from config, falling back to the legacy JSON secret for credentials.

        Raises BreakGlassError(INDEX_DISABLED) when the index is switched off and
        BreakGlassError(CONFIG_ERROR) when url or credentials are missing.
        """
        page_size = 1000
        if isinstance(config, Config):
            page_size = config.grants.search_page_size
            config = config.index

        enabled, url, creds = config.enabled, config.url, list(config.credentials)
        if not creds:
            raw = os.environ.get(config.secret_env, "")
            if not raw:
                raise BreakGlassError(ErrorCode.CONFIG_ERROR, "missing index credentials")
            enabled, secret_url, creds = credentials_from_secret(raw)
            url = url or secret_url
        if not enabled:
            raise BreakGlassError(ErrorCode.INDEX_DISABLED, "elasticsearch is disabled")

        return cls(
            url,
            creds,
            timeout=config.timeout,
            page_size=page_size,
            flush_interval=config.bulk_flush_interval,
            workers=config.bulk_workers,
            flush_docs=config.bulk_flush_docs,
            max_buffer=config.bulk_max_buffer,
            result_window=config.max_result_window,
            transport=transport,
        )

    # ------------------------------------------------------------------ #
    #  Lifecycle                                                          #
    # ------------------------------------------------------------------ #

    async def start(self) -> None:
        await self._bulk.start()

    async def aclose(self) -> None:
        await self._bulk.stop(flush=True)
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()

    @property
    def bulk(self) -> BulkIndexer:
        return self._bulk

    # ------------------------------------------------------------------ #
    #  Credential rotation                                                #
    # ------------------------------------------------------------------ #

    @property
    def current(self) -> int:
        """Index of the credential new requests are sent with."""
        with self._current_lock:
            return self._current

    def report_unauthorized(self, credential: int) -> bool:
        """Rotate away from ``credential`` if it is still current. Returns True on a switch."""
        with self._current_lock:
            if self._current != credential:
                logger.info(
                    "401 from index credential %d, already switched to %d",
                    credential + 1, self._current + 1,
                )
                return False
            self._current = (credential + 1) % len(self._credentials)
            logger.warning(
                "401 from index credential %d, switching to credential %d",
                credential + 1, self._current + 1,
            )
            return self._current != credential

    def _mark_good(self, credential: int) -> None:
        with self._current_lock:
            self._current = credential

    def _client(self, credential: int) -> httpx.AsyncClient:
        client = self._clients.get(credential)
        if client is None:
            cred = self._credentials[credential]
            client = httpx.AsyncClient(
                base_url=self._url,
                auth=(cred.user, cred.password),
                timeout=self._timeout,
                transport=self._transport,
                headers={"Content-Type": "application/json"},
            )
            self._clients[credential] = client
        return client

    async def _call(self, op: Callable[[int], Awaitable[T]]) -> T:
        """Run ``op`` against the current credential, retrying once after a 401 rotation."""
        credential = self.current
        try:
            result = await op(credential)
        except BreakGlassError as exc:
            if not exc.is_unauthorized:
                raise
            self.report_unauthorized(credential)
            retry_with = self.current
            if retry_with == credential:
                raise
            try:
                result = await op(retry_with)
            except BreakGlassError as retry_exc:
                if retry_exc.is_unauthorized:
                    self.report_unauthorized(retry_with)
                raise
            credential = retry_with
        self._mark_good(credential)
        return result

    # ------------------------------------------------------------------ #
    #  Core API methods                                                   #
    # ------------------------------------------------------------------ #

    async def search(self, query: dict[str, Any] | str, index: str) -> SearchResponse:
        """Return all hits for the query, paging with from/size.

        Raises BreakGlassError(INDEX_ERROR) when the query matches more
        documents than the result window lets from/size reach, rather than
        returning a truncated list.
        """
        if isinstance(query, str):
            try:
                query = json.loads(query)
            except ValueError as exc:
                raise BreakGlassError(ErrorCode.VALIDATION_ERROR, "search query is not valid JSON") from exc
        base = dict(query)
        size = int(base.pop("size", self._page_size))
        offset = int(base.pop("from", 0))

        collected = SearchResponse()
        page_size = min(size, self._result_window - offset)
        while page_size > 0:
            body = {**base, "from": offset, "size": page_size}
            page = await self._call(lambda cred: self._search_page(cred, body, index))
            collected.hits.extend(page.hits)
            collected.total = page.total
            offset += len(page.hits)
            if len(page.hits) < page_size:
                return collected
            page_size = min(size, self._result_window - offset)

        if collected.total > offset:
            logger.error(
                "search on %r matched %d documents but only %d fit in the result window",
                index, collected.total, self._result_window,
            )
            raise BreakGlassError(
                ErrorCode.INDEX_ERROR,
                f"search matched {collected.total} documents, more than the result window of {self._result_window}",
                {"index": index, "total": collected.total, "collected": len(collected.hits)},
            )
        return collected

    async def index(self, doc: Any, index: str) -> IndexResponse:
        """Create a document with a server-assigned ID. Expects 201."""
        body = _to_body(doc)

        async def _do(cred: int) -> IndexResponse:
            resp = await self._request(cred, "POST", f"/{index}/_doc", json=body)
            _expect(resp, 201, index)
            return IndexResponse.model_validate(resp.json())

        return await self._call(_do)

    def bulk_index(self, doc: Any, index: str, doc_id: str) -> bool:
        """Queue a document for the next bulk flush (create-or-replace by ID)."""
        return self._bulk.add(BulkItem(index=index, doc_id=doc_id, body=_to_body(doc)))

    # ------------------------------------------------------------------ #
    #  Internal helpers                                                   #
    # ------------------------------------------------------------------ #

    async def _request(self, credential: int, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client(credential).request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise BreakGlassError(
                ErrorCode.INDEX_ERROR, f"request to index failed: {exc}", {"credential": credential},
                status_code=-1,
            ) from exc

    async def _search_page(self, credential: int, body: dict[str, Any], index: str) -> SearchResponse:
        resp = await self._request(
            credential, "POST", f"/{index}/_search", json=body, params={"track_total_hits": "true"},
        )
        _expect(resp, 200, index)
        try:
            return SearchResponse.from_es(resp.json())
        except ValueError as exc:
            raise BreakGlassError(ErrorCode.INDEX_ERROR, "could not decode search response") from exc

    async def _send_bulk(self, items: list[BulkItem]) -> BulkResult:
        credential = self.current
        lines = []
        for item in items:
            lines.append(json.dumps({"index": {"_index": item.index, "_id": item.doc_id}}))
            lines.append(json.dumps(item.body, separators=(",", ":")))
        payload = ("\n".join(lines) + "\n").encode("utf-8")

        resp = await self._request(
            credential, "POST", "/_bulk", content=payload,
            headers={"Content-Type": "application/x-ndjson"},
        )
        if resp.status_code == 401:
            raise BreakGlassError(
                ErrorCode.INDEX_UNAUTHORIZED, "401 Unauthorized from bulk API",
                {"credential": credential}, status_code=401,
            )
        _expect(resp, 200, "_bulk")

        try:
            return _parse_bulk_response(resp.json(), items, credential)
        except (ValueError, TypeError, AttributeError) as exc:
            raise BreakGlassError(
                ErrorCode.INDEX_ERROR, f"could not decode bulk response: {exc}", {"credential": credential},
            ) from exc

    def _on_bulk_error(self, exc: BreakGlassError, items: list[BulkItem]) -> None:
        if not exc.is_unauthorized:
            logger.warning("bulk indexer received an error writing to the index: %s", exc.message)
            return
        self.report_unauthorized(exc.details.get("credential", self.current))
        requeued = self._bulk.requeue(items)
        logger.info("requeued %d of %d documents after 401", requeued, len(items))


def _parse_bulk_response(payload: dict[str, Any], items: list[BulkItem], credential: int) -> BulkResult:
    result = BulkResult(credential=credential)
    by_id = {item.doc_id: item for item in items}
    for entry in payload.get("items", []):
        action = entry.get("index") or {}
        item = by_id.get(action.get("_id", ""))
        status = int(action.get("status", 0))
        if 200 <= status < 300:
            result.succeeded += 1
        elif item is not None:
            error = action.get("error") or {}
            reason = error.get("reason") if isinstance(error, dict) else str(error)
            result.failed.append((item, f"status {status}: {reason}"))
    return result


def _to_body(doc: Any) -> dict[str, Any]:
    if isinstance(doc, BaseModel):
        return doc.model_dump(by_alias=True)
    if isinstance(doc, dict):
        return doc
    raise BreakGlassError(ErrorCode.VALIDATION_ERROR, f"cannot index object of type {type(doc).__name__}")


def _expect(resp: httpx.Response, status: int, index: str) -> None:
    if resp.status_code == status:
        return
    logger.warning("index call on %r returned status %d", index, resp.status_code)
    code = ErrorCode.INDEX_UNAUTHORIZED if resp.status_code == 401 else ErrorCode.INDEX_ERROR
    raise BreakGlassError(
        code, f"unexpected status code:{resp.status_code}", {"index": index}, status_code=resp.status_code,
    )
