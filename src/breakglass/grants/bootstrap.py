"""BootstrapLoader: rehydrate the grant cache from the index at startup.

The write gate is closed for the whole run and opened only after a full,
successful scan, so nothing is written back to the index while the cache
is still being filled from it. Failures are soft: the cache keeps serving
from memory and write-through stays off.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from pydantic import ValidationError

from breakglass.crypto import KeyRing
from breakglass.errors import BreakGlassError
from breakglass.grants.cache import GrantCache, IndexProvider
from breakglass.grants.gate import WriteGate
from breakglass.grants.models import PersistedDocument, identity_from_api_id
from breakglass.index.models import SearchHit
from breakglass.logging_setup import correlation_scope
from breakglass.telemetry import span

logger = logging.getLogger("breakglass.bootstrap")

QUERY_ALL = {"query": {"match_all": {}}}


@dataclass
class BootstrapResult:
    hits: int = 0
    api_grants: int = 0
    identity_grants: int = 0
    skipped_documents: int = 0
    skipped_keys: int = 0
    errors: list[str] = field(default_factory=list)
    completed: bool = False


class BootstrapLoader:
    """Loads every persisted document back into a GrantCache."""

    def __init__(
        self,
        cache: GrantCache,
        index_provider: IndexProvider,
        keyring: KeyRing,
        gate: WriteGate,
        *,
        index_name: str = "breakglass",
        delay: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._cache = cache
        self._index_provider = index_provider
        self._keyring = keyring
        self._gate = gate
        self._index_name = index_name
        self._delay = delay
        self._sleep = sleep

    async def run(self) -> BootstrapResult:
        with correlation_scope("bootstrap"):
            return await self._run()

    async def _run(self) -> BootstrapResult:
        result = BootstrapResult()
        self._gate.disable()
        with span("breakglass-bootstrap", index=self._index_name) as rec:
            if self._delay > 0:
                logger.info("waiting %.0fs before loading grants", self._delay)
                await self._sleep(self._delay)

            try:
                index = self._index_provider()
                response = await index.search(QUERY_ALL, self._index_name)
            except BreakGlassError as exc:
                logger.error("bootstrap could not read the grant index: %s", exc.message)
                result.errors.append(exc.message)
                rec.set_tags(syncSuccess=False, bgErr=exc.message)
                return result

            if response.total > len(response.hits):
                # the gate opens only after every document was read
                message = f"scan returned {len(response.hits)} of {response.total} documents"
                logger.error("bootstrap incomplete, leaving write-through disabled: %s", message)
                result.errors.append(message)
                rec.set_tags(syncSuccess=False, bgErr=message)
                return result

            result.hits = len(response.hits)
            for hit in response.hits:
                self._restore(hit, result)

            result.completed = True
            self._gate.enable()
            rec.set_tags(
                syncSuccess=True,
                hits=result.hits,
                apiGrants=result.api_grants,
                identityGrants=result.identity_grants,
                skipped=result.skipped_documents + result.skipped_keys,
            )
        logger.info(
            "bootstrap loaded %d documents (%d api grants, %d identity grants, %d skipped)",
            result.hits, result.api_grants, result.identity_grants,
            result.skipped_documents + result.skipped_keys,
        )
        return result

    def _restore(self, hit: SearchHit, result: BootstrapResult) -> None:
        try:
            document = PersistedDocument.model_validate(hit.source)
        except ValidationError as exc:
            logger.warning("skipping document %r: cannot parse (%d errors)", hit.id, exc.error_count())
            result.skipped_documents += 1
            return

        if document.api:
            identity = identity_from_api_id(hit.id)
            if not identity or _is_legacy(document.user, identity):
                logger.warning("skipping api document with unexpected id %r", hit.id)
                result.skipped_documents += 1
                return
            self._restore_api(identity, document, result)
        else:
            if not hit.id or _is_legacy(document.user, hit.id):
                logger.warning("skipping identity document with unexpected id %r", hit.id)
                result.skipped_documents += 1
                return
            self._restore_identity(hit.id, document, result)

    def _restore_api(self, identity: str, document: PersistedDocument, result: BootstrapResult) -> None:
        for key in document.keys:
            try:
                auth_key = self._keyring.decrypt_from_index(key.api_key, key.key_id)
                token = self._keyring.decrypt_from_index(key.token, key.key_id)
            except BreakGlassError as exc:
                logger.warning("skipping key of %s: %s", identity, exc.message)
                result.skipped_keys += 1
                continue
            for res in key.resources:
                for perm in res.permissions:
                    self._cache.add_authorization(
                        auth_key, identity, document.user, key.source, token,
                        res.resource, perm.permission, perm.time, at_bootstrap=True,
                    )
                    result.api_grants += 1

    def _restore_identity(self, identity: str, document: PersistedDocument, result: BootstrapResult) -> None:
        for key in document.keys:
            for res in key.resources:
                for perm in res.permissions:
                    self._cache.add_user(
                        identity, document.user, key.source,
                        res.resource, perm.permission, perm.time, at_bootstrap=True,
                    )
                    result.identity_grants += 1


def _is_legacy(user: str, doc_id: str) -> bool:
    # older documents embedded the display name in the id
    return bool(user) and user in doc_id
