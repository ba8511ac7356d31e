"""GrantCache: in-memory break-glass grants with write-through to the index.

Two tables, each under its own lock:

- by auth key (raw API key or token) -> Grant, persisted as ``api+<identity>``
- by identity -> Grant without secrets, persisted as ``<identity>``

Reads never fail and never touch the network. Writes update memory first;
when the write gate is open and the identity is known, a full snapshot of
the identity is handed to the bulk indexer. Errors on that path are logged
and tagged on the monitoring span, never raised to the caller.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from breakglass.crypto import KeyRing
from breakglass.errors import BreakGlassError, ErrorCode
from breakglass.grants.gate import WriteGate
from breakglass.grants.models import Grant, PersistedDocument, document_id
from breakglass.grants.snapshot import build_api_document, build_identity_document
from breakglass.index.base import SearchIndex
from breakglass.telemetry import SpanRecorder, span

logger = logging.getLogger("breakglass.grants")

DEFAULT_DURATION_LIMIT = 5_184_000  # 60 days

IndexProvider = Callable[[], SearchIndex]


class GrantCache:
    """The two grant tables. Safe to share across threads."""

    def __init__(
        self,
        keyring: KeyRing,
        gate: WriteGate,
        index_provider: IndexProvider,
        *,
        index_name: str = "breakglass",
        duration_limit: int = DEFAULT_DURATION_LIMIT,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._keyring = keyring
        self._gate = gate
        self._index_provider = index_provider
        self._index_name = index_name
        self._duration_limit = duration_limit
        self._clock = clock

        self._by_auth_key: dict[str, Grant] = {}
        self._by_auth_key_lock = threading.Lock()
        self._by_identity: dict[str, Grant] = {}
        self._by_identity_lock = threading.Lock()

    @property
    def gate(self) -> WriteGate:
        return self._gate

    def __len__(self) -> int:
        with self._by_auth_key_lock, self._by_identity_lock:
            return len(self._by_auth_key) + len(self._by_identity)

    def stats(self) -> dict[str, int]:
        with self._by_auth_key_lock:
            auth_keys = len(self._by_auth_key)
        with self._by_identity_lock:
            identities = len(self._by_identity)
        return {"auth_keys": auth_keys, "identities": identities}

    def _fresh(self, grant: Grant | None, resource: str, permission: str) -> bool:
        if grant is None:
            return False
        granted_at = grant.granted_at(resource, permission)
        return granted_at is not None and int(self._clock()) - granted_at < self._duration_limit

    # ------------------------------------------------------------------ #
    #  Reads                                                              #
    # ------------------------------------------------------------------ #

    def get_authorization(self, auth_key: str, resource: str, permission: str) -> Grant | None:
        """Return a copy of the grant for ``auth_key`` if it covers resource/permission and is still fresh."""
        with self._by_auth_key_lock:
            grant = self._by_auth_key.get(auth_key)
            if not self._fresh(grant, resource, permission):
                return None
            return grant.snapshot()

    def is_user_authorized(self, identity: str, source: str, resource: str, permission: str) -> bool:
        # source is informational; grants are keyed by identity alone
        with self._by_identity_lock:
            return self._fresh(self._by_identity.get(identity), resource, permission)

    # ------------------------------------------------------------------ #
    #  Writes                                                             #
    # ------------------------------------------------------------------ #

    def add_authorization(
        self,
        auth_key: str,
        identity: str,
        user: str,
        source: str,
        token: str,
        resource: str,
        permission: str,
        granted_at: int,
        at_bootstrap: bool = False,
    ) -> None:
        """Record that ``auth_key`` was authorized for resource/permission at ``granted_at``.

        Identity, user, source and token always take the caller's values; the
        grant time only moves forward.
        """
        with span("breakglass-AddAuthorization", source=source, resource=resource, permission=permission) as rec:
            with self._by_auth_key_lock:
                grant = self._by_auth_key.get(auth_key)
                if grant is None:
                    grant = Grant(identity=identity, user=user, source=source, token=token)
                    self._by_auth_key[auth_key] = grant
                else:
                    grant.identity, grant.user, grant.source, grant.token = identity, user, source, token
                grant.merge(resource, permission, granted_at)

                if at_bootstrap or not self._gate.enabled:
                    return
                entries = [(key, g) for key, g in self._by_auth_key.items() if g.identity == identity]
                self._write_through(rec, identity, True, lambda: build_api_document(user, entries, self._keyring))

    def add_user(
        self,
        identity: str,
        user: str,
        source: str,
        resource: str,
        permission: str,
        granted_at: int,
        at_bootstrap: bool = False,
    ) -> None:
        """Record an identity-keyed grant. Grants without an identity are ignored."""
        with span("breakglass-AddUser", source=source, resource=resource, permission=permission) as rec:
            if not identity:
                rec.set_tag("bgErr", "no identity")
                logger.warning("add_user called without identity, ignoring")
                return

            with self._by_identity_lock:
                grant = self._by_identity.get(identity)
                if grant is None:
                    grant = Grant(identity=identity, user=user, source=source)
                    self._by_identity[identity] = grant
                else:
                    grant.user, grant.source = user, source
                grant.merge(resource, permission, granted_at)

                if at_bootstrap or not self._gate.enabled:
                    return
                self._write_through(rec, identity, False, lambda: build_identity_document(grant))

    def _write_through(
        self, rec: SpanRecorder, identity: str, api: bool, build: Callable[[], PersistedDocument],
    ) -> None:
        """Build the snapshot and hand it to the bulk indexer. Caller holds the table lock."""
        try:
            doc_id = document_id(identity, api)
            rec.set_tag("documentID", doc_id)
            document = build()
            index = self._index_provider()
            queued = index.bulk_index(document, self._index_name, doc_id)
        except BreakGlassError as exc:
            rec.set_tags(bgErr=exc.message, bulkIndexSuccess=False)
            if exc.code in (ErrorCode.INDEX_DISABLED, ErrorCode.INVALID_IDENTITY):
                logger.debug("grant for %r not persisted: %s", identity, exc.message)
            else:
                logger.warning("failed to persist grant for %r: %s", identity, exc.message)
            return
        rec.set_tag("bulkIndexSuccess", queued)
        if not queued:
            rec.set_tag("bgErr", "bulk buffer full")
