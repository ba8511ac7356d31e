"""ResourceAuthCache: TTL cache of policy-service decisions.

Allowed results live for ``positive_ttl`` seconds, denials for the shorter
``negative_ttl`` so that a freshly granted user is not kept out for long.
Entries are not evicted to make room: at ``max_size`` emails new entries are
refused with a warning. Expired entries are removed by ``sweep()``, which the
scheduler runs every ``sweep_interval`` seconds.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator

from breakglass.errors import BreakGlassError
from breakglass.policy.crn import service_from_crn

logger = logging.getLogger("breakglass.policy.cache")


class RWLock:
    """Readers-writer lock. Many readers or one writer."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


@dataclass
class ResourceAuth:
    crn: str
    allowed: bool
    expires: int


@dataclass
class TypeEntry:
    value: str
    expires: int


class ResourceAuthCache:
    """Per-email CRN decisions plus user-type and service-type tables."""

    def __init__(
        self,
        *,
        max_size: int = 10_000,
        positive_ttl: int = 1800,
        negative_ttl: int = 300,
        user_type_ttl: int = 1800,
        service_type_ttl: int = 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_size = max_size
        self.positive_ttl = positive_ttl
        self.negative_ttl = negative_ttl
        self.user_type_ttl = user_type_ttl
        self.service_type_ttl = service_type_ttl
        self._clock = clock

        self._lock = RWLock()
        self._by_email: dict[str, list[ResourceAuth]] = {}
        self._user_types: dict[str, TypeEntry] = {}
        self._service_types: dict[str, TypeEntry] = {}

    def _now(self) -> int:
        return int(self._clock())

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._by_email)

    def stats(self) -> dict[str, int]:
        with self._lock.read():
            return {
                "emails": len(self._by_email),
                "entries": sum(len(v) for v in self._by_email.values()),
                "user_types": len(self._user_types),
                "service_types": len(self._service_types),
            }

    # --- Resource decisions ---

    def lookup(self, email: str, crn: str) -> tuple[bool, bool]:
        """Return (allowed, found). ``found`` is False for missing or expired entries."""
        now = self._now()
        with self._lock.read():
            for entry in self._by_email.get(email, ()):
                if entry.crn == crn and entry.expires >= now:
                    return entry.allowed, True
        return False, False

    def add(self, email: str, crn: str, allowed: bool) -> bool:
        """Cache a decision. Returns False when refused because the cache is full."""
        ttl = self.positive_ttl if allowed else self.negative_ttl
        entry = ResourceAuth(crn=crn, allowed=allowed, expires=self._now() + ttl)
        with self._lock.write():
            if len(self._by_email) >= self.max_size:
                size = len(self._by_email)
            else:
                self._by_email.setdefault(email, []).append(entry)
                return True
        logger.warning(
            "resource auth cache is at the maximum size (%d), not caching; increase policy.max_size if needed",
            size,
        )
        return False

    # --- User and service types ---

    def get_user_type(self, email: str) -> str:
        return self._get_type(self._user_types, email)

    def add_user_type(self, email: str, user_type: str) -> bool:
        return self._add_type(self._user_types, "user type", email, user_type, self.user_type_ttl)

    def get_service_type(self, service: str) -> str:
        return self._get_type(self._service_types, service)

    def add_service_type(self, crn: str, service_type: str) -> bool:
        """Cache the type of the service named in ``crn``."""
        try:
            service = service_from_crn(crn)
        except BreakGlassError as exc:
            logger.warning("not caching service type: %s", exc.message)
            return False
        if not service:
            return False
        return self._add_type(self._service_types, "service type", service, service_type, self.service_type_ttl)

    def _get_type(self, table: dict[str, TypeEntry], key: str) -> str:
        now = self._now()
        with self._lock.read():
            entry = table.get(key)
            if entry is not None and entry.expires >= now:
                return entry.value
        return ""

    def _add_type(self, table: dict[str, TypeEntry], what: str, key: str, value: str, ttl: int) -> bool:
        entry = TypeEntry(value=value, expires=self._now() + ttl)
        with self._lock.write():
            if key not in table and len(table) >= self.max_size:
                size = len(table)
            else:
                table[key] = entry
                return True
        logger.warning("%s cache is at the maximum size (%d), not caching", what, size)
        return False

    # --- Expiry ---

    def sweep(self) -> int:
        """Remove every expired entry. Returns the number removed."""
        now = self._now()
        with self._lock.read():
            expired_emails = [
                email for email, entries in self._by_email.items()
                if any(e.expires <= now for e in entries)
            ]
            expired_users = [k for k, e in self._user_types.items() if e.expires <= now]
            expired_services = [k for k, e in self._service_types.items() if e.expires <= now]

        if not (expired_emails or expired_users or expired_services):
            return 0

        removed = 0
        with self._lock.write():
            for email in expired_emails:
                entries = self._by_email.get(email)
                if entries is None:
                    continue
                kept = [e for e in entries if e.expires > now]
                removed += len(entries) - len(kept)
                if kept:
                    self._by_email[email] = kept
                else:
                    del self._by_email[email]
            for table, keys in ((self._user_types, expired_users), (self._service_types, expired_services)):
                for key in keys:
                    entry = table.get(key)
                    if entry is not None and entry.expires <= now:
                        del table[key]
                        removed += 1
        logger.debug("resource auth sweep removed %d entries", removed)
        return removed
