"""TTL keyed record storage for circuit breakers.

Storage is decoupled from breaker logic: every breaker owns one store
instance, passed in through its constructor. Custom backends implement
``AbstractRecordStore``; returning ``Err(StoreUnavailableError(...))`` from
``get_or_create`` makes the breaker fall back to running operations without
circuit gating.

Expired records are evicted lazily. The first read past expiry reports
``CacheExpiredError`` and evicts; later reads of that key report
``CacheMissError``.
"""

import asyncio
import sys
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import AsyncIterator, Callable, Mapping
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from types import MappingProxyType

from breakwater.circuit_breaker.exceptions import (
    CacheExpiredError,
    CacheMissError,
    RejectedExpiredWriteError,
)
from breakwater.circuit_breaker.state import CacheRecord
from breakwater.result import Err, Ok, Result

RecordFactory = Callable[[], CacheRecord]
RecordTransform = Callable[[CacheRecord], CacheRecord]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class AbstractRecordStore(ABC):
    """Abstract keyed record store interface."""

    @abstractmethod
    async def set(self, key: str, record: CacheRecord) -> Result[CacheRecord]:
        """Store ``record`` under ``key`` unless it has already expired."""

    @abstractmethod
    async def get(self, key: str) -> Result[CacheRecord]:
        """Return the live record for ``key``, evicting it if expired."""

    @abstractmethod
    async def get_or_create(
        self, key: str, factory: RecordFactory
    ) -> Result[CacheRecord]:
        """Return the live record for ``key`` or store ``factory()``."""

    @abstractmethod
    async def update(self, key: str, transform: RecordTransform) -> Result[CacheRecord]:
        """Atomically replace the live record with ``transform(record)``."""

    @abstractmethod
    async def clear(self) -> None:
        """Remove every stored record."""

    @abstractmethod
    def get_all(self) -> Mapping[str, CacheRecord]:
        """Return a read-only snapshot of all stored records."""


class InMemoryRecordStore(AbstractRecordStore):
    """In-memory storage with per-key cooperative + optional thread locks."""

    def __init__(self) -> None:
        """Initialize record and lock registries."""
        self._records: dict[str, CacheRecord] = {}
        self._async_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._thread_locks: dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._lock_users: dict[str, int] = {}
        self._registry_lock = threading.Lock()
        is_gil_enabled = getattr(sys, "_is_gil_enabled", None)
        self._gil_enabled = True if is_gil_enabled is None else bool(is_gil_enabled())

    def _checkout(self, key: str) -> "tuple[asyncio.Lock, threading.Lock | None]":
        with self._registry_lock:
            self._lock_users[key] = self._lock_users.get(key, 0) + 1
            thread_lock = None if self._gil_enabled else self._thread_locks[key]
            return self._async_locks[key], thread_lock

    def _checkin(self, key: str) -> None:
        # Locks nobody holds or waits on are dropped so keys do not accumulate.
        with self._registry_lock:
            users = self._lock_users[key] - 1
            if users:
                self._lock_users[key] = users
                return
            del self._lock_users[key]
            self._async_locks.pop(key, None)
            self._thread_locks.pop(key, None)

    @asynccontextmanager
    async def _locked(self, key: str) -> AsyncIterator[None]:
        async_lock, thread_lock = self._checkout(key)
        try:
            if thread_lock is None:
                await async_lock.acquire()
                try:
                    yield
                finally:
                    async_lock.release()
                return

            thread_lock.acquire()
            try:
                await async_lock.acquire()
            except Exception:
                thread_lock.release()
                raise
            try:
                yield
            finally:
                async_lock.release()
                thread_lock.release()
        finally:
            self._checkin(key)

    def _set(self, key: str, record: CacheRecord) -> Result[CacheRecord]:
        if record.is_expired(_utcnow()):
            return Err(RejectedExpiredWriteError(key))
        self._records[key] = record
        return Ok(record)

    def _get(self, key: str) -> Result[CacheRecord]:
        record = self._records.get(key)
        if record is None:
            return Err(CacheMissError(key))
        if record.is_expired(_utcnow()):
            del self._records[key]
            return Err(CacheExpiredError(key))
        return Ok(record)

    async def set(self, key: str, record: CacheRecord) -> Result[CacheRecord]:
        """Store a record; expired records are rejected and not written."""
        async with self._locked(key):
            return self._set(key, record)

    async def get(self, key: str) -> Result[CacheRecord]:
        """Return the record for ``key`` with lazy expiry eviction."""
        async with self._locked(key):
            return self._get(key)

    async def get_or_create(
        self, key: str, factory: RecordFactory
    ) -> Result[CacheRecord]:
        """Return the live record, replacing a missing or expired one."""
        async with self._locked(key):
            current = self._get(key)
            if isinstance(current, Ok):
                return current
            return self._set(key, factory())

    async def update(self, key: str, transform: RecordTransform) -> Result[CacheRecord]:
        """Read-modify-write ``key`` while holding its lock.

        Returns the read error unchanged when the record is missing or has
        just expired; nothing is written in that case.
        """
        async with self._locked(key):
            current = self._get(key)
            if isinstance(current, Err):
                return current
            return self._set(key, transform(current.value))

    async def clear(self) -> None:
        """Drop every record. Locks held by in-flight callers stay until released."""
        self._records.clear()

    def get_all(self) -> Mapping[str, CacheRecord]:
        """Return an insertion-ordered snapshot, expired entries included."""
        return MappingProxyType(dict(self._records))
