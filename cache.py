"""In-process caches and per-key locks used by the API client and the reconciler."""
import asyncio
import copy
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Hashable, List, Optional, Tuple

from models import TrackingKind, TrackingRecord

# Stored for 404 responses so a cached "not found" differs from a cache miss
NOT_FOUND = object()


class APICache:
    """API response cache with a TTL supplied per lookup."""

    def __init__(self):
        self._cache: Dict[str, Tuple[Any, float]] = {}

    def get(self, key: str, ttl: float) -> Optional[Any]:
        """Return the cached value, NOT_FOUND, or None on a miss/expiry."""
        entry = self._cache.get(key)
        if entry is None:
            return None
        value, timestamp = entry
        if time.monotonic() - timestamp < ttl:
            return value
        del self._cache[key]
        return None

    def set(self, key: str, value: Any) -> None:
        self._cache[key] = (value, time.monotonic())

    def invalidate_prefix(self, prefix: str) -> None:
        for key in [k for k in self._cache if k.startswith(prefix)]:
            del self._cache[key]


class RequestDeduplicator:
    """Prevent duplicate concurrent requests for the same resource."""

    def __init__(self):
        self._pending: Dict[str, asyncio.Future] = {}
        self._lock = asyncio.Lock()

    async def get_or_create(self, key: str, factory) -> Any:
        """
        If a request for this key is already pending, wait for it.
        Otherwise, create a new request using the factory function.
        """
        async with self._lock:
            future = self._pending.get(key)
            if future is None:
                future = asyncio.ensure_future(factory())
                self._pending[key] = future

        try:
            return await asyncio.shield(future)
        finally:
            async with self._lock:
                if self._pending.get(key) is future:
                    del self._pending[key]


class KeyedLocks:
    """One asyncio.Lock per key, created on demand."""

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}

    def lock_for(self, key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        async with self.lock_for(key):
            yield


class ActiveRecordCache:
    """
    Write-through cache of active tracking records.

    Every mutation goes to the store first and only then to the cache, so a
    failed write never leaves the cache ahead of the database.
    """

    def __init__(self, store):
        self.store = store
        self._records: Dict[Tuple[str, TrackingKind], TrackingRecord] = {}
        # Clans known to have no active record, to skip repeated store reads
        self._absent: set = set()

    async def load(self, kind: Optional[TrackingKind] = None) -> List[TrackingRecord]:
        """Populate the cache from every active record in the store."""
        records = await self.store.load_active(kind)
        for record in records:
            self._records[record.key] = record
            self._absent.discard(record.key)
        return records

    async def get(self, clan_tag: str, kind: TrackingKind) -> Optional[TrackingRecord]:
        """Return a private copy of the active record; callers may mutate it freely."""
        key = (clan_tag, kind)
        record = self._records.get(key)
        if record is None and key not in self._absent:
            record = await self.store.get_active(clan_tag, kind)
            if record is None:
                self._absent.add(key)
            else:
                self._records[key] = record
        return copy.deepcopy(record)

    async def refresh(self, clan_tag: str, kind: TrackingKind) -> Optional[TrackingRecord]:
        """Drop the cached copy and re-read the store."""
        self.forget(clan_tag, kind)
        return await self.get(clan_tag, kind)

    async def save(self, record: TrackingRecord) -> TrackingRecord:
        saved = await self.store.save(record)
        cached = self._records.get(saved.key)
        if saved.is_active:
            self._records[saved.key] = copy.deepcopy(saved)
            self._absent.discard(saved.key)
        elif cached is not None and cached.external_id == saved.external_id:
            del self._records[saved.key]
            self._absent.add(saved.key)
        return saved

    def forget(self, clan_tag: str, kind: TrackingKind) -> None:
        self._records.pop((clan_tag, kind), None)
        self._absent.discard((clan_tag, kind))
