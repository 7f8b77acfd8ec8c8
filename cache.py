"""Per-source TTL cache isolating slow collaborators from request latency."""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor

log = logging.getLogger(__name__)


class CacheEntry:
    __slots__ = ('value', 'fetched_at', 'ttl', 'refreshing')

    def __init__(self, value=None, fetched_at=None, ttl=0.0):
        self.value = value
        self.fetched_at = fetched_at
        self.ttl = ttl
        self.refreshing = False

    def is_live(self, now):
        return self.fetched_at is not None and (now - self.fetched_at) < self.ttl


class TTLCache:
    """Key -> (value, fetched_at, ttl) store with a get-or-compute contract.

    ``get`` recomputes synchronously once an entry expires and is meant for
    cheap local sources. ``get_stale`` never blocks: it hands the recompute to
    a background executor and returns the last known value meanwhile, which
    suits network and process calls. A failing compute never replaces a good
    value.
    """

    def __init__(self, clock=time.monotonic, executor=None):
        self._clock = clock
        self._entries = {}
        self._lock = threading.Lock()
        self._executor = executor
        self._owns_executor = executor is None

    def _pool(self):
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix='cache-refresh')
        return self._executor

    def get(self, key, ttl, compute, default=None):
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.is_live(now):
                return entry.value
            previous = entry.value if entry is not None else default
        try:
            value = compute()
        except Exception as exc:
            log.warning('[CACHE] compute failed for %s: %s', key, exc)
            return previous
        self._store(key, value, ttl)
        return value

    def get_stale(self, key, ttl, compute, default=None):
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = CacheEntry(value=default, ttl=ttl)
                self._entries[key] = entry
            if entry.is_live(now):
                return entry.value
            value = entry.value
            schedule = not entry.refreshing
            if schedule:
                entry.refreshing = True
        if schedule:
            try:
                self._pool().submit(self._refresh, key, ttl, compute)
            except RuntimeError as exc:
                log.warning('[CACHE] refresh not scheduled for %s: %s', key, exc)
                with self._lock:
                    entry.refreshing = False
        return value

    def _refresh(self, key, ttl, compute):
        try:
            value = compute()
        except Exception as exc:
            log.warning('[CACHE] background refresh failed for %s: %s', key, exc)
            with self._lock:
                entry = self._entries.get(key)
                if entry is not None:
                    entry.refreshing = False
            return
        self._store(key, value, ttl)

    def _store(self, key, value, ttl):
        fetched_at = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = CacheEntry()
                self._entries[key] = entry
            entry.value = value
            entry.fetched_at = fetched_at
            entry.ttl = ttl
            entry.refreshing = False

    def invalidate(self, *keys):
        """Force the next read of each key to recompute, keeping the old value for stale reads."""
        with self._lock:
            for key in keys:
                entry = self._entries.get(key)
                if entry is not None:
                    entry.fetched_at = None

    def peek(self, key):
        with self._lock:
            entry = self._entries.get(key)
            return None if entry is None else entry.value

    def clear(self):
        with self._lock:
            self._entries.clear()

    def shutdown(self):
        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
