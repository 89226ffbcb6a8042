# doc_cache.py
import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_TTL = 300


@dataclass
class _Entry:
    value: Any
    expires_at: float


class DocCache:
    """
    Time-bounded cache for table handles and access tokens.

    Loading goes through get_or_load(), which lets only one loader run per
    key at a time; callers that arrive while a load is in flight wait for it
    and receive the same value, or the same exception.
    """

    def __init__(self, ttl=DEFAULT_TTL, clock=time.time):
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._entries = {}
        self._inflight = {}
        self.hits = 0
        self.misses = 0

    def _live_entry(self, key, now):
        entry = self._entries.get(key)
        if entry is None:
            return None
        if now >= entry.expires_at:
            del self._entries[key]
            return None
        return entry

    def get(self, key):
        with self._lock:
            entry = self._live_entry(key, self._clock())
            return entry.value if entry is not None else None

    def put(self, key, value, ttl=None, expires_at=None):
        if expires_at is None:
            expires_at = self._clock() + (self.ttl if ttl is None else ttl)
        with self._lock:
            self._entries[key] = _Entry(value, expires_at)

    def get_or_load(self, key, loader, ttl=None, expiry=None):
        """
        Returns the cached value for key, calling loader() on a miss.

        expiry, when given, maps the loaded value to its absolute expiry
        timestamp; otherwise the entry lives for ttl (or the cache default).
        """
        with self._lock:
            now = self._clock()
            entry = self._live_entry(key, now)
            if entry is not None:
                self.hits += 1
                return entry.value
            flight = self._inflight.get(key)
            leader = flight is None
            if leader:
                self.misses += 1
                flight = Future()
                self._inflight[key] = flight

        if not leader:
            logger.debug('Waiting on in-flight load for %s', key)
            return flight.result()

        try:
            value = loader()
        except BaseException as exc:
            with self._lock:
                self._inflight.pop(key, None)
            flight.set_exception(exc)
            raise

        if expiry is not None:
            expires_at = expiry(value)
        else:
            expires_at = self._clock() + (self.ttl if ttl is None else ttl)
        with self._lock:
            self._entries[key] = _Entry(value, expires_at)
            self._inflight.pop(key, None)
        flight.set_result(value)
        return value

    def invalidate(self, key):
        with self._lock:
            removed = self._entries.pop(key, None) is not None
        if removed:
            logger.debug('Invalidated cache entry %s', key)
        return removed

    def invalidate_prefix(self, prefix):
        with self._lock:
            keys = [k for k in self._entries if k.startswith(prefix)]
            for key in keys:
                del self._entries[key]
        return len(keys)

    def clear(self):
        with self._lock:
            self._entries.clear()
