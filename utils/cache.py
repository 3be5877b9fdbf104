import threading
import time
import weakref
from typing import Callable, Dict, Generic, Optional, Tuple, TypeVar

from utils.logger import get_logger

LOG = get_logger('cache')

V = TypeVar('V')

# Pass as ttl to keep an entry until it is deleted.
NO_EXPIRATION = -1


class ReadWriteLock:
    """Many readers or one writer. Writers waiting block new readers."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    def acquire_read(self):
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1

    def release_read(self):
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self):
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True

    def release_write(self):
        with self._cond:
            self._writer = False
            self._cond.notify_all()


class CacheEntry(Generic[V]):
    __slots__ = ('value', 'expires_at')

    def __init__(self, value: V, expires_at: Optional[float]):
        self.value = value
        self.expires_at = expires_at  # None = never

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class ExpiringCache(Generic[V]):
    """In-memory key -> value cache with per-entry TTL.

    Expired entries are never returned by get(). They are removed when read,
    or by a background sweeper thread every ``sweep_interval`` seconds.
    A ``sweep_interval`` <= 0 disables the sweeper.
    """

    def __init__(
        self,
        default_ttl: float = 300,
        sweep_interval: float = 600,
        on_evicted: Optional[Callable[[str, V], None]] = None,
    ):
        self.default_ttl = default_ttl
        self.sweep_interval = sweep_interval
        self.on_evicted = on_evicted
        self._store: Dict[str, CacheEntry[V]] = {}
        self._lock = ReadWriteLock()
        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None
        if sweep_interval > 0:
            # the thread only holds a weak reference, so a dropped cache stops it
            self._sweeper = threading.Thread(
                target=_sweep_loop,
                args=(weakref.ref(self), self._stop, sweep_interval),
                name='cache-sweeper',
                daemon=True,
            )
            self._sweeper.start()
            weakref.finalize(self, self._stop.set)
            LOG.debug('sweeper started (interval=%ss)', sweep_interval)

    def _expiry(self, ttl: Optional[float]) -> Optional[float]:
        if ttl is None:
            ttl = self.default_ttl
        if ttl <= 0:
            return None
        return time.monotonic() + ttl

    def set(self, key: str, value: V, ttl: Optional[float] = None) -> None:
        entry = CacheEntry(value, self._expiry(ttl))
        self._lock.acquire_write()
        try:
            self._store[key] = entry
        finally:
            self._lock.release_write()

    def add(self, key: str, value: V, ttl: Optional[float] = None) -> bool:
        """Store only if key is absent or expired. Returns True if stored."""
        entry = CacheEntry(value, self._expiry(ttl))
        self._lock.acquire_write()
        try:
            current = self._store.get(key)
            if current is not None and not current.expired(time.monotonic()):
                return False
            self._store[key] = entry
            return True
        finally:
            self._lock.release_write()

    def get(self, key: str) -> Tuple[Optional[V], bool]:
        self._lock.acquire_read()
        try:
            entry = self._store.get(key)
            if entry is None:
                return None, False
            if not entry.expired(time.monotonic()):
                return entry.value, True
        finally:
            self._lock.release_read()

        # expired: drop it now instead of waiting for the sweeper
        self._lock.acquire_write()
        try:
            entry = self._store.get(key)
            if entry is None:
                return None, False
            if not entry.expired(time.monotonic()):
                # re-set by another thread in between
                return entry.value, True
            del self._store[key]
        finally:
            self._lock.release_write()
        self._evicted(key, entry.value)
        return None, False

    def delete(self, key: str) -> None:
        self._lock.acquire_write()
        try:
            entry = self._store.pop(key, None)
        finally:
            self._lock.release_write()
        if entry is not None:
            self._evicted(key, entry.value)

    def delete_expired(self) -> int:
        """Remove every expired entry. Returns how many were removed."""
        removed = []
        self._lock.acquire_write()
        try:
            now = time.monotonic()
            for key, entry in list(self._store.items()):
                if entry.expired(now):
                    del self._store[key]
                    removed.append((key, entry.value))
        finally:
            self._lock.release_write()
        for key, value in removed:
            self._evicted(key, value)
        return len(removed)

    def items(self) -> Dict[str, V]:
        self._lock.acquire_read()
        try:
            now = time.monotonic()
            return {k: e.value for k, e in self._store.items() if not e.expired(now)}
        finally:
            self._lock.release_read()

    def flush(self) -> None:
        self._lock.acquire_write()
        try:
            self._store.clear()
        finally:
            self._lock.release_write()

    def __len__(self) -> int:
        self._lock.acquire_read()
        try:
            return len(self._store)
        finally:
            self._lock.release_read()

    def _evicted(self, key: str, value: V) -> None:
        if self.on_evicted is not None:
            self.on_evicted(key, value)

    def stop(self) -> None:
        """Stop the background sweeper. Safe to call more than once."""
        self._stop.set()
        sweeper = self._sweeper
        if sweeper is not None and sweeper.is_alive() and sweeper is not threading.current_thread():
            sweeper.join()
            LOG.debug('sweeper stopped')

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.stop()
        return False


def _sweep_loop(cache_ref, stop: threading.Event, interval: float):
    while not stop.wait(interval):
        cache = cache_ref()
        if cache is None:
            return
        try:
            removed = cache.delete_expired()
        except Exception:
            LOG.exception('cache sweep failed')
            continue
        finally:
            del cache
        if removed:
            LOG.debug('sweep removed %d expired entries', removed)
