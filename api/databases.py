"""Registry of the local GeoLite2 databases – one guarded reader per kind."""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterator, Optional

from geoip import DatabaseNotReadyError, GeoIPError

log = logging.getLogger("geoip.databases")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UnknownDatabaseError(GeoIPError, KeyError):
    """A database kind was requested that was never registered."""


# ── Locking ───────────────────────────────────────────────────────
class ReadWriteLock:
    """Many shared holders or one exclusive holder.

    A writer that is waiting blocks new shared holders, so a reader swap is
    never starved by a steady stream of lookups. Not reentrant.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def shared(self):
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
    def exclusive(self):
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


# ── Entries ───────────────────────────────────────────────────────
@dataclass
class DatabaseEntry:
    kind: str
    source_url: str
    local_path: str
    reader: Optional[object] = None
    last_refreshed: Optional[datetime] = None
    _lock: ReadWriteLock = field(default_factory=ReadWriteLock, repr=False, compare=False)

    @contextmanager
    def read(self, required: bool = True) -> Iterator:
        """Hold the shared lock and yield the current reader.

        Keep the block short: a pending swap waits for it to exit.
        """
        with self._lock.shared():
            if self.reader is None and required:
                raise DatabaseNotReadyError(f"{self.kind} database is not loaded")
            yield self.reader

    def age(self, now: Optional[datetime] = None) -> Optional[timedelta]:
        if self.last_refreshed is None:
            return None
        return (now or utcnow()) - self.last_refreshed

    def _mark_refreshed(self, when: datetime) -> None:
        # never moves backwards
        if self.last_refreshed is None or when > self.last_refreshed:
            self.last_refreshed = when


def _close_quietly(kind: str, reader) -> None:
    if reader is None:
        return
    try:
        reader.close()
    except Exception as e:
        log.warning("Closing old %s reader failed: %s", kind, e)


# ── Registry ──────────────────────────────────────────────────────
class DatabaseRegistry:
    """All database entries of the service, keyed by kind.

    Built once at startup and handed to the HTTP layer and the updater.
    """

    def __init__(self, entries: list[DatabaseEntry]):
        self._entries: dict[str, DatabaseEntry] = {}
        for entry in entries:
            if entry.kind in self._entries:
                raise ValueError(f"duplicate database kind: {entry.kind}")
            self._entries[entry.kind] = entry

    @classmethod
    def from_sources(cls, sources: list[tuple[str, str, str]]) -> "DatabaseRegistry":
        return cls([DatabaseEntry(kind, url, path) for kind, url, path in sources])

    def __iter__(self) -> Iterator[DatabaseEntry]:
        return iter(list(self._entries.values()))

    def __len__(self) -> int:
        return len(self._entries)

    def kinds(self) -> list[str]:
        return list(self._entries)

    def get(self, kind: str) -> DatabaseEntry:
        try:
            return self._entries[kind]
        except KeyError:
            raise UnknownDatabaseError(kind) from None

    def require(self, *kinds: str) -> None:
        """Fail fast if any of the given kinds is not registered."""
        missing = [k for k in kinds if k not in self._entries]
        if missing:
            raise UnknownDatabaseError(", ".join(missing))

    def install(self, kind: str, reader, refreshed_at: datetime) -> None:
        """Set the reader and refresh time of an entry (initial load)."""
        entry = self.get(kind)
        with entry._lock.exclusive():
            old, entry.reader = entry.reader, reader
            entry._mark_refreshed(refreshed_at)
        if old is not reader:
            _close_quietly(kind, old)

    def replace(self, kind: str, new_reader, *, touch: bool = True) -> None:
        """Swap in a freshly opened reader and close the previous one.

        Lookups in flight finish on the old reader before the swap; later ones
        see the new reader. The old reader is closed after the lock is released,
        when nothing can reach it anymore.
        """
        entry = self.get(kind)
        with entry._lock.exclusive():
            old, entry.reader = entry.reader, new_reader
            if touch:
                entry._mark_refreshed(utcnow())
        if old is not new_reader:
            _close_quietly(kind, old)

    def clear(self) -> None:
        """Close and drop every reader."""
        for entry in self:
            with entry._lock.exclusive():
                old, entry.reader = entry.reader, None
            _close_quietly(entry.kind, old)
