"""Download, initial load and periodic refresh of the GeoLite2 databases."""

import logging
import os
import threading
from contextlib import suppress
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import requests

from databases import DatabaseEntry, DatabaseRegistry, utcnow
from geoip import DatabaseOpenError, DownloadError, open_reader

log = logging.getLogger("geoip.updater")

CHUNK_SIZE = 64 * 1024
DOWNLOAD_TIMEOUT = 300
TEMP_SUFFIX = ".new"


class DatabaseUpdater:
    """Keeps every database of a registry on disk, open and reasonably fresh.

    ``initialize()`` runs once before the service takes traffic and raises on
    any failure. ``refresh_if_stale()`` runs on a timer in a background thread
    and never raises for a single database: a failed refresh leaves the
    current reader in service and is retried on the next cycle.
    """

    def __init__(
        self,
        registry: DatabaseRegistry,
        *,
        opener: Callable[[str], object] = open_reader,
        session: Optional[requests.Session] = None,
        max_age: timedelta = timedelta(days=30),
        check_interval: timedelta = timedelta(hours=24),
        timeout: float = DOWNLOAD_TIMEOUT,
    ):
        self.registry = registry
        self.opener = opener
        self.session = session or requests.Session()
        self.max_age = max_age
        self.check_interval = check_interval
        self.timeout = timeout
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ── Download ──────────────────────────────────────────────────
    def download(self, url: str, dest: str) -> None:
        """Stream ``url`` into ``dest``. Raises DownloadError; no partial file is kept."""
        try:
            with open(dest, "wb") as f:
                with self.session.get(url, stream=True, timeout=self.timeout) as resp:
                    resp.raise_for_status()
                    # 3xx answers that were not followed as redirects
                    if not 200 <= resp.status_code < 300:
                        raise requests.HTTPError(f"bad status: {resp.status_code} {resp.reason}", response=resp)
                    for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                        f.write(chunk)
        except (requests.RequestException, OSError) as e:
            with suppress(OSError):
                os.unlink(dest)
            raise DownloadError(f"download of {url} failed: {e}") from e

    # ── Startup ───────────────────────────────────────────────────
    def initialize(self) -> None:
        """Make sure every database exists locally and open a reader for it.

        Any download or open failure is fatal: readers opened so far are
        closed again and the error propagates to the caller.
        """
        try:
            for entry in self.registry:
                self._initialize_entry(entry)
        except Exception:
            self.registry.clear()
            raise

    def _initialize_entry(self, entry: DatabaseEntry) -> None:
        refreshed_at = None
        if not os.path.exists(entry.local_path):
            log.info("Database %s not found, downloading from %s", entry.kind, entry.source_url)
            os.makedirs(os.path.dirname(entry.local_path) or ".", exist_ok=True)
            self.download(entry.source_url, entry.local_path)
            refreshed_at = utcnow()

        reader = self.opener(entry.local_path)
        log.info("Opened %s database at %s", entry.kind, entry.local_path)

        if refreshed_at is None:
            try:
                mtime = os.stat(entry.local_path).st_mtime
                refreshed_at = datetime.fromtimestamp(mtime, tz=timezone.utc)
            except OSError:
                refreshed_at = utcnow()
        self.registry.install(entry.kind, reader, refreshed_at)

    # ── Refresh ───────────────────────────────────────────────────
    def is_stale(self, entry: DatabaseEntry, now: Optional[datetime] = None) -> bool:
        age = entry.age(now)
        return age is None or age >= self.max_age

    def refresh_if_stale(self) -> list[str]:
        """Refresh every database older than ``max_age``. Returns the refreshed kinds."""
        now = utcnow()
        refreshed = []
        for entry in self.registry:
            if not self.is_stale(entry, now):
                continue
            log.info("Database %s is older than %s days, updating...", entry.kind, self.max_age.days)
            if self._refresh_entry(entry):
                refreshed.append(entry.kind)
        return refreshed

    def _refresh_entry(self, entry: DatabaseEntry) -> bool:
        temp_path = entry.local_path + TEMP_SUFFIX
        try:
            self.download(entry.source_url, temp_path)
        except DownloadError as e:
            log.error("Failed to download updated %s database: %s", entry.kind, e)
            return False

        try:
            os.replace(temp_path, entry.local_path)
        except OSError as e:
            log.error("Failed to replace %s database file: %s", entry.kind, e)
            self._reopen_current(entry)
            return False

        try:
            reader = self.opener(entry.local_path)
        except DatabaseOpenError as e:
            log.error("Failed to open updated %s database, keeping the loaded one: %s", entry.kind, e)
            return False

        self.registry.replace(entry.kind, reader)
        log.info("Successfully updated %s database", entry.kind)
        return True

    def _reopen_current(self, entry: DatabaseEntry) -> None:
        """Reload the untouched file after a failed rename; keep the old reader if that fails too."""
        try:
            reader = self.opener(entry.local_path)
        except DatabaseOpenError as e:
            log.warning("Reopening %s database failed, keeping the loaded one: %s", entry.kind, e)
            return
        self.registry.replace(entry.kind, reader, touch=False)

    # ── Background loop ───────────────────────────────────────────
    def run(self) -> None:
        """Check for stale databases every ``check_interval`` until stopped."""
        interval = self.check_interval.total_seconds()
        while not self._stop.wait(interval):
            try:
                self.refresh_if_stale()
            except Exception:
                log.exception("Database refresh cycle failed")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run, name="DatabaseUpdater", daemon=True)
        self._thread.start()
        log.info("Database updater started (every %s, max age %s)", self.check_interval, self.max_age)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
