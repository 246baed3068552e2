"""
Slow-path access to the authoritative gazetteer.

Nothing in this module runs inside the per-article latency budget. Local
cache misses are queued; a background worker asks the authoritative
database, parks the answers in a SQLite backfill cache for the next
snapshot build, and reports drift between the live rows and the snapshot
the batch is bound to. The snapshot value always stays authoritative for
the running batch.
"""
from __future__ import annotations

import json
import logging
import os
import queue
import sqlite3
import threading
import time
from typing import List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from geodisambig.db import make_engine, make_session_factory, session_scope
from geodisambig.domain.models import CanonicalPlace
from geodisambig.repositories.places import PlacesRepository
from geodisambig.services.gazetteer_store import GazetteerStore
from geodisambig.services.geo import haversine_km
from geodisambig.settings import Settings

logger = logging.getLogger(__name__)

POPULATION_DRIFT_RATIO = 0.01
CENTROID_DRIFT_KM = 1.0


class BackfillCache:
    """SQLite-backed store of authoritative lookups waiting for the next snapshot build."""

    def __init__(self, db_path: str, default_ttl_seconds: int = 30 * 24 * 3600):
        self.db_path = db_path
        self.default_ttl_seconds = default_ttl_seconds
        os.makedirs(os.path.dirname(os.path.abspath(self.db_path)), exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS backfill_cache (
                    normalized_name TEXT PRIMARY KEY,
                    response_json TEXT NOT NULL,
                    created_at INTEGER NOT NULL,
                    ttl_seconds INTEGER NOT NULL
                )
                """
            )
            self._conn.commit()

    def _is_expired(self, created_at: int, ttl_seconds: int) -> bool:
        return ttl_seconds > 0 and (time.time() - created_at) > ttl_seconds

    def get(self, normalized_name: str) -> Optional[List[CanonicalPlace]]:
        """Return cached places for a name, or None when missing or expired."""
        with self._lock:
            row = self._conn.execute(
                "SELECT response_json, created_at, ttl_seconds FROM backfill_cache WHERE normalized_name=?",
                (normalized_name,),
            ).fetchone()
        if not row:
            return None
        response_json, created_at, ttl_seconds = row
        if self._is_expired(created_at, ttl_seconds):
            return None
        return [CanonicalPlace.from_dict(item) for item in json.loads(response_json)]

    def put(self, normalized_name: str, places: List[CanonicalPlace], ttl_seconds: Optional[int] = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl_seconds
        payload = json.dumps([p.to_dict() for p in places], sort_keys=True)
        with self._lock:
            self._conn.execute(
                """
                INSERT OR REPLACE INTO backfill_cache (normalized_name, response_json, created_at, ttl_seconds)
                VALUES (?, ?, ?, ?)
                """,
                (normalized_name, payload, int(time.time()), ttl),
            )
            self._conn.commit()

    def all_places(self) -> List[CanonicalPlace]:
        """Every non-expired cached place, de-duplicated by place_id, ordered by id."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT response_json, created_at, ttl_seconds FROM backfill_cache ORDER BY normalized_name"
            ).fetchall()
        places = {}
        for response_json, created_at, ttl_seconds in rows:
            if self._is_expired(created_at, ttl_seconds):
                continue
            for item in json.loads(response_json):
                place = CanonicalPlace.from_dict(item)
                places.setdefault(place.place_id, place)
        return [places[k] for k in sorted(places)]

    def close(self) -> None:
        with self._lock:
            self._conn.close()


class AuthoritativeGazetteer:
    """Name lookups against the authoritative database through SQLAlchemy."""

    def __init__(self, session_factory: sessionmaker, repository: Optional[PlacesRepository] = None):
        self.session_factory = session_factory
        self.repository = repository or PlacesRepository()

    @classmethod
    def from_url(cls, database_url: str) -> "AuthoritativeGazetteer":
        return cls(make_session_factory(make_engine(database_url)))

    def lookup(self, normalized_name: str) -> List[CanonicalPlace]:
        with session_scope(self.session_factory) as session:
            return self.repository.find_by_name(session, normalized_name)


def describe_drift(cached: CanonicalPlace, live: CanonicalPlace) -> List[str]:
    """Human-readable differences between a snapshot row and the live row."""
    diffs: List[str] = []
    if cached.canonical_name != live.canonical_name:
        diffs.append(f"name {cached.canonical_name!r} -> {live.canonical_name!r}")
    if cached.kind != live.kind:
        diffs.append(f"kind {cached.kind.value} -> {live.kind.value}")
    if cached.population != live.population:
        if cached.population is None or live.population is None or cached.population == 0:
            diffs.append(f"population {cached.population} -> {live.population}")
        elif abs(cached.population - live.population) / cached.population > POPULATION_DRIFT_RATIO:
            diffs.append(f"population {cached.population} -> {live.population}")
    moved_km = haversine_km(cached.lat, cached.lon, live.lat, live.lon)
    if moved_km > CENTROID_DRIFT_KM:
        diffs.append(f"centroid moved {moved_km:.1f} km")
    return diffs


class BackfillQueue:
    """
    Bounded, non-blocking queue of cache-miss names drained by one daemon thread.

    request() never waits: when the queue is full the name is dropped.
    """

    def __init__(
        self,
        source: AuthoritativeGazetteer,
        cache: BackfillCache,
        maxsize: int = 1000,
        log_drift: bool = True,
    ):
        self.source = source
        self.cache = cache
        self.log_drift = log_drift
        self._queue: "queue.Queue[Tuple[str, Optional[GazetteerStore]]]" = queue.Queue(maxsize=maxsize)
        self._pending: set[str] = set()
        self._pending_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.processed = 0
        self.failures = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> "BackfillQueue":
        return cls(
            AuthoritativeGazetteer.from_url(settings.AUTHORITATIVE_DB_URL),
            BackfillCache(settings.BACKFILL_CACHE_PATH, settings.BACKFILL_CACHE_TTL_SECONDS),
            maxsize=settings.BACKFILL_QUEUE_SIZE,
            log_drift=settings.LOG_DRIFT,
        )

    def request(self, normalized_name: str, store: Optional[GazetteerStore] = None) -> bool:
        """Queue a lookup. Returns False if it was dropped or is already pending."""
        with self._pending_lock:
            if normalized_name in self._pending:
                return False
            try:
                self._queue.put_nowait((normalized_name, store))
            except queue.Full:
                logger.debug("Backfill queue full; dropping %r", normalized_name)
                return False
            self._pending.add(normalized_name)
        return True

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="gazetteer-backfill", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def drain(self) -> None:
        """Block until every queued name has been processed (tests and shutdown)."""
        if not self.running:
            raise RuntimeError("backfill worker is not running; call start() before drain()")
        self._queue.join()

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                name, store = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue
            try:
                self.process(name, store)
            finally:
                with self._pending_lock:
                    self._pending.discard(name)
                self._queue.task_done()

    def process(self, normalized_name: str, store: Optional[GazetteerStore] = None) -> List[CanonicalPlace]:
        """Fetch one name from the authoritative source and park the result."""
        if self.cache.get(normalized_name) is not None:
            return []
        try:
            places = self.source.lookup(normalized_name)
        except SQLAlchemyError as exc:
            self.failures += 1
            logger.warning("Authoritative lookup failed for %r: %s", normalized_name, exc)
            return []
        self.cache.put(normalized_name, places)
        self.processed += 1
        if places:
            logger.info("Backfilled %d place(s) for %r", len(places), normalized_name)
        if store is not None and self.log_drift:
            self._report_drift(places, store)
        return places

    def _report_drift(self, live_places: List[CanonicalPlace], store: GazetteerStore) -> None:
        for live in live_places:
            cached = store.get_place(live.place_id)
            if cached is None:
                continue
            diffs = describe_drift(cached, live)
            if diffs:
                logger.warning(
                    "Gazetteer drift for place %s in snapshot %s (%s); keeping snapshot value for this batch",
                    live.place_id,
                    store.version,
                    "; ".join(diffs),
                )
