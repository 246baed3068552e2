"""
Versioned gazetteer snapshots on local disk.

Layout of a snapshot directory:
    CURRENT                         - text file naming the active snapshot file
    gazetteer-<version>.sqlite      - immutable, fully written snapshots

Writers build a new file under a temporary name and publish it with
os.replace() for both the file and the CURRENT pointer, so a reader either
sees the previous version or the new one, never a partial file.
"""
from __future__ import annotations

import json
import logging
import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional

from geodisambig.domain.errors import GazetteerUnavailable
from geodisambig.domain.models import CanonicalPlace
from geodisambig.domain.names import normalize_name

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
CURRENT_POINTER = "CURRENT"
SNAPSHOT_PREFIX = "gazetteer-"
SNAPSHOT_SUFFIX = ".sqlite"

SNAPSHOT_SCHEMA = (
    """
    CREATE TABLE snapshot_meta (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE places (
        id INTEGER PRIMARY KEY,
        canonical_name TEXT NOT NULL,
        normalized_name TEXT NOT NULL,
        kind TEXT NOT NULL,
        lat REAL NOT NULL,
        lon REAL NOT NULL,
        population INTEGER,
        country_code TEXT,
        external_ids_json TEXT NOT NULL DEFAULT '{}',
        min_lat REAL,
        min_lon REAL,
        max_lat REAL,
        max_lon REAL
    )
    """,
    """
    CREATE TABLE place_aliases (
        place_id INTEGER NOT NULL REFERENCES places(id),
        alias TEXT NOT NULL,
        normalized_alias TEXT NOT NULL,
        PRIMARY KEY (place_id, normalized_alias)
    )
    """,
    """
    CREATE TABLE place_hierarchy (
        child_id INTEGER PRIMARY KEY REFERENCES places(id),
        parent_id INTEGER NOT NULL REFERENCES places(id)
    )
    """,
    "CREATE INDEX idx_places_normalized ON places(normalized_name)",
    "CREATE INDEX idx_aliases_normalized ON place_aliases(normalized_alias)",
)


@dataclass(frozen=True)
class SnapshotHandle:
    """A specific, immutable snapshot file."""
    version: str
    path: Path


def make_version(now: Optional[datetime] = None) -> str:
    """UTC timestamp version string, sortable lexicographically."""
    now = now or datetime.now(timezone.utc)
    return now.strftime("%Y%m%dT%H%M%S%fZ")


def snapshot_filename(version: str) -> str:
    return f"{SNAPSHOT_PREFIX}{version}{SNAPSHOT_SUFFIX}"


def write_snapshot(path: Path | str, places: Iterable[CanonicalPlace], version: str) -> Path:
    """
    Write places into a fresh SQLite snapshot file at `path`.

    The hierarchy table is derived from each place's admin_path (the entry
    before the place itself is its parent).
    """
    path = Path(path)
    if path.exists():
        path.unlink()
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    try:
        for ddl in SNAPSHOT_SCHEMA:
            conn.execute(ddl)
        conn.executemany(
            "INSERT INTO snapshot_meta (key, value) VALUES (?, ?)",
            [("version", version), ("schema_version", str(SCHEMA_VERSION))],
        )
        count = 0
        for place in sorted(places, key=lambda p: p.place_id):
            bbox = place.boundary
            conn.execute(
                """
                INSERT INTO places
                (id, canonical_name, normalized_name, kind, lat, lon, population,
                 country_code, external_ids_json, min_lat, min_lon, max_lat, max_lon)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    place.place_id,
                    place.canonical_name,
                    normalize_name(place.canonical_name),
                    place.kind.value,
                    place.lat,
                    place.lon,
                    place.population,
                    place.country_code,
                    json.dumps(place.external_ids, sort_keys=True),
                    bbox.min_lat if bbox else None,
                    bbox.min_lon if bbox else None,
                    bbox.max_lat if bbox else None,
                    bbox.max_lon if bbox else None,
                ),
            )
            seen_aliases = set()
            for alias in sorted(place.aliases):
                key = normalize_name(alias)
                if not key or key in seen_aliases:
                    continue
                seen_aliases.add(key)
                conn.execute(
                    "INSERT INTO place_aliases (place_id, alias, normalized_alias) VALUES (?, ?, ?)",
                    (place.place_id, alias, key),
                )
            if place.parent_id is not None:
                conn.execute(
                    "INSERT INTO place_hierarchy (child_id, parent_id) VALUES (?, ?)",
                    (place.place_id, place.parent_id),
                )
            count += 1
        conn.commit()
    finally:
        conn.close()
    logger.info("Wrote snapshot %s with %d places to %s", version, count, path)
    return path


def _write_pointer(snapshot_dir: Path, filename: str) -> None:
    tmp = snapshot_dir / f"{CURRENT_POINTER}.tmp-{os.getpid()}"
    with open(tmp, "w", encoding="utf-8") as fh:
        fh.write(filename + "\n")
        fh.flush()
        os.fsync(fh.fileno())
    os.replace(tmp, snapshot_dir / CURRENT_POINTER)


def publish_snapshot(snapshot_dir: Path | str, built_path: Path | str, version: str) -> SnapshotHandle:
    """Move a fully written snapshot into place and flip the CURRENT pointer."""
    snapshot_dir = Path(snapshot_dir)
    snapshot_dir.mkdir(parents=True, exist_ok=True)
    target = snapshot_dir / snapshot_filename(version)
    os.replace(built_path, target)
    _write_pointer(snapshot_dir, target.name)
    logger.info("Published snapshot %s", version)
    return SnapshotHandle(version=version, path=target)


def build_and_publish(
    snapshot_dir: Path | str,
    places: Iterable[CanonicalPlace],
    version: Optional[str] = None,
) -> SnapshotHandle:
    """Write a snapshot next to its final location, then publish it atomically."""
    snapshot_dir = Path(snapshot_dir)
    version = version or make_version()
    building = snapshot_dir / f".building-{version}{SNAPSHOT_SUFFIX}"
    write_snapshot(building, places, version)
    return publish_snapshot(snapshot_dir, building, version)


def resolve_current_snapshot(snapshot_dir: Path | str) -> SnapshotHandle:
    """Read the CURRENT pointer. Raises GazetteerUnavailable if it leads nowhere."""
    snapshot_dir = Path(snapshot_dir)
    pointer = snapshot_dir / CURRENT_POINTER
    try:
        filename = pointer.read_text(encoding="utf-8").strip()
    except OSError as exc:
        raise GazetteerUnavailable(f"no snapshot pointer: {exc.strerror or exc}", str(pointer)) from exc
    if not filename:
        raise GazetteerUnavailable("snapshot pointer is empty", str(pointer))
    path = snapshot_dir / filename
    if not path.is_file():
        raise GazetteerUnavailable("snapshot file missing", str(path))
    version = filename
    if filename.startswith(SNAPSHOT_PREFIX) and filename.endswith(SNAPSHOT_SUFFIX):
        version = filename[len(SNAPSHOT_PREFIX):-len(SNAPSHOT_SUFFIX)]
    return SnapshotHandle(version=version, path=path)


def list_versions(snapshot_dir: Path | str) -> List[str]:
    """All published versions in the directory, oldest first."""
    snapshot_dir = Path(snapshot_dir)
    if not snapshot_dir.is_dir():
        return []
    versions = []
    for entry in snapshot_dir.iterdir():
        name = entry.name
        if name.startswith(SNAPSHOT_PREFIX) and name.endswith(SNAPSHOT_SUFFIX):
            versions.append(name[len(SNAPSHOT_PREFIX):-len(SNAPSHOT_SUFFIX)])
    return sorted(versions)


def prune_snapshots(snapshot_dir: Path | str, keep: int = 3) -> List[str]:
    """
    Delete all but the newest `keep` snapshots. The active one is never deleted.

    Stores already bound to a pruned version keep working: they hold the
    data in memory.
    """
    snapshot_dir = Path(snapshot_dir)
    try:
        active = resolve_current_snapshot(snapshot_dir).version
    except GazetteerUnavailable:
        active = None
    versions = list_versions(snapshot_dir)
    doomed = [v for v in versions[: max(0, len(versions) - keep)] if v != active]
    for version in doomed:
        (snapshot_dir / snapshot_filename(version)).unlink(missing_ok=True)
        logger.info("Pruned snapshot %s", version)
    return doomed
