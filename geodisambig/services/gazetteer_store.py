"""
Read-only gazetteer access bound to one snapshot version.

The snapshot is loaded once into immutable in-memory indexes when the store
is constructed. Every read after that is lock-free, so any number of worker
threads can share one store, and a newer snapshot published mid-batch is
never observed.
"""
from __future__ import annotations

import json
import logging
import math
import sqlite3
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from rapidfuzz import process
from rapidfuzz.distance import Levenshtein

from geodisambig.domain.errors import GazetteerUnavailable
from geodisambig.domain.models import BoundingBox, CanonicalPlace, MatchTier, PlaceKind
from geodisambig.services.geo import haversine_meters
from geodisambig.services.snapshot import SCHEMA_VERSION, SnapshotHandle, resolve_current_snapshot
from geodisambig.settings import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NameMatch:
    place: CanonicalPlace
    tier: MatchTier
    similarity: float


class GazetteerStore(ABC):
    """Query contract the disambiguation pipeline depends on."""

    @property
    @abstractmethod
    def version(self) -> str:
        ...

    @abstractmethod
    def lookup_by_name(self, normalized_text: str) -> List[NameMatch]:
        """Tiered lookup: exact, else alias, else fuzzy. Tiers are never merged."""

    @abstractmethod
    def get_place(self, place_id: int) -> Optional[CanonicalPlace]:
        ...

    @abstractmethod
    def get_admin_path(self, place_id: int) -> List[int]:
        """Ancestor chain root-first, ending with place_id. Empty for unknown ids."""

    @abstractmethod
    def is_within(self, place_id: int, candidate_place_id: int) -> bool:
        """Does the candidate's hierarchy or boundary contain the place?"""

    @abstractmethod
    def distance_meters(self, place_a: int, place_b: int) -> float:
        ...


def _build_admin_paths(parents: Dict[int, int], place_ids: Iterable[int]) -> Dict[int, Tuple[int, ...]]:
    """Walk child->parent edges. A cycle means the snapshot is corrupt."""
    paths: Dict[int, Tuple[int, ...]] = {}
    for place_id in place_ids:
        if place_id in paths:
            continue
        chain: List[int] = []
        seen = set()
        current: Optional[int] = place_id
        while current is not None and current not in paths:
            if current in seen:
                raise GazetteerUnavailable(f"cyclic admin hierarchy at place {current}")
            seen.add(current)
            chain.append(current)
            current = parents.get(current)
        # chain is self-first; prefix is a known root-first path (or empty)
        prefix = paths[current] if current is not None else ()
        for i in range(len(chain) - 1, -1, -1):
            prefix = prefix + (chain[i],)
            paths[chain[i]] = prefix
    return paths


class SnapshotGazetteerStore(GazetteerStore):
    """GazetteerStore over a local SQLite snapshot, pinned to one version."""

    def __init__(
        self,
        handle: SnapshotHandle,
        fuzzy_threshold: float = 0.8,
        fuzzy_max_results: int = 50,
    ):
        self.handle = handle
        self.fuzzy_threshold = fuzzy_threshold
        self.fuzzy_max_results = fuzzy_max_results
        self._places: Dict[int, CanonicalPlace] = {}
        self._by_name: Dict[str, Tuple[int, ...]] = {}
        self._by_alias: Dict[str, Tuple[int, ...]] = {}
        self._fuzzy_index: Dict[str, Tuple[int, ...]] = {}
        self._fuzzy_choices: List[str] = []
        self._load()

    @classmethod
    def open_current(cls, snapshot_dir: Path | str, settings: Optional[Settings] = None) -> "SnapshotGazetteerStore":
        """Bind to whatever CURRENT points at right now."""
        settings = settings or Settings()
        handle = resolve_current_snapshot(snapshot_dir)
        return cls(
            handle,
            fuzzy_threshold=settings.FUZZY_THRESHOLD,
            fuzzy_max_results=settings.FUZZY_MAX_RESULTS,
        )

    @property
    def version(self) -> str:
        return self.handle.version

    def __len__(self) -> int:
        return len(self._places)

    # -- loading -----------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        uri = f"{self.handle.path.resolve().as_uri()}?mode=ro"
        conn = sqlite3.connect(uri, uri=True)
        conn.row_factory = sqlite3.Row
        return conn

    def _load(self) -> None:
        path = str(self.handle.path)
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise GazetteerUnavailable(f"cannot open snapshot: {exc}", path) from exc
        try:
            meta = {row["key"]: row["value"] for row in conn.execute("SELECT key, value FROM snapshot_meta")}
            if meta.get("schema_version") != str(SCHEMA_VERSION):
                raise GazetteerUnavailable(
                    f"unsupported snapshot schema {meta.get('schema_version')!r}", path
                )
            place_rows = conn.execute("SELECT * FROM places ORDER BY id").fetchall()
            alias_rows = conn.execute(
                "SELECT place_id, alias, normalized_alias FROM place_aliases ORDER BY place_id, normalized_alias"
            ).fetchall()
            parents = {
                row["child_id"]: row["parent_id"]
                for row in conn.execute("SELECT child_id, parent_id FROM place_hierarchy")
            }
        except sqlite3.Error as exc:
            raise GazetteerUnavailable(f"corrupt snapshot: {exc}", path) from exc
        finally:
            conn.close()

        known_ids = [row["id"] for row in place_rows]
        known = set(known_ids)
        dangling = [child for child, parent in parents.items() if child not in known or parent not in known]
        if dangling:
            raise GazetteerUnavailable(f"hierarchy references unknown parents for {sorted(dangling)[:5]}", path)
        admin_paths = _build_admin_paths(parents, known_ids)

        aliases_by_place: Dict[int, List[str]] = {}
        alias_keys: Dict[str, List[int]] = {}
        for row in alias_rows:
            aliases_by_place.setdefault(row["place_id"], []).append(row["alias"])
            alias_keys.setdefault(row["normalized_alias"], []).append(row["place_id"])

        name_keys: Dict[str, List[int]] = {}
        for row in place_rows:
            try:
                place = self._place_from_row(row, admin_paths[row["id"]], aliases_by_place.get(row["id"], ()))
            except (ValueError, TypeError) as exc:
                raise GazetteerUnavailable(f"corrupt snapshot: place {row['id']}: {exc}", path) from exc
            self._places[place.place_id] = place
            name_keys.setdefault(row["normalized_name"], []).append(place.place_id)

        self._by_name = {k: tuple(sorted(set(v))) for k, v in name_keys.items()}
        self._by_alias = {k: tuple(sorted(set(v))) for k, v in alias_keys.items()}
        fuzzy: Dict[str, set] = {}
        for mapping in (self._by_name, self._by_alias):
            for key, ids in mapping.items():
                fuzzy.setdefault(key, set()).update(ids)
        self._fuzzy_index = {k: tuple(sorted(v)) for k, v in fuzzy.items()}
        self._fuzzy_choices = sorted(self._fuzzy_index)
        logger.info(
            "Bound gazetteer snapshot %s (%d places, %d names, %d aliases)",
            self.version,
            len(self._places),
            len(self._by_name),
            len(self._by_alias),
        )

    @staticmethod
    def _place_from_row(row: sqlite3.Row, admin_path: Tuple[int, ...], aliases: Iterable[str]) -> CanonicalPlace:
        """Raises ValueError or TypeError for rows that cannot be decoded."""
        corners = (row["min_lat"], row["min_lon"], row["max_lat"], row["max_lon"])
        boundary = None
        if any(c is not None for c in corners):
            if any(c is None for c in corners):
                raise ValueError("partial bounding box")
            boundary = BoundingBox(*(float(c) for c in corners))
        if row["lat"] is None or row["lon"] is None:
            raise ValueError("missing centroid")
        external_ids = json.loads(row["external_ids_json"] or "{}")
        if not isinstance(external_ids, dict):
            raise ValueError("external_ids_json is not an object")
        return CanonicalPlace(
            place_id=row["id"],
            canonical_name=row["canonical_name"],
            kind=PlaceKind.parse(row["kind"]),
            lat=float(row["lat"]),
            lon=float(row["lon"]),
            population=row["population"],
            admin_path=admin_path,
            external_ids=external_ids,
            aliases=frozenset(aliases),
            boundary=boundary,
            country_code=row["country_code"],
        )

    # -- queries -----------------------------------------------------------

    def lookup_by_name(self, normalized_text: str) -> List[NameMatch]:
        if not normalized_text:
            return []
        exact = self._by_name.get(normalized_text)
        if exact:
            return [NameMatch(self._places[pid], MatchTier.EXACT, 1.0) for pid in exact]
        alias = self._by_alias.get(normalized_text)
        if alias:
            return [NameMatch(self._places[pid], MatchTier.ALIAS, 1.0) for pid in alias]
        return self._lookup_fuzzy(normalized_text)

    def _lookup_fuzzy(self, normalized_text: str) -> List[NameMatch]:
        hits = process.extract(
            normalized_text,
            self._fuzzy_choices,
            scorer=Levenshtein.normalized_similarity,
            score_cutoff=self.fuzzy_threshold,
            limit=self.fuzzy_max_results,
        )
        best: Dict[int, float] = {}
        for choice, score, _ in hits:
            for pid in self._fuzzy_index[choice]:
                if score > best.get(pid, -1.0):
                    best[pid] = score
        ordered = sorted(best.items(), key=lambda item: (-item[1], item[0]))
        return [NameMatch(self._places[pid], MatchTier.FUZZY, float(score)) for pid, score in ordered]

    def get_place(self, place_id: int) -> Optional[CanonicalPlace]:
        return self._places.get(place_id)

    def get_admin_path(self, place_id: int) -> List[int]:
        place = self._places.get(place_id)
        return list(place.admin_path) if place else []

    def is_within(self, place_id: int, candidate_place_id: int) -> bool:
        if place_id == candidate_place_id:
            return False
        place = self._places.get(place_id)
        candidate = self._places.get(candidate_place_id)
        if place is None or candidate is None:
            return False
        if candidate_place_id in place.admin_path[:-1]:
            return True
        if candidate.boundary is not None:
            return candidate.boundary.contains(place.lat, place.lon)
        return False

    def distance_meters(self, place_a: int, place_b: int) -> float:
        a = self._places.get(place_a)
        b = self._places.get(place_b)
        if a is None or b is None:
            return math.inf
        return haversine_meters(a.lat, a.lon, b.lat, b.lon)
