"""
Offline de-duplication of raw gazetteer records before a snapshot build.

Records from several sources (Wikidata, GeoNames, OSM, crawls, backfill)
describe the same place many times. PlaceArena assigns every record a
stable integer id in arrival order and merges a record into an existing
place when one of these matches, tried in order:

1. a shared external id (wikidata, geonames, osm, then any other source)
2. same normalized name (or alias), kind and country code; when both sides
   have coordinates they must also lie within DEDUP_PROXIMITY_KM
3. same kind and country code with coordinates within DEDUP_PROXIMITY_KM

The survivor of a merge is the record with the better quality score. The
loser keeps its id with merged_into set; ids are never reused.
"""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from geodisambig.domain.models import BoundingBox, CanonicalPlace, PlaceKind
from geodisambig.domain.names import normalize_name
from geodisambig.services.geo import compute_centroid, haversine_km

logger = logging.getLogger(__name__)

EXTERNAL_ID_PRIORITY = ("wikidata", "geonames", "osm")

# Higher is more trusted when choosing a merge survivor.
SOURCE_RANK = {
    "wikidata": 4,
    "geonames": 3,
    "osm": 2,
    "backfill": 1,
}

STRATEGY_EXTERNAL_ID = "external_id"
STRATEGY_NAME = "name_kind_country"
STRATEGY_PROXIMITY = "proximity"


@dataclass
class RawPlaceRecord:
    """One place as delivered by an ingestion source."""
    key: str
    name: str
    kind: str
    lat: Optional[float] = None
    lon: Optional[float] = None
    population: Optional[int] = None
    country_code: Optional[str] = None
    external_ids: Dict[str, str] = field(default_factory=dict)
    aliases: List[str] = field(default_factory=list)
    parent_key: Optional[str] = None
    source: str = "unknown"
    boundary: Optional[BoundingBox] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RawPlaceRecord":
        bbox = data.get("bbox")
        lat = data.get("lat")
        lon = data.get("lon", data.get("lng"))
        population = data.get("population")
        name = str(data["name"])
        if not name.strip():
            raise ValueError("empty place name")
        return cls(
            key=str(data["key"] if "key" in data else data["id"]),
            name=name,
            kind=str(data.get("kind") or PlaceKind.OTHER.value),
            lat=float(lat) if lat is not None else None,
            lon=float(lon) if lon is not None else None,
            population=int(population) if population is not None else None,
            country_code=(data.get("country_code") or None),
            external_ids={str(k): str(v) for k, v in (data.get("external_ids") or {}).items()},
            aliases=list(data.get("aliases") or []),
            parent_key=str(data["parent"]) if data.get("parent") is not None else None,
            source=data.get("source") or "unknown",
            boundary=BoundingBox(*bbox) if bbox else None,
        )

    @classmethod
    def from_place(cls, place: CanonicalPlace, source: str = "backfill") -> "RawPlaceRecord":
        """Wrap a CanonicalPlace (e.g. from the backfill cache) as a raw record."""
        parent = place.parent_id
        return cls(
            key=f"place:{place.place_id}",
            name=place.canonical_name,
            kind=place.kind.value,
            lat=place.lat,
            lon=place.lon,
            population=place.population,
            country_code=place.country_code,
            external_ids=dict(place.external_ids),
            aliases=sorted(place.aliases),
            parent_key=f"place:{parent}" if parent is not None else None,
            source=source,
            boundary=place.boundary,
        )

    @property
    def has_coordinates(self) -> bool:
        return self.lat is not None and self.lon is not None


@dataclass
class ArenaEntry:
    place_id: int
    record: RawPlaceRecord
    aliases: Set[str] = field(default_factory=set)
    merged_into: Optional[int] = None
    merge_strategy: Optional[str] = None

    def quality(self) -> Tuple:
        rec = self.record
        return (
            1 if "wikidata" in rec.external_ids else 0,
            rec.population if rec.population is not None else -1,
            len(self.aliases),
            SOURCE_RANK.get(rec.source, 0),
            -self.place_id,
        )


class PlaceArena:
    def __init__(self, proximity_km: float = 5.0):
        self.proximity_km = proximity_km
        self._entries: Dict[int, ArenaEntry] = {}
        self._next_id = 1
        self._keys: Dict[str, int] = {}
        self._by_external: Dict[Tuple[str, str], int] = {}
        self._by_name: Dict[Tuple[str, str, str], List[int]] = {}
        self._by_bucket: Dict[Tuple[str, str], List[int]] = {}
        self.merge_counts: Counter = Counter()

    def __len__(self) -> int:
        return sum(1 for e in self._entries.values() if e.merged_into is None)

    def entry(self, place_id: int) -> ArenaEntry:
        return self._entries[place_id]

    def resolve(self, place_id: int) -> int:
        """Follow merged_into links to the surviving id."""
        seen = set()
        while self._entries[place_id].merged_into is not None:
            if place_id in seen:
                raise ValueError(f"merge chain loops at place {place_id}")
            seen.add(place_id)
            place_id = self._entries[place_id].merged_into
        return place_id

    def id_for_key(self, key: str) -> Optional[int]:
        place_id = self._keys.get(key)
        return self.resolve(place_id) if place_id is not None else None

    # -- ingestion ---------------------------------------------------------

    def add_all(self, records: Iterable[RawPlaceRecord]) -> int:
        count = 0
        for record in records:
            self.add(record)
            count += 1
        return count

    def add(self, record: RawPlaceRecord) -> int:
        """Insert a record and return the id of the place that now represents it."""
        if not normalize_name(record.name):
            raise ValueError(f"record {record.key!r} has an empty name")
        place_id = self._next_id
        self._next_id += 1
        entry = ArenaEntry(place_id=place_id, record=record, aliases=set(record.aliases))
        self._entries[place_id] = entry
        if record.key in self._keys:
            logger.debug("Duplicate record key %r; newer record shadows older", record.key)
        self._keys[record.key] = place_id

        match = self.find_existing(record)
        if match is None:
            self._index(entry)
            return place_id
        existing_id, strategy = match
        return self._merge(existing_id, place_id, strategy)

    def find_existing(self, record: RawPlaceRecord) -> Optional[Tuple[int, str]]:
        external = self._match_external_id(record)
        if external is not None:
            return external, STRATEGY_EXTERNAL_ID
        by_name = self._match_name(record)
        if by_name is not None:
            return by_name, STRATEGY_NAME
        nearby = self._match_proximity(record)
        if nearby is not None:
            return nearby, STRATEGY_PROXIMITY
        return None

    def _match_external_id(self, record: RawPlaceRecord) -> Optional[int]:
        ordered = [s for s in EXTERNAL_ID_PRIORITY if s in record.external_ids]
        ordered += sorted(s for s in record.external_ids if s not in EXTERNAL_ID_PRIORITY)
        for source in ordered:
            hit = self._by_external.get((source, record.external_ids[source]))
            if hit is not None:
                return self.resolve(hit)
        return None

    def _match_name(self, record: RawPlaceRecord) -> Optional[int]:
        if not record.country_code:
            return None
        key = (normalize_name(record.name), record.kind, record.country_code.upper())
        for candidate_id in self._by_name.get(key, ()):
            candidate = self._entries[self.resolve(candidate_id)]
            other = candidate.record
            if record.has_coordinates and other.has_coordinates:
                if haversine_km(record.lat, record.lon, other.lat, other.lon) > self.proximity_km:
                    # Same name, different place (e.g. two Springfields in one state)
                    continue
            return candidate.place_id
        return None

    def _match_proximity(self, record: RawPlaceRecord) -> Optional[int]:
        if not record.has_coordinates or not record.country_code:
            return None
        best: Optional[Tuple[float, int]] = None
        for candidate_id in self._by_bucket.get((record.kind, record.country_code.upper()), ()):
            candidate = self._entries[candidate_id]
            if candidate.merged_into is not None:
                continue
            other = candidate.record
            distance = haversine_km(record.lat, record.lon, other.lat, other.lon)
            if distance <= self.proximity_km and (best is None or (distance, candidate_id) < best):
                best = (distance, candidate_id)
        return best[1] if best else None

    def _index(self, entry: ArenaEntry) -> None:
        rec = entry.record
        for source, value in rec.external_ids.items():
            self._by_external.setdefault((source, value), entry.place_id)
        if rec.country_code:
            cc = rec.country_code.upper()
            names = {normalize_name(rec.name)} | {normalize_name(a) for a in entry.aliases}
            for name in sorted(n for n in names if n):
                ids = self._by_name.setdefault((name, rec.kind, cc), [])
                if entry.place_id not in ids:
                    ids.append(entry.place_id)
            if rec.has_coordinates:
                bucket = self._by_bucket.setdefault((rec.kind, cc), [])
                if entry.place_id not in bucket:
                    bucket.append(entry.place_id)

    def _merge(self, existing_id: int, new_id: int, strategy: str) -> int:
        existing = self._entries[existing_id]
        incoming = self._entries[new_id]
        if incoming.quality() > existing.quality():
            survivor, loser = incoming, existing
        else:
            survivor, loser = existing, incoming

        kept, dropped = survivor.record, loser.record
        survivor.aliases |= loser.aliases
        if normalize_name(dropped.name) != normalize_name(kept.name):
            survivor.aliases.add(dropped.name)
        for source, value in dropped.external_ids.items():
            kept.external_ids.setdefault(source, value)
        if kept.population is None:
            kept.population = dropped.population
        if not kept.has_coordinates and dropped.has_coordinates:
            kept.lat, kept.lon = dropped.lat, dropped.lon
        if kept.boundary is None:
            kept.boundary = dropped.boundary
        if kept.parent_key is None:
            kept.parent_key = dropped.parent_key
        if kept.country_code is None:
            kept.country_code = dropped.country_code

        loser.merged_into = survivor.place_id
        loser.merge_strategy = strategy
        # Rewrite external-id edges that pointed at the loser
        for ext_key, owner in list(self._by_external.items()):
            if owner == loser.place_id:
                self._by_external[ext_key] = survivor.place_id
        self._index(survivor)
        self.merge_counts[strategy] += 1
        logger.debug(
            "Merged place %s into %s via %s (%r)",
            loser.place_id,
            survivor.place_id,
            strategy,
            kept.name,
        )
        return survivor.place_id

    # -- output ------------------------------------------------------------

    def _coordinates(self, alive: Dict[int, ArenaEntry], parents: Dict[int, int]) -> Dict[int, Tuple[float, float]]:
        coords: Dict[int, Tuple[float, float]] = {}
        for pid, entry in alive.items():
            rec = entry.record
            if rec.has_coordinates:
                coords[pid] = (rec.lat, rec.lon)
            elif rec.boundary is not None:
                b = rec.boundary
                coords[pid] = ((b.min_lat + b.max_lat) / 2.0, (b.min_lon + b.max_lon) / 2.0)
        # Containers without a point of their own sit at the centroid of their children
        for pid in sorted(alive):
            if pid in coords:
                continue
            children = [coords[c] for c, p in parents.items() if p == pid and c in coords]
            centroid = compute_centroid(children)
            if centroid is not None:
                coords[pid] = centroid
        return coords

    def canonical_places(self) -> List[CanonicalPlace]:
        """Surviving places with merge-resolved, acyclic admin paths, ordered by id."""
        alive = {pid: e for pid, e in self._entries.items() if e.merged_into is None}

        parents: Dict[int, int] = {}
        for pid, entry in alive.items():
            if entry.record.parent_key is None:
                continue
            parent = self.id_for_key(entry.record.parent_key)
            if parent is None:
                logger.debug("Place %s references unknown parent %r", pid, entry.record.parent_key)
                continue
            if parent != pid:
                parents[pid] = parent

        coords = self._coordinates(alive, parents)
        for pid in sorted(set(alive) - set(coords)):
            logger.warning("Skipping place %s (%r): no coordinates", pid, alive[pid].record.name)
        parents = {c: p for c, p in parents.items() if c in coords and p in coords}

        paths: Dict[int, Tuple[int, ...]] = {}
        for pid in sorted(coords):
            chain: List[int] = []
            seen: Set[int] = set()
            current: Optional[int] = pid
            while current is not None and current not in paths:
                if current in seen:
                    logger.warning("Dropping cyclic parent edge %s -> %s", chain[-1], current)
                    parents.pop(chain[-1], None)
                    current = None
                    break
                seen.add(current)
                chain.append(current)
                current = parents.get(current)
            prefix = paths[current] if current is not None else ()
            for node in reversed(chain):
                prefix = prefix + (node,)
                paths[node] = prefix

        places: List[CanonicalPlace] = []
        for pid in sorted(coords):
            entry = alive[pid]
            rec = entry.record
            own = normalize_name(rec.name)
            aliases = frozenset(a for a in entry.aliases if normalize_name(a) and normalize_name(a) != own)
            lat, lon = coords[pid]
            places.append(
                CanonicalPlace(
                    place_id=pid,
                    canonical_name=rec.name,
                    kind=PlaceKind.parse(rec.kind),
                    lat=lat,
                    lon=lon,
                    population=rec.population,
                    admin_path=paths[pid],
                    external_ids=dict(rec.external_ids),
                    aliases=aliases,
                    boundary=rec.boundary,
                    country_code=rec.country_code.upper() if rec.country_code else None,
                )
            )
        return places
