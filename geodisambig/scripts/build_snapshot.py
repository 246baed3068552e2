"""Build a de-duplicated gazetteer snapshot from JSONL place records and publish it.

Usage:
    python -m geodisambig.scripts.build_snapshot places.jsonl [more.jsonl ...]

Each input line is one raw record, e.g.:

    {"key": "wd:Q90", "name": "Paris", "kind": "city", "lat": 48.8566, "lon": 2.3522,
     "population": 2148000, "country_code": "FR", "external_ids": {"wikidata": "Q90"},
     "aliases": ["Paname"], "parent": "wd:Q13917", "source": "wikidata"}

Rows parked in the backfill cache by the authoritative-source worker can be
merged in with --include-backfill. The new snapshot is written next to the
published ones and becomes current with an atomic pointer swap; batches
already running keep their bound version.
"""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Iterator, List, Optional

from geodisambig.services.backfill import BackfillCache
from geodisambig.services.dedup import PlaceArena, RawPlaceRecord
from geodisambig.services.snapshot import build_and_publish, prune_snapshots
from geodisambig.settings import load_settings

LOG = logging.getLogger("build_snapshot")


def read_records(path: Path) -> Iterator[RawPlaceRecord]:
    with open(path, "r", encoding="utf-8") as fh:
        for lineno, line in enumerate(fh, start=1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            try:
                yield RawPlaceRecord.from_dict(json.loads(line))
            except (ValueError, KeyError, TypeError) as exc:
                LOG.warning("%s:%d: skipping bad record (%s)", path, lineno, exc)


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    parser = argparse.ArgumentParser(description="Build and publish a gazetteer snapshot.")
    parser.add_argument("inputs", nargs="+", help="JSONL files of raw place records.")
    parser.add_argument("--env-file", default=None, help="Optional .env file to load settings from.")
    parser.add_argument("--snapshot-dir", default=None, help="Directory holding CURRENT and snapshot files.")
    parser.add_argument("--version", default=None, help="Snapshot version (defaults to a UTC timestamp).")
    parser.add_argument("--include-backfill", action="store_true", help="Merge rows from the backfill cache.")
    parser.add_argument("--backfill-cache", default=None, help="Backfill cache path (defaults to settings).")
    parser.add_argument("--proximity-km", type=float, default=None, help="Coordinate merge radius in km.")
    parser.add_argument("--keep", type=int, default=3, help="Number of snapshot versions to keep on disk.")
    args = parser.parse_args(argv)

    settings = load_settings(args.env_file)
    snapshot_dir = Path(args.snapshot_dir or settings.SNAPSHOT_DIR)
    proximity_km = args.proximity_km if args.proximity_km is not None else settings.DEDUP_PROXIMITY_KM

    arena = PlaceArena(proximity_km=proximity_km)
    total = 0
    for raw in args.inputs:
        path = Path(raw)
        if not path.is_file():
            LOG.error("Input not found: %s", path)
            return 2
        added = arena.add_all(read_records(path))
        LOG.info("Read %d record(s) from %s", added, path)
        total += added

    if args.include_backfill:
        cache = BackfillCache(args.backfill_cache or settings.BACKFILL_CACHE_PATH, settings.BACKFILL_CACHE_TTL_SECONDS)
        try:
            cached = cache.all_places()
        finally:
            cache.close()
        total += arena.add_all(RawPlaceRecord.from_place(p) for p in cached)
        LOG.info("Merged %d backfilled place(s)", len(cached))

    places = arena.canonical_places()
    if not places:
        LOG.error("No places survived de-duplication; refusing to publish an empty snapshot")
        return 1
    LOG.info(
        "De-duplicated %d record(s) into %d place(s) (%s)",
        total,
        len(places),
        ", ".join(f"{k}={v}" for k, v in sorted(arena.merge_counts.items())) or "no merges",
    )

    handle = build_and_publish(snapshot_dir, places, version=args.version)
    LOG.info("Snapshot %s is now current (%s)", handle.version, handle.path)
    pruned = prune_snapshots(snapshot_dir, keep=args.keep)
    if pruned:
        LOG.info("Pruned %d old snapshot(s)", len(pruned))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
