import math
import sqlite3

import pytest

from geodisambig.domain.errors import GazetteerUnavailable
from geodisambig.domain.models import CanonicalPlace, MatchTier, PlaceKind
from geodisambig.services.gazetteer_store import SnapshotGazetteerStore
from geodisambig.services.snapshot import (
    CURRENT_POINTER,
    build_and_publish,
    list_versions,
    prune_snapshots,
    resolve_current_snapshot,
    snapshot_filename,
    write_snapshot,
)

from conftest import (
    FRANCE,
    ILE_DE_FRANCE,
    LONDON_ON,
    LONDON_UK,
    PARIS_FR,
    PARIS_TX,
    TEXAS,
    USA,
)


class TestLookupTiers:
    def test_exact_match_returns_every_place_with_that_name(self, store):
        matches = store.lookup_by_name("paris")
        assert [m.place.place_id for m in matches] == [PARIS_FR, PARIS_TX]
        assert all(m.tier == MatchTier.EXACT for m in matches)
        assert all(m.similarity == 1.0 for m in matches)

    def test_alias_match(self, store):
        matches = store.lookup_by_name("paname")
        assert [m.place.place_id for m in matches] == [PARIS_FR]
        assert matches[0].tier == MatchTier.ALIAS

    def test_diacritics_fold_to_exact(self, store):
        matches = store.lookup_by_name("ile-de-france")
        assert [m.place.place_id for m in matches] == [ILE_DE_FRANCE]
        assert matches[0].tier == MatchTier.EXACT

    def test_fuzzy_match_when_nothing_exact(self, store):
        matches = store.lookup_by_name("londn")
        assert {m.place.place_id for m in matches} == {LONDON_UK, LONDON_ON}
        assert all(m.tier == MatchTier.FUZZY for m in matches)
        assert all(0.8 <= m.similarity < 1.0 for m in matches)

    def test_fuzzy_respects_threshold(self, store):
        assert store.lookup_by_name("lndn") == []
        assert store.lookup_by_name("atlantis") == []
        assert store.lookup_by_name("") == []

    def test_exact_tier_short_circuits_alias_tier(self, tmp_path):
        places = [
            CanonicalPlace(1, "Holland", PlaceKind.ADMIN1, 52.4, 4.9, 2_800_000, (2, 1), country_code="NL"),
            CanonicalPlace(2, "Netherlands", PlaceKind.COUNTRY, 52.1, 5.3, 17_500_000, (2,),
                           aliases=frozenset({"Holland"}), country_code="NL"),
        ]
        build_and_publish(tmp_path, places, version="nl")
        store = SnapshotGazetteerStore.open_current(tmp_path)
        matches = store.lookup_by_name("holland")
        assert [(m.place.place_id, m.tier) for m in matches] == [(1, MatchTier.EXACT)]


class TestHierarchyQueries:
    def test_admin_path_is_root_first(self, store):
        assert store.get_admin_path(PARIS_TX) == [USA, TEXAS, PARIS_TX]
        assert store.get_admin_path(999) == []

    def test_place_carries_admin_path_and_aliases(self, store):
        paris = store.get_place(PARIS_FR)
        assert paris.admin_path == (FRANCE, ILE_DE_FRANCE, PARIS_FR)
        assert paris.parent_id == ILE_DE_FRANCE
        assert paris.aliases == frozenset({"Paname", "Lutetia"})
        assert paris.external_ids == {"wikidata": "Q90"}

    def test_is_within_hierarchy(self, store):
        assert store.is_within(PARIS_TX, TEXAS)
        assert store.is_within(PARIS_TX, USA)
        assert not store.is_within(PARIS_FR, TEXAS)
        assert not store.is_within(TEXAS, PARIS_TX)
        assert not store.is_within(TEXAS, TEXAS)

    def test_is_within_boundary(self, tmp_path, places):
        # A place detached from Texas in the hierarchy but inside its box
        stray = CanonicalPlace(50, "Dallas", PlaceKind.CITY, 32.78, -96.8, 1_300_000, (50,), country_code="US")
        build_and_publish(tmp_path, places + [stray], version="b")
        store = SnapshotGazetteerStore.open_current(tmp_path)
        assert store.is_within(50, TEXAS)
        assert not store.is_within(50, USA)

    def test_distance_meters(self, store):
        assert store.distance_meters(PARIS_FR, PARIS_FR) == 0.0
        assert 330_000 < store.distance_meters(LONDON_UK, PARIS_FR) < 360_000
        assert math.isinf(store.distance_meters(PARIS_FR, 999))


class TestSnapshotLifecycle:
    def test_store_reports_bound_version(self, store):
        assert store.version == "v1"
        assert len(store) == 14

    def test_bound_store_is_pinned_across_swap(self, snapshot_dir, store, places):
        without_paris = [p for p in places if p.place_id != PARIS_FR]
        build_and_publish(snapshot_dir, without_paris, version="v2")

        assert [m.place.place_id for m in store.lookup_by_name("paris")] == [PARIS_FR, PARIS_TX]
        assert store.version == "v1"

        fresh = SnapshotGazetteerStore.open_current(snapshot_dir)
        assert fresh.version == "v2"
        assert [m.place.place_id for m in fresh.lookup_by_name("paris")] == [PARIS_TX]

    def test_pointer_names_published_file(self, snapshot_dir):
        handle = resolve_current_snapshot(snapshot_dir)
        assert handle.version == "v1"
        assert handle.path.name == snapshot_filename("v1")
        assert (snapshot_dir / CURRENT_POINTER).read_text().strip() == handle.path.name
        assert not list(snapshot_dir.glob(".building-*"))

    def test_prune_keeps_newest_and_active(self, snapshot_dir, places):
        for version in ("v2", "v3", "v4"):
            build_and_publish(snapshot_dir, places, version=version)
        pruned = prune_snapshots(snapshot_dir, keep=2)
        assert pruned == ["v1", "v2"]
        assert list_versions(snapshot_dir) == ["v3", "v4"]


class TestUnavailableSnapshot:
    def test_missing_pointer(self, tmp_path):
        with pytest.raises(GazetteerUnavailable):
            SnapshotGazetteerStore.open_current(tmp_path / "nowhere")

    def test_empty_pointer(self, tmp_path):
        (tmp_path / CURRENT_POINTER).write_text("\n")
        with pytest.raises(GazetteerUnavailable, match="empty"):
            resolve_current_snapshot(tmp_path)

    def test_pointer_to_missing_file(self, tmp_path):
        (tmp_path / CURRENT_POINTER).write_text(snapshot_filename("gone") + "\n")
        with pytest.raises(GazetteerUnavailable, match="missing"):
            resolve_current_snapshot(tmp_path)

    def test_corrupt_snapshot_file(self, tmp_path):
        (tmp_path / snapshot_filename("bad")).write_bytes(b"this is not sqlite at all" * 100)
        (tmp_path / CURRENT_POINTER).write_text(snapshot_filename("bad"))
        with pytest.raises(GazetteerUnavailable):
            SnapshotGazetteerStore.open_current(tmp_path)

    def test_wrong_schema_version(self, tmp_path, places):
        build_and_publish(tmp_path, places, version="old")
        path = resolve_current_snapshot(tmp_path).path
        conn = sqlite3.connect(str(path))
        conn.execute("UPDATE snapshot_meta SET value='99' WHERE key='schema_version'")
        conn.commit()
        conn.close()
        with pytest.raises(GazetteerUnavailable, match="schema"):
            SnapshotGazetteerStore.open_current(tmp_path)

    def test_cyclic_hierarchy_is_rejected(self, tmp_path):
        places = [
            CanonicalPlace(1, "Alpha", PlaceKind.ADMIN1, 1.0, 1.0, None, (2, 1)),
            CanonicalPlace(2, "Beta", PlaceKind.ADMIN1, 2.0, 2.0, None, (1, 2)),
        ]
        write_snapshot(tmp_path / snapshot_filename("cyc"), places, "cyc")
        (tmp_path / CURRENT_POINTER).write_text(snapshot_filename("cyc"))
        with pytest.raises(GazetteerUnavailable, match="cyclic"):
            SnapshotGazetteerStore.open_current(tmp_path)

    def _corrupt(self, tmp_path, places, statement):
        build_and_publish(tmp_path, places, version="bad-row")
        path = resolve_current_snapshot(tmp_path).path
        conn = sqlite3.connect(str(path))
        conn.execute(statement)
        conn.commit()
        conn.close()

    def test_undecodable_external_ids_are_rejected(self, tmp_path, places):
        self._corrupt(tmp_path, places, f"UPDATE places SET external_ids_json='{{oops' WHERE id={FRANCE}")
        with pytest.raises(GazetteerUnavailable, match="corrupt snapshot"):
            SnapshotGazetteerStore.open_current(tmp_path)

    def test_partial_bounding_box_is_rejected(self, tmp_path, places):
        self._corrupt(tmp_path, places, f"UPDATE places SET min_lon=NULL WHERE id={TEXAS}")
        with pytest.raises(GazetteerUnavailable, match="partial bounding box"):
            SnapshotGazetteerStore.open_current(tmp_path)
