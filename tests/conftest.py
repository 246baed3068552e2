from typing import List

import pytest

from geodisambig.domain.models import BoundingBox, CanonicalPlace, PlaceKind
from geodisambig.services.gazetteer_store import SnapshotGazetteerStore
from geodisambig.services.snapshot import build_and_publish
from geodisambig.settings import Settings

FRANCE = 1
ILE_DE_FRANCE = 2
PARIS_FR = 3
USA = 4
TEXAS = 5
PARIS_TX = 6
UK = 7
LONDON_UK = 8
CANADA = 9
ONTARIO = 10
LONDON_ON = 11
ILLINOIS = 12
SPRINGFIELD_IL = 13
SPRINGFIELD_MO = 14


def sample_places() -> List[CanonicalPlace]:
    return [
        CanonicalPlace(FRANCE, "France", PlaceKind.COUNTRY, 46.6, 2.4, 67_000_000, (FRANCE,),
                       external_ids={"wikidata": "Q142"}, country_code="FR"),
        CanonicalPlace(ILE_DE_FRANCE, "Île-de-France", PlaceKind.ADMIN1, 48.7, 2.5, 12_000_000,
                       (FRANCE, ILE_DE_FRANCE), country_code="FR"),
        CanonicalPlace(PARIS_FR, "Paris", PlaceKind.CITY, 48.8566, 2.3522, 2_100_000,
                       (FRANCE, ILE_DE_FRANCE, PARIS_FR), aliases=frozenset({"Paname", "Lutetia"}),
                       external_ids={"wikidata": "Q90"}, country_code="FR"),
        CanonicalPlace(USA, "United States", PlaceKind.COUNTRY, 39.8, -98.6, 331_000_000, (USA,),
                       aliases=frozenset({"USA", "United States of America"}), country_code="US"),
        CanonicalPlace(TEXAS, "Texas", PlaceKind.ADMIN1, 31.0, -99.9, 29_000_000, (USA, TEXAS),
                       boundary=BoundingBox(25.8, -106.7, 36.5, -93.5), country_code="US"),
        CanonicalPlace(PARIS_TX, "Paris", PlaceKind.CITY, 33.66, -95.55, 25_000,
                       (USA, TEXAS, PARIS_TX), country_code="US"),
        CanonicalPlace(UK, "United Kingdom", PlaceKind.COUNTRY, 55.4, -3.4, 67_000_000, (UK,),
                       aliases=frozenset({"UK", "Britain"}), country_code="GB"),
        CanonicalPlace(LONDON_UK, "London", PlaceKind.CITY, 51.5074, -0.1278, 8_900_000,
                       (UK, LONDON_UK), country_code="GB"),
        CanonicalPlace(CANADA, "Canada", PlaceKind.COUNTRY, 56.1, -106.3, 38_000_000, (CANADA,),
                       country_code="CA"),
        CanonicalPlace(ONTARIO, "Ontario", PlaceKind.ADMIN1, 50.0, -85.0, 14_000_000,
                       (CANADA, ONTARIO), country_code="CA"),
        CanonicalPlace(LONDON_ON, "London", PlaceKind.CITY, 42.9849, -81.2453, 400_000,
                       (CANADA, ONTARIO, LONDON_ON), country_code="CA"),
        CanonicalPlace(ILLINOIS, "Illinois", PlaceKind.ADMIN1, 40.0, -89.0, 12_600_000,
                       (USA, ILLINOIS), country_code="US"),
        CanonicalPlace(SPRINGFIELD_IL, "Springfield", PlaceKind.CITY, 39.78, -89.65, None,
                       (USA, ILLINOIS, SPRINGFIELD_IL), country_code="US"),
        CanonicalPlace(SPRINGFIELD_MO, "Springfield", PlaceKind.CITY, 37.2, -93.3, None,
                       (USA, SPRINGFIELD_MO), country_code="US"),
    ]


@pytest.fixture
def places() -> List[CanonicalPlace]:
    return sample_places()


@pytest.fixture
def snapshot_dir(tmp_path, places):
    directory = tmp_path / "snapshots"
    build_and_publish(directory, places, version="v1")
    return directory


@pytest.fixture
def settings(snapshot_dir) -> Settings:
    return Settings().with_overrides(SNAPSHOT_DIR=str(snapshot_dir))


@pytest.fixture
def store(snapshot_dir, settings) -> SnapshotGazetteerStore:
    return SnapshotGazetteerStore.open_current(snapshot_dir, settings)
