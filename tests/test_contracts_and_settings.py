import pytest
from pydantic import ValidationError

from geodisambig.api.schemas import MentionPayload, ResultPayload, parse_mentions, results_to_payloads
from geodisambig.domain.models import BoundingBox, CanonicalPlace, Mention, PlaceKind
from geodisambig.services.disambiguation import DisambiguationService
from geodisambig.settings import Settings, load_settings

from conftest import PARIS_FR, PARIS_TX, TEXAS


class TestMentionPayload:
    def test_accepts_camel_and_snake_case(self):
        mentions = parse_mentions(
            [
                {"text": "Paris", "articleId": "a1", "offset": 0},
                {"text": "Texas", "article_id": "a1", "offset": 7, "precedingText": "Paris, ", "publisher": "ap"},
            ]
        )
        assert mentions == [
            Mention("Paris", "a1", 0),
            Mention("Texas", "a1", 7, preceding_text="Paris, ", publisher="ap"),
        ]

    def test_rejects_missing_fields_and_negative_offsets(self):
        with pytest.raises(ValidationError):
            MentionPayload.model_validate({"text": "Paris", "offset": 0})
        with pytest.raises(ValidationError):
            MentionPayload.model_validate({"text": "Paris", "articleId": "a1", "offset": -1})

    def test_blank_text_is_left_to_the_engine(self):
        (mention,) = parse_mentions([{"text": " ", "articleId": "a1", "offset": 3}])
        assert mention.is_malformed


class TestResultPayload:
    def test_dumps_camel_case(self, store, settings):
        mentions = parse_mentions(
            [
                {"text": "Paris", "articleId": "a1", "offset": 0},
                {"text": "Texas", "articleId": "a1", "offset": 7, "precedingText": "Paris, "},
            ]
        )
        paris, _ = results_to_payloads(DisambiguationService(store, settings).disambiguate(mentions))
        assert paris["articleId"] == "a1"
        assert paris["status"] == "resolved"
        assert paris["resolvedPlaceId"] == PARIS_TX
        assert paris["snapshotVersion"] == "v1"
        assert paris["degraded"] is False
        assert paris["alternates"][0]["placeId"] == PARIS_FR
        assert paris["alternates"][0]["matchTier"] == "exact"
        assert {"factor", "contribution"} == set(paris["explanation"][0])
        (reason,) = paris["coherence"]
        assert set(reason) == {"mention", "offset", "placeId", "relation", "bonus", "distanceKm"}
        assert reason["placeId"] == TEXAS
        assert reason["relation"] == "containment"

    def test_from_result_matches_domain_dict(self, store, settings):
        (result,) = DisambiguationService(store, settings).disambiguate([Mention("Paris", "a1", 0)])
        payload = ResultPayload.from_result(result)
        assert payload.confidence == result.to_dict()["confidence"]
        assert payload.resolved_place_id == PARIS_FR


class TestSettings:
    def test_defaults(self):
        s = Settings()
        assert s.CANDIDATE_LIMIT == 20
        assert s.RESOLVE_THRESHOLD == 0.4
        assert s.ARTICLE_DEADLINE_MS == 100.0
        assert s.FALLBACK_MODE == "disabled"
        assert not s.fallback_enabled

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("GEODISAMBIG_RESOLVE_THRESHOLD", "0.6")
        monkeypatch.setenv("GEODISAMBIG_WORKER_COUNT", "8")
        monkeypatch.setenv("GEODISAMBIG_FALLBACK_MODE", "Background")
        monkeypatch.setenv("GEODISAMBIG_AUTHORITATIVE_DB_URL", "postgresql://gazetteer")
        monkeypatch.setenv("GEODISAMBIG_LOG_DRIFT", "no")
        s = Settings()
        assert s.RESOLVE_THRESHOLD == 0.6
        assert s.WORKER_COUNT == 8
        assert s.fallback_enabled
        assert s.LOG_DRIFT is False

    def test_with_overrides_copies_and_validates(self):
        base = Settings()
        tuned = base.with_overrides(MAX_ALTERNATES=2)
        assert tuned.MAX_ALTERNATES == 2
        assert base.MAX_ALTERNATES == 5
        with pytest.raises(AttributeError):
            base.with_overrides(NOT_A_SETTING=1)

    def test_load_settings_reads_env_file(self, tmp_path, monkeypatch):
        # Registers cleanup so the value loaded from the file does not leak
        monkeypatch.setenv("GEODISAMBIG_MAX_ALTERNATES", "")
        monkeypatch.delenv("GEODISAMBIG_MAX_ALTERNATES")
        env_file = tmp_path / ".env"
        env_file.write_text("GEODISAMBIG_MAX_ALTERNATES=3\n")
        assert load_settings(str(env_file)).MAX_ALTERNATES == 3


class TestModels:
    def test_unknown_kind_parses_as_other(self):
        assert PlaceKind.parse("hamlet") == PlaceKind.OTHER
        assert PlaceKind.parse("city") == PlaceKind.CITY

    def test_bounding_box_across_antimeridian(self):
        fiji = BoundingBox(-21.0, 177.0, -12.0, -178.0)
        assert fiji.contains(-17.7, 178.0)
        assert fiji.contains(-17.7, -179.5)
        assert not fiji.contains(-17.7, 170.0)

    def test_canonical_place_dict_roundtrip(self):
        place = CanonicalPlace(3, "Paris", PlaceKind.CITY, 48.85, 2.35, 2_100_000, (1, 2, 3),
                               external_ids={"wikidata": "Q90"}, aliases=frozenset({"Paname"}),
                               boundary=BoundingBox(48.81, 2.22, 48.90, 2.47), country_code="FR")
        data = place.to_dict()
        assert data["bbox"] == [48.81, 2.22, 48.90, 2.47]
        assert CanonicalPlace.from_dict(data) == place

    def test_canonical_place_without_boundary(self):
        place = CanonicalPlace(9, "Canada", PlaceKind.COUNTRY, 56.1, -106.3)
        assert place.to_dict()["bbox"] is None
        assert CanonicalPlace.from_dict(place.to_dict()).boundary is None
