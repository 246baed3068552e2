from unittest.mock import MagicMock

import pytest

from geodisambig.domain.models import MatchTier, Mention, PlaceKind
from geodisambig.services.candidate_generator import CandidateGenerator
from geodisambig.services.feature_extractor import (
    KIND_PRIOR,
    NAME_MATCH_QUALITY,
    POPULATION_SIGNAL,
    SOURCE_PRIOR,
    FeatureExtractor,
    detect_kind_cue,
)

from conftest import LONDON_ON, LONDON_UK, PARIS_FR, PARIS_TX, SPRINGFIELD_IL, SPRINGFIELD_MO, TEXAS


def _mention(text, offset=0, preceding_text=None, publisher=None):
    return Mention(text=text, article_id="a1", offset=offset, preceding_text=preceding_text, publisher=publisher)


class TestCandidateGenerator:
    def test_orders_by_population_within_tier(self, store):
        candidates = CandidateGenerator(store).generate(_mention("Paris"))
        assert [c.place_id for c in candidates] == [PARIS_FR, PARIS_TX]
        assert all(c.match_tier == MatchTier.EXACT for c in candidates)

    def test_unknown_population_breaks_ties_by_place_id(self, store):
        candidates = CandidateGenerator(store).generate(_mention("Springfield"))
        assert [c.place_id for c in candidates] == [SPRINGFIELD_IL, SPRINGFIELD_MO]

    def test_caps_candidate_count(self, store):
        candidates = CandidateGenerator(store, limit=1).generate(_mention("London"))
        assert [c.place_id for c in candidates] == [LONDON_UK]

    def test_no_match_is_empty_and_queues_backfill(self, store):
        backfill = MagicMock()
        candidates = CandidateGenerator(store, backfill=backfill).generate(_mention("Atlantis"))
        assert candidates == []
        backfill.request.assert_called_once_with("atlantis", store)

    def test_hit_does_not_touch_backfill(self, store):
        backfill = MagicMock()
        CandidateGenerator(store, backfill=backfill).generate(_mention("London"))
        backfill.request.assert_not_called()

    def test_blank_mention_yields_nothing(self, store):
        assert CandidateGenerator(store).generate(_mention("   ")) == []


@pytest.mark.parametrize(
    "preceding, expected",
    [
        ("He was born in the city of", "city_of"),
        ("They toured the State of ", "admin1_of"),
        ("the county of", "admin2_of"),
        ("a visit to the Republic of", "country_of"),
        ("Paris, ", "apposition"),
        ("We flew to", None),
        ("", None),
        (None, None),
    ],
)
def test_detect_kind_cue(preceding, expected):
    assert detect_kind_cue(preceding) == expected


class TestFeatureExtractor:
    def _scored(self, store, settings, mention, **kwargs):
        candidates = CandidateGenerator(store).generate(mention)
        return FeatureExtractor(settings, **kwargs).score(candidates)

    def test_population_dominates_without_context(self, store, settings):
        scored = self._scored(store, settings, _mention("Paris"))
        fr, tx = scored
        assert fr.place_id == PARIS_FR
        assert fr.features[NAME_MATCH_QUALITY] == 1.0
        assert fr.features[POPULATION_SIGNAL] == pytest.approx(1.0)
        assert fr.base_score == pytest.approx(0.8)
        assert tx.features[POPULATION_SIGNAL] == pytest.approx(0.6956, abs=1e-3)
        assert tx.base_score == pytest.approx(0.45 + 0.35 * 0.6956, abs=1e-3)

    def test_contributions_sum_to_base_score(self, store, settings):
        for cand in self._scored(store, settings, _mention("London")):
            assert sum(cand.contributions.values()) == pytest.approx(cand.base_score)
            assert cand.final_score == cand.base_score
            assert cand.coherence_bonus == 0.0

    def test_unknown_population_gets_floor_signal(self, store, settings):
        for cand in self._scored(store, settings, _mention("Springfield")):
            assert cand.features[POPULATION_SIGNAL] == settings.NULL_POPULATION_SIGNAL

    def test_alias_and_fuzzy_quality(self, store, settings):
        (alias,) = self._scored(store, settings, _mention("Paname"))
        assert alias.features[NAME_MATCH_QUALITY] == settings.ALIAS_MATCH_QUALITY
        fuzzy = self._scored(store, settings, _mention("Londn"))
        assert {c.place_id for c in fuzzy} == {LONDON_UK, LONDON_ON}
        assert all(c.features[NAME_MATCH_QUALITY] < 1.0 for c in fuzzy)

    def test_kind_prior_from_apposition(self, store, settings):
        (texas,) = self._scored(store, settings, _mention("Texas", offset=7, preceding_text="Paris, "))
        assert texas.place_id == TEXAS
        assert texas.place.kind == PlaceKind.ADMIN1
        assert texas.features[KIND_PRIOR] == 1.0
        assert texas.base_score == pytest.approx(0.9)

    def test_kind_prior_penalizes_mismatched_kind(self, store, settings):
        scored = self._scored(store, settings, _mention("Paris", preceding_text="the state of"))
        assert all(c.features[KIND_PRIOR] < 0 for c in scored)

    def test_source_prior_uses_publisher_coverage(self, store, settings):
        scored = self._scored(
            store,
            settings,
            _mention("Paris", publisher="lemonde"),
            publisher_priors={"lemonde": frozenset({"fr"})},
        )
        by_id = {c.place_id: c for c in scored}
        assert by_id[PARIS_FR].features[SOURCE_PRIOR] == 1.0
        assert by_id[PARIS_TX].features[SOURCE_PRIOR] == 0.0

    def test_weights_come_from_settings(self, store, settings):
        tuned = settings.with_overrides(WEIGHT_POPULATION=0.0)
        fr, tx = self._scored(store, tuned, _mention("Paris"))
        # Equal scores: population still breaks the tie deterministically
        assert fr.base_score == tx.base_score == pytest.approx(0.45)
        assert fr.place_id == PARIS_FR

    def test_empty_input(self, settings):
        assert FeatureExtractor(settings).score([]) == []
