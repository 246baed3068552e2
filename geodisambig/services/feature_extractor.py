"""
Per-candidate feature extraction.

Every signal is named, lies in a fixed range, and is stored on the
candidate next to its weighted contribution, so a score can always be
decomposed back into the reasons that produced it:

    name_match_quality   1.0 exact, ALIAS_MATCH_QUALITY alias, similarity for fuzzy
    population_signal    log10(1+pop) / log10(1+max pop in this mention's set)
    kind_prior           [-1, 1] from textual cues before the mention; 0 without context
    source_prior         1.0 if the publisher commonly covers the candidate's country

base_score = sum(weight_f * feature_f) with weights taken from Settings.
"""
from __future__ import annotations

import math
import re
from typing import Dict, FrozenSet, List, Mapping, Optional

from geodisambig.domain.models import Candidate, MatchTier, Mention, PlaceKind
from geodisambig.domain.names import normalize_name
from geodisambig.settings import Settings

NAME_MATCH_QUALITY = "name_match_quality"
POPULATION_SIGNAL = "population_signal"
KIND_PRIOR = "kind_prior"
SOURCE_PRIOR = "source_prior"

FEATURE_NAMES = (NAME_MATCH_QUALITY, POPULATION_SIGNAL, KIND_PRIOR, SOURCE_PRIOR)

# Cue phrases looked for at the very end of the text preceding a mention.
KIND_CUES = (
    ("city_of", re.compile(r"\b(city|town|village|municipality) of$")),
    ("admin1_of", re.compile(r"\b(state|province|region|prefecture) of$")),
    ("admin2_of", re.compile(r"\b(county|district|parish|borough) of$")),
    ("country_of", re.compile(r"\b(country|nation|republic|kingdom) of$")),
    ("apposition", re.compile(r"\w,$")),
)

_PENALTY = -0.5

KIND_PRIORS: Dict[str, Dict[PlaceKind, float]] = {
    "city_of": {
        PlaceKind.CITY: 1.0,
        PlaceKind.ADMIN2: _PENALTY,
        PlaceKind.ADMIN1: _PENALTY,
        PlaceKind.COUNTRY: _PENALTY,
    },
    "admin1_of": {
        PlaceKind.ADMIN1: 1.0,
        PlaceKind.CITY: _PENALTY,
        PlaceKind.COUNTRY: _PENALTY,
    },
    "admin2_of": {
        PlaceKind.ADMIN2: 1.0,
        PlaceKind.CITY: _PENALTY,
        PlaceKind.COUNTRY: _PENALTY,
    },
    "country_of": {
        PlaceKind.COUNTRY: 1.0,
        PlaceKind.CITY: _PENALTY,
        PlaceKind.ADMIN1: _PENALTY,
        PlaceKind.ADMIN2: _PENALTY,
    },
    # "Paris, Texas": the name after the comma is usually the enclosing region
    "apposition": {
        PlaceKind.ADMIN1: 1.0,
        PlaceKind.COUNTRY: 1.0,
        PlaceKind.ADMIN2: 0.5,
        PlaceKind.CITY: _PENALTY,
    },
}


def detect_kind_cue(preceding_text: Optional[str]) -> Optional[str]:
    """Return the name of the cue the preceding text ends with, if any."""
    if not preceding_text:
        return None
    tail = normalize_name(preceding_text[-64:])
    for cue, pattern in KIND_CUES:
        if pattern.search(tail):
            return cue
    return None


class FeatureExtractor:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        publisher_priors: Optional[Mapping[str, FrozenSet[str]]] = None,
    ):
        self.settings = settings or Settings()
        self.publisher_priors = {
            k: frozenset(c.upper() for c in v) for k, v in (publisher_priors or {}).items()
        }

    @property
    def weights(self) -> Dict[str, float]:
        s = self.settings
        return {
            NAME_MATCH_QUALITY: s.WEIGHT_NAME_MATCH,
            POPULATION_SIGNAL: s.WEIGHT_POPULATION,
            KIND_PRIOR: s.WEIGHT_KIND_PRIOR,
            SOURCE_PRIOR: s.WEIGHT_SOURCE_PRIOR,
        }

    def name_match_quality(self, candidate: Candidate) -> float:
        if candidate.match_tier == MatchTier.EXACT:
            return 1.0
        if candidate.match_tier == MatchTier.ALIAS:
            return self.settings.ALIAS_MATCH_QUALITY
        return max(candidate.similarity, self.settings.FUZZY_THRESHOLD)

    def population_signal(self, population: Optional[int], max_population: int) -> float:
        if population is None:
            return self.settings.NULL_POPULATION_SIGNAL
        if max_population <= 0 or population <= 0:
            return 0.0
        return min(1.0, math.log10(1 + population) / math.log10(1 + max_population))

    def kind_prior(self, mention: Mention, kind: PlaceKind) -> float:
        cue = detect_kind_cue(mention.preceding_text)
        if cue is None:
            return 0.0
        return KIND_PRIORS[cue].get(kind, 0.0)

    def source_prior(self, mention: Mention, country_code: Optional[str]) -> float:
        if not mention.publisher or not country_code:
            return 0.0
        covered = self.publisher_priors.get(mention.publisher)
        if not covered:
            return 0.0
        return 1.0 if country_code.upper() in covered else 0.0

    def score(self, candidates: List[Candidate]) -> List[Candidate]:
        """
        Fill features, contributions and base_score for one mention's candidates.

        Returns the candidates re-ranked by base_score with the usual
        deterministic tie-break. final_score starts equal to base_score.
        """
        if not candidates:
            return []
        max_population = max((c.place.population or 0) for c in candidates)
        weights = self.weights
        for cand in candidates:
            features = {
                NAME_MATCH_QUALITY: self.name_match_quality(cand),
                POPULATION_SIGNAL: self.population_signal(cand.place.population, max_population),
                KIND_PRIOR: self.kind_prior(cand.mention, cand.place.kind),
                SOURCE_PRIOR: self.source_prior(cand.mention, cand.place.country_code),
            }
            cand.features = features
            cand.contributions = {name: weights[name] * value for name, value in features.items()}
            cand.base_score = sum(cand.contributions[name] for name in FEATURE_NAMES)
            cand.coherence_bonus = 0.0
            cand.final_score = cand.base_score
        return sorted(candidates, key=lambda c: c.base_sort_key())
