"""
Cross-mention spatial coherence.

Places named in the same article tend to cluster: once "Texas" is settled,
a "Paris" candidate inside Texas deserves more credit than one in France.
Only mentions that are already resolved contribute, and the bonus per
neighbour is fixed:

    CONTAINMENT_BONUS  either place lies within the other (hierarchy or boundary)
    PROXIMITY_BONUS    otherwise, centroids within PROXIMITY_THRESHOLD_M

The summed bonus is capped at MAX_COHERENCE_BONUS.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from geodisambig.domain.models import Candidate, CanonicalPlace, Mention
from geodisambig.services.gazetteer_store import GazetteerStore
from geodisambig.settings import Settings

logger = logging.getLogger(__name__)

CONTAINMENT = "containment"
PROXIMITY = "proximity"


@dataclass(frozen=True)
class ResolvedNeighbour:
    """A mention of the same article that has already been resolved."""
    mention: Mention
    place: CanonicalPlace


class CoherenceScorer:
    def __init__(self, store: GazetteerStore, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or Settings()

    def relation(self, candidate_id: int, neighbour_id: int) -> Optional[str]:
        """Spatial relation between a candidate and a resolved place, if any earns a bonus."""
        if candidate_id == neighbour_id:
            return None
        if self.store.is_within(candidate_id, neighbour_id) or self.store.is_within(neighbour_id, candidate_id):
            return CONTAINMENT
        if self.store.distance_meters(candidate_id, neighbour_id) <= self.settings.PROXIMITY_THRESHOLD_M:
            return PROXIMITY
        return None

    def bonus_for(self, candidate: Candidate, neighbours: Sequence[ResolvedNeighbour]) -> float:
        total = 0.0
        reasons: List[Dict[str, Any]] = []
        for neighbour in neighbours:
            rel = self.relation(candidate.place_id, neighbour.place.place_id)
            if rel is None:
                continue
            amount = self.settings.CONTAINMENT_BONUS if rel == CONTAINMENT else self.settings.PROXIMITY_BONUS
            total += amount
            reasons.append(
                {
                    "mention": neighbour.mention.text,
                    "offset": neighbour.mention.offset,
                    "place_id": neighbour.place.place_id,
                    "relation": rel,
                    "bonus": amount,
                    "distance_km": round(
                        self.store.distance_meters(candidate.place_id, neighbour.place.place_id) / 1000.0, 1
                    ),
                }
            )
        candidate.coherence_reasons = reasons
        return min(total, self.settings.MAX_COHERENCE_BONUS)

    def adjust(self, candidates: List[Candidate], neighbours: Sequence[ResolvedNeighbour]) -> List[Candidate]:
        """Apply coherence bonuses and re-rank by final_score."""
        for cand in candidates:
            cand.coherence_bonus = self.bonus_for(cand, neighbours) if neighbours else 0.0
            if not neighbours:
                cand.coherence_reasons = []
            cand.final_score = cand.base_score + cand.coherence_bonus
        ranked = sorted(candidates, key=lambda c: c.final_sort_key())
        if ranked and neighbours and ranked[0].coherence_bonus > 0:
            logger.debug(
                "Coherence favoured place %s for %r (bonus %.3f)",
                ranked[0].place_id,
                ranked[0].mention.text,
                ranked[0].coherence_bonus,
            )
        return ranked


def explain_coherence(candidate: Candidate) -> List[Dict[str, Any]]:
    """Per-neighbour breakdown of a candidate's coherence bonus."""
    return [dict(reason) for reason in candidate.coherence_reasons]
