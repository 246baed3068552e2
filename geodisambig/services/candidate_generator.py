"""
Candidate generation: one mention string -> ranked, capped candidate places.
"""
from __future__ import annotations

import logging
from typing import List, Optional

from geodisambig.domain.models import Candidate, Mention
from geodisambig.services.backfill import BackfillQueue
from geodisambig.services.gazetteer_store import GazetteerStore, NameMatch

logger = logging.getLogger(__name__)

DEFAULT_CANDIDATE_LIMIT = 20


def candidate_order_key(match: NameMatch) -> tuple:
    """Tier rank, then population desc (unknown last), then place_id asc."""
    population = match.place.population if match.place.population is not None else -1
    return (match.tier.rank, -population, match.place.place_id)


class CandidateGenerator:
    def __init__(
        self,
        store: GazetteerStore,
        limit: int = DEFAULT_CANDIDATE_LIMIT,
        backfill: Optional[BackfillQueue] = None,
    ):
        self.store = store
        self.limit = limit
        self.backfill = backfill

    def generate(self, mention: Mention) -> List[Candidate]:
        """
        Look the mention up and return at most `limit` candidates.

        An empty list is a valid answer (NoCandidates downstream). On a miss
        the name is handed to the background backfill queue when one is
        configured; this call never waits for it.
        """
        normalized = mention.normalized
        if not normalized:
            return []
        matches = self.store.lookup_by_name(normalized)
        if not matches:
            if self.backfill is not None:
                self.backfill.request(normalized, self.store)
            logger.debug("No gazetteer match for %r", mention.text)
            return []
        ranked = sorted(matches, key=candidate_order_key)[: self.limit]
        return [
            Candidate(
                mention=mention,
                place=m.place,
                match_tier=m.tier,
                similarity=m.similarity,
            )
            for m in ranked
        ]
