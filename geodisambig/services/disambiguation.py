"""
Per-article disambiguation: candidate generation, local scoring, and an
ordered greedy coherence pass.

Mentions of one article are resolved jointly but not combinatorially:

1. Every mention is scored on its own (CandidateGenerator + FeatureExtractor).
2. Mentions are ordered by their best base_score (desc), then by how
   unambiguous they are locally, then text offset.
3. In that order each mention gets coherence bonuses from the mentions
   resolved before it, is re-ranked, and is finalized.

Resolution is append-only: a mention resolved later never changes an
earlier decision. If the article's soft deadline runs out during step 3,
the remaining mentions are finalized from their local scores and flagged
as degraded.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, FrozenSet, List, Mapping, Optional, Sequence

from geodisambig.domain.errors import DisambiguationCancelled
from geodisambig.domain.models import (
    ArticleContext,
    DisambiguationResult,
    Mention,
    MentionSlot,
    MentionState,
    ResolutionStatus,
    SCORE_DECIMALS,
)
from geodisambig.services.backfill import BackfillQueue
from geodisambig.services.candidate_generator import CandidateGenerator
from geodisambig.services.coherence import CoherenceScorer, ResolvedNeighbour
from geodisambig.services.confidence import ConfidenceExplainer
from geodisambig.services.feature_extractor import FeatureExtractor
from geodisambig.services.gazetteer_store import GazetteerStore
from geodisambig.settings import Settings

logger = logging.getLogger(__name__)


def local_confidence(slot: MentionSlot) -> float:
    """Share of the mention's local score mass held by its top candidate."""
    total = sum(max(c.base_score, 0.0) for c in slot.candidates)
    if total <= 0:
        return 0.0
    return max(slot.top_candidate.base_score, 0.0) / total


def resolution_order(slots: Sequence[MentionSlot]) -> List[MentionSlot]:
    """
    Best local score first. On equal scores the less ambiguous mention goes
    first ("Texas" with one candidate before "Paris" with several), then
    earlier offset, then input position.
    """
    return sorted(
        slots,
        key=lambda s: (
            -round(s.top_candidate.base_score, SCORE_DECIMALS),
            -round(local_confidence(s), SCORE_DECIMALS),
            s.mention.offset,
            s.index,
        ),
    )


class DisambiguationService:
    """
    Resolves mentions against one bound GazetteerStore.

    The store is injected; the service keeps no state between calls, so one
    instance can serve many worker threads.
    """

    def __init__(
        self,
        store: GazetteerStore,
        settings: Optional[Settings] = None,
        publisher_priors: Optional[Mapping[str, FrozenSet[str]]] = None,
        backfill: Optional[BackfillQueue] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.settings = settings or Settings()
        self.clock = clock
        self.generator = CandidateGenerator(store, limit=self.settings.CANDIDATE_LIMIT, backfill=backfill)
        self.extractor = FeatureExtractor(self.settings, publisher_priors=publisher_priors)
        self.coherence = CoherenceScorer(store, self.settings)
        self.explainer = ConfidenceExplainer(self.settings)

    def disambiguate(
        self,
        mentions: Sequence[Mention],
        cancel_event: Optional[threading.Event] = None,
    ) -> List[DisambiguationResult]:
        """One result per input mention, in input order."""
        if not mentions:
            return []
        contexts: Dict[str, ArticleContext] = {}
        for index, mention in enumerate(mentions):
            ctx = contexts.get(mention.article_id)
            if ctx is None:
                ctx = contexts[mention.article_id] = ArticleContext(article_id=mention.article_id)
            ctx.slots.append(MentionSlot(index=index, mention=mention))

        results: List[Optional[DisambiguationResult]] = [None] * len(mentions)
        for ctx in contexts.values():
            self.resolve_article(ctx, cancel_event)
            for slot in ctx.slots:
                results[slot.index] = slot.result
        return results  # type: ignore[return-value]

    def resolve_article(
        self,
        ctx: ArticleContext,
        cancel_event: Optional[threading.Event] = None,
    ) -> ArticleContext:
        started = self.clock()
        deadline = started + self.settings.ARTICLE_DEADLINE_MS / 1000.0

        for slot in ctx.slots:
            self._check_cancel(ctx, cancel_event)
            self._score_locally(slot)

        neighbours: List[ResolvedNeighbour] = []
        degraded = False
        for slot in resolution_order(ctx.pending_slots()):
            self._check_cancel(ctx, cancel_event)
            if not degraded and self.clock() >= deadline:
                degraded = True
                logger.warning(
                    "Article %s exceeded %.0f ms budget; finishing remaining mentions without coherence",
                    ctx.article_id,
                    self.settings.ARTICLE_DEADLINE_MS,
                )
            if degraded:
                self._finalize(slot, degraded=True)
                continue
            slot.candidates = self.coherence.adjust(slot.candidates, neighbours)
            slot.advance(MentionState.COHERENCE_ADJUSTED)
            self._finalize(slot)
            if slot.state == MentionState.RESOLVED:
                neighbours.append(ResolvedNeighbour(slot.mention, slot.candidates[0].place))

        logger.debug(
            "Article %s: %d mention(s), %d resolved, degraded=%s, %.1f ms",
            ctx.article_id,
            len(ctx.slots),
            len(ctx.resolved_slots()),
            degraded,
            (self.clock() - started) * 1000.0,
        )
        return ctx

    def _score_locally(self, slot: MentionSlot) -> None:
        mention = slot.mention
        if mention.is_malformed:
            slot.advance(MentionState.MALFORMED)
            slot.result = self.explainer.malformed(mention, self.store.version)
            logger.warning(
                "Rejected malformed mention at offset %s in article %s", mention.offset, mention.article_id
            )
            return
        candidates = self.generator.generate(mention)
        slot.advance(MentionState.CANDIDATES_GENERATED)
        if not candidates:
            slot.advance(MentionState.NO_CANDIDATES)
            slot.result = self.explainer.no_candidates(mention, self.store.version)
            return
        slot.candidates = self.extractor.score(candidates)
        slot.advance(MentionState.SCORED_LOCALLY)

    def _finalize(self, slot: MentionSlot, degraded: bool = False) -> None:
        result = self.explainer.finalize(
            slot.mention,
            slot.candidates,
            degraded=degraded,
            snapshot_version=self.store.version,
        )
        if result.status == ResolutionStatus.RESOLVED:
            slot.advance(MentionState.RESOLVED)
        else:
            slot.advance(MentionState.UNRESOLVED)
        slot.result = result

    @staticmethod
    def _check_cancel(ctx: ArticleContext, cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise DisambiguationCancelled(f"disambiguation of article {ctx.article_id} cancelled")
