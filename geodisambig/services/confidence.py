"""
Confidence and explanation synthesis.

confidence = top final_score / sum of all final_scores for the mention
(negative scores count as zero). One dominant candidate gives a high
confidence; several near-tied candidates give a low one even if each raw
score is high.
"""
from __future__ import annotations

from typing import List, Optional

from geodisambig.domain.models import (
    AlternateSummary,
    Candidate,
    DisambiguationResult,
    ExplanationItem,
    Mention,
    ResolutionStatus,
)
from geodisambig.services.coherence import explain_coherence
from geodisambig.services.feature_extractor import FEATURE_NAMES
from geodisambig.settings import Settings

COHERENCE_FACTOR = "coherence_bonus"


def normalized_scores(candidates: List[Candidate]) -> List[float]:
    clipped = [max(c.final_score, 0.0) for c in candidates]
    total = sum(clipped)
    if total <= 0:
        return [0.0 for _ in clipped]
    return [value / total for value in clipped]


def build_explanation(candidate: Candidate) -> List[ExplanationItem]:
    """Named contributions of one candidate, largest magnitude first."""
    items = [ExplanationItem(name, candidate.contributions.get(name, 0.0)) for name in FEATURE_NAMES]
    if candidate.coherence_bonus:
        items.append(ExplanationItem(COHERENCE_FACTOR, candidate.coherence_bonus))
    return sorted(items, key=lambda item: (-abs(item.contribution), item.factor))


class ConfidenceExplainer:
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or Settings()

    def _summaries(self, candidates: List[Candidate], scores: List[float]) -> List[AlternateSummary]:
        return [
            AlternateSummary(
                place_id=c.place_id,
                canonical_name=c.place.canonical_name,
                kind=c.place.kind,
                match_tier=c.match_tier,
                final_score=c.final_score,
                normalized_score=score,
            )
            for c, score in zip(candidates, scores)
        ]

    def finalize(
        self,
        mention: Mention,
        candidates: List[Candidate],
        degraded: bool = False,
        snapshot_version: Optional[str] = None,
    ) -> DisambiguationResult:
        """
        Turn ranked candidates into a result.

        `candidates` must already be sorted by final_score. When the top
        candidate misses RESOLVE_THRESHOLD nothing is chosen and the
        alternates start with the top candidate itself.
        """
        if not candidates:
            return self.no_candidates(mention, snapshot_version)
        scores = normalized_scores(candidates)
        top = candidates[0]
        confidence = scores[0]
        cap = self.settings.MAX_ALTERNATES
        if confidence >= self.settings.RESOLVE_THRESHOLD:
            return DisambiguationResult(
                mention=mention,
                status=ResolutionStatus.RESOLVED,
                resolved_place_id=top.place_id,
                resolved_name=top.place.canonical_name,
                confidence=confidence,
                explanation=build_explanation(top),
                alternates=self._summaries(candidates[1:1 + cap], scores[1:1 + cap]),
                degraded=degraded,
                snapshot_version=snapshot_version,
                coherence=explain_coherence(top),
            )
        return DisambiguationResult(
            mention=mention,
            status=ResolutionStatus.UNRESOLVED,
            confidence=confidence,
            explanation=build_explanation(top),
            alternates=self._summaries(candidates[:cap], scores[:cap]),
            degraded=degraded,
            snapshot_version=snapshot_version,
            coherence=explain_coherence(top),
        )

    def no_candidates(self, mention: Mention, snapshot_version: Optional[str] = None) -> DisambiguationResult:
        return DisambiguationResult(
            mention=mention,
            status=ResolutionStatus.NO_CANDIDATES,
            snapshot_version=snapshot_version,
        )

    def malformed(self, mention: Mention, snapshot_version: Optional[str] = None) -> DisambiguationResult:
        return DisambiguationResult(
            mention=mention,
            status=ResolutionStatus.MALFORMED,
            snapshot_version=snapshot_version,
        )
