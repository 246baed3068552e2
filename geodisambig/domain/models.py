"""
Core domain models for the disambiguation engine.
These are storage-agnostic and shared by every service.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Sequence, Tuple

from geodisambig.domain.errors import InvalidStateTransition
from geodisambig.domain.names import normalize_name

SCORE_DECIMALS = 6


class PlaceKind(str, Enum):
    """Administrative kind of a canonical place."""
    COUNTRY = "country"
    ADMIN1 = "admin1"
    ADMIN2 = "admin2"
    CITY = "city"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Optional[str]) -> "PlaceKind":
        try:
            return cls(value)
        except ValueError:
            return cls.OTHER


class MatchTier(str, Enum):
    """How a candidate's name matched the mention. Lower rank is stronger."""
    EXACT = "exact"
    ALIAS = "alias"
    FUZZY = "fuzzy"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]


_TIER_RANK = {MatchTier.EXACT: 0, MatchTier.ALIAS: 1, MatchTier.FUZZY: 2}


class ResolutionStatus(str, Enum):
    """Terminal outcome of one mention."""
    RESOLVED = "resolved"
    UNRESOLVED = "unresolved"
    NO_CANDIDATES = "no_candidates"
    MALFORMED = "malformed"


class MentionState(str, Enum):
    """
    Per-mention progress through one disambiguate() call.

    PENDING -> CANDIDATES_GENERATED -> SCORED_LOCALLY -> COHERENCE_ADJUSTED
    -> RESOLVED | UNRESOLVED. NO_CANDIDATES and MALFORMED are terminal and
    reached early. SCORED_LOCALLY may finalize directly when the article
    deadline is exhausted.
    """
    PENDING = "pending"
    CANDIDATES_GENERATED = "candidates_generated"
    SCORED_LOCALLY = "scored_locally"
    COHERENCE_ADJUSTED = "coherence_adjusted"
    RESOLVED = "resolved"
    UNRESOLVED = "unresolved"
    NO_CANDIDATES = "no_candidates"
    MALFORMED = "malformed"


ALLOWED_TRANSITIONS: Dict[MentionState, FrozenSet[MentionState]] = {
    MentionState.PENDING: frozenset({MentionState.CANDIDATES_GENERATED, MentionState.MALFORMED}),
    MentionState.CANDIDATES_GENERATED: frozenset({MentionState.SCORED_LOCALLY, MentionState.NO_CANDIDATES}),
    MentionState.SCORED_LOCALLY: frozenset(
        {MentionState.COHERENCE_ADJUSTED, MentionState.RESOLVED, MentionState.UNRESOLVED}
    ),
    MentionState.COHERENCE_ADJUSTED: frozenset({MentionState.RESOLVED, MentionState.UNRESOLVED}),
    MentionState.RESOLVED: frozenset(),
    MentionState.UNRESOLVED: frozenset(),
    MentionState.NO_CANDIDATES: frozenset(),
    MentionState.MALFORMED: frozenset(),
}


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned boundary approximation of a place's geometry."""
    min_lat: float
    min_lon: float
    max_lat: float
    max_lon: float

    def contains(self, lat: float, lon: float) -> bool:
        if not (self.min_lat <= lat <= self.max_lat):
            return False
        if self.min_lon <= self.max_lon:
            return self.min_lon <= lon <= self.max_lon
        # Box crosses the antimeridian
        return lon >= self.min_lon or lon <= self.max_lon

    def to_list(self) -> List[float]:
        return [self.min_lat, self.min_lon, self.max_lat, self.max_lon]

    @classmethod
    def from_list(cls, values: Sequence[float]) -> "BoundingBox":
        if len(values) != 4:
            raise ValueError(f"bbox needs 4 values, got {len(values)}")
        return cls(*(float(v) for v in values))


@dataclass(frozen=True)
class CanonicalPlace:
    """
    A gazetteer entry as seen through one snapshot.

    admin_path is root-first and ends with place_id itself.
    """
    place_id: int
    canonical_name: str
    kind: PlaceKind
    lat: float
    lon: float
    population: Optional[int] = None
    admin_path: Tuple[int, ...] = ()
    external_ids: Dict[str, str] = field(default_factory=dict, hash=False, compare=True)
    aliases: FrozenSet[str] = frozenset()
    boundary: Optional[BoundingBox] = None
    country_code: Optional[str] = None

    @property
    def centroid(self) -> Tuple[float, float]:
        return (self.lat, self.lon)

    @property
    def parent_id(self) -> Optional[int]:
        if len(self.admin_path) < 2:
            return None
        return self.admin_path[-2]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "place_id": self.place_id,
            "canonical_name": self.canonical_name,
            "kind": self.kind.value,
            "lat": self.lat,
            "lon": self.lon,
            "population": self.population,
            "admin_path": list(self.admin_path),
            "external_ids": dict(sorted(self.external_ids.items())),
            "aliases": sorted(self.aliases),
            "bbox": self.boundary.to_list() if self.boundary else None,
            "country_code": self.country_code,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CanonicalPlace":
        bbox = data.get("bbox")
        return cls(
            place_id=int(data["place_id"]),
            canonical_name=data.get("canonical_name", ""),
            kind=PlaceKind.parse(data.get("kind")),
            lat=float(data.get("lat", 0.0)),
            lon=float(data.get("lon", 0.0)),
            population=data.get("population"),
            admin_path=tuple(data.get("admin_path") or ()),
            external_ids=dict(data.get("external_ids") or {}),
            aliases=frozenset(data.get("aliases") or ()),
            boundary=BoundingBox.from_list(bbox) if bbox else None,
            country_code=data.get("country_code"),
        )


@dataclass(frozen=True)
class Mention:
    """
    One place-name mention handed over by the extraction step.

    preceding_text and publisher are optional context used by the kind and
    source priors.
    """
    text: str
    article_id: str
    offset: int
    preceding_text: Optional[str] = None
    publisher: Optional[str] = None

    @property
    def normalized(self) -> str:
        return normalize_name(self.text)

    @property
    def is_malformed(self) -> bool:
        return not self.text or not self.text.strip()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "article_id": self.article_id,
            "offset": self.offset,
        }


@dataclass
class Candidate:
    """One possible place for a mention, with its full score breakdown."""
    mention: Mention
    place: CanonicalPlace
    match_tier: MatchTier
    similarity: float = 1.0
    features: Dict[str, float] = field(default_factory=dict)
    contributions: Dict[str, float] = field(default_factory=dict)
    base_score: float = 0.0
    coherence_bonus: float = 0.0
    final_score: float = 0.0
    coherence_reasons: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def place_id(self) -> int:
        return self.place.place_id

    def sort_key(self, score: float) -> tuple:
        """Deterministic ranking: score desc, tier, population desc, place_id asc."""
        population = self.place.population if self.place.population is not None else -1
        return (-score, self.match_tier.rank, -population, self.place.place_id)

    def final_sort_key(self) -> tuple:
        return self.sort_key(self.final_score)

    def base_sort_key(self) -> tuple:
        return self.sort_key(self.base_score)


@dataclass(frozen=True)
class ExplanationItem:
    factor: str
    contribution: float

    def to_dict(self) -> Dict[str, Any]:
        return {"factor": self.factor, "contribution": round(self.contribution, SCORE_DECIMALS)}


@dataclass(frozen=True)
class AlternateSummary:
    """Compact view of a runner-up candidate."""
    place_id: int
    canonical_name: str
    kind: PlaceKind
    match_tier: MatchTier
    final_score: float
    normalized_score: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "place_id": self.place_id,
            "canonical_name": self.canonical_name,
            "kind": self.kind.value,
            "match_tier": self.match_tier.value,
            "final_score": round(self.final_score, SCORE_DECIMALS),
            "normalized_score": round(self.normalized_score, SCORE_DECIMALS),
        }


@dataclass
class DisambiguationResult:
    """The outcome for one input mention."""
    mention: Mention
    status: ResolutionStatus
    resolved_place_id: Optional[int] = None
    resolved_name: Optional[str] = None
    confidence: float = 0.0
    explanation: List[ExplanationItem] = field(default_factory=list)
    alternates: List[AlternateSummary] = field(default_factory=list)
    degraded: bool = False
    snapshot_version: Optional[str] = None
    # Which resolved mentions contributed coherence bonuses to the winner
    coherence: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def is_resolved(self) -> bool:
        return self.status == ResolutionStatus.RESOLVED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mention": self.mention.to_dict(),
            "status": self.status.value,
            "resolved_place_id": self.resolved_place_id,
            "resolved_name": self.resolved_name,
            "confidence": round(self.confidence, SCORE_DECIMALS),
            "explanation": [item.to_dict() for item in self.explanation],
            "alternates": [alt.to_dict() for alt in self.alternates],
            "degraded": self.degraded,
            "snapshot_version": self.snapshot_version,
            "coherence": [dict(reason) for reason in self.coherence],
        }


@dataclass
class MentionSlot:
    """A mention's working state inside an ArticleContext."""
    index: int
    mention: Mention
    state: MentionState = MentionState.PENDING
    candidates: List[Candidate] = field(default_factory=list)
    result: Optional[DisambiguationResult] = None

    def advance(self, new_state: MentionState) -> None:
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidStateTransition(
                f"mention #{self.index} ({self.mention.text!r}): {self.state.value} -> {new_state.value}"
            )
        self.state = new_state

    @property
    def top_candidate(self) -> Optional[Candidate]:
        return self.candidates[0] if self.candidates else None


@dataclass
class ArticleContext:
    """All mentions of one article for the duration of a single call."""
    article_id: str
    slots: List[MentionSlot] = field(default_factory=list)

    def resolved_slots(self) -> List[MentionSlot]:
        return [s for s in self.slots if s.state == MentionState.RESOLVED]

    def pending_slots(self) -> List[MentionSlot]:
        return [s for s in self.slots if s.state == MentionState.SCORED_LOCALLY]
