"""
Wire contracts for hosts that exchange mentions and results as JSON.
"""
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from geodisambig.domain.models import DisambiguationResult, Mention


class MentionPayload(BaseModel):
    """Accepts both camelCase (articleId) and snake_case (article_id) keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    text: str
    article_id: str
    offset: int = Field(ge=0)
    preceding_text: Optional[str] = None
    publisher: Optional[str] = None

    def to_mention(self) -> Mention:
        return Mention(
            text=self.text,
            article_id=self.article_id,
            offset=self.offset,
            preceding_text=self.preceding_text,
            publisher=self.publisher,
        )


def parse_mentions(payloads: Iterable[Dict[str, Any]]) -> List[Mention]:
    """Validate raw dicts into Mentions, preserving order. Raises pydantic.ValidationError."""
    return [MentionPayload.model_validate(p).to_mention() for p in payloads]


class ExplanationPayload(BaseModel):
    factor: str
    contribution: float


class AlternatePayload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    place_id: int
    canonical_name: str
    kind: str
    match_tier: str
    final_score: float
    normalized_score: float


class CoherencePayload(BaseModel):
    """One already-resolved mention that lent a bonus to the chosen place."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    mention: str
    offset: int
    place_id: int
    relation: str
    bonus: float
    distance_km: float


class ResultPayload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    text: str
    article_id: str
    offset: int
    status: str
    resolved_place_id: Optional[int] = None
    resolved_name: Optional[str] = None
    confidence: float = 0.0
    explanation: List[ExplanationPayload] = Field(default_factory=list)
    alternates: List[AlternatePayload] = Field(default_factory=list)
    degraded: bool = False
    snapshot_version: Optional[str] = None
    coherence: List[CoherencePayload] = Field(default_factory=list)

    @classmethod
    def from_result(cls, result: DisambiguationResult) -> "ResultPayload":
        data = result.to_dict()
        mention = data.pop("mention")
        return cls(
            text=mention["text"],
            article_id=mention["article_id"],
            offset=mention["offset"],
            status=data["status"],
            resolved_place_id=data["resolved_place_id"],
            resolved_name=data["resolved_name"],
            confidence=data["confidence"],
            explanation=[ExplanationPayload(**item) for item in data["explanation"]],
            alternates=[AlternatePayload(**alt) for alt in data["alternates"]],
            degraded=data["degraded"],
            snapshot_version=data["snapshot_version"],
            coherence=[CoherencePayload(**reason) for reason in data["coherence"]],
        )

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


def results_to_payloads(results: Iterable[DisambiguationResult]) -> List[Dict[str, Any]]:
    return [ResultPayload.from_result(r).to_json_dict() for r in results]
