"""
Place-name disambiguation against a versioned local gazetteer snapshot.
"""
from geodisambig.domain.errors import (
    DisambiguationCancelled,
    GazetteerUnavailable,
    GeodisambigError,
    InvalidStateTransition,
)
from geodisambig.domain.models import (
    CanonicalPlace,
    DisambiguationResult,
    MatchTier,
    Mention,
    PlaceKind,
    ResolutionStatus,
)
from geodisambig.services.batch_runner import BatchOutcome, BatchRunner, BatchStatus
from geodisambig.services.disambiguation import DisambiguationService
from geodisambig.services.gazetteer_store import GazetteerStore, SnapshotGazetteerStore
from geodisambig.settings import Settings, load_settings

__version__ = "0.1.0"

__all__ = [
    "BatchOutcome",
    "BatchRunner",
    "BatchStatus",
    "CanonicalPlace",
    "DisambiguationCancelled",
    "DisambiguationResult",
    "DisambiguationService",
    "GazetteerStore",
    "GazetteerUnavailable",
    "GeodisambigError",
    "InvalidStateTransition",
    "MatchTier",
    "Mention",
    "PlaceKind",
    "ResolutionStatus",
    "Settings",
    "SnapshotGazetteerStore",
    "load_settings",
]
