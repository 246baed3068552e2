"""
Error types for the disambiguation engine.

Only conditions that abort work are exceptions. Ambiguous or unmatched
mentions are ordinary results (see ResolutionStatus).
"""
from typing import Optional


class GeodisambigError(Exception):
    """Base class for engine errors."""


class GazetteerUnavailable(GeodisambigError):
    """No usable snapshot could be bound; the whole batch must fail."""

    def __init__(self, reason: str, snapshot_path: Optional[str] = None):
        self.reason = reason
        self.snapshot_path = snapshot_path
        if snapshot_path:
            super().__init__(f"{reason} ({snapshot_path})")
        else:
            super().__init__(reason)


class DisambiguationCancelled(GeodisambigError):
    """The caller cancelled the batch; observed between mentions."""


class InvalidStateTransition(GeodisambigError):
    """A mention was moved between states in an order the pipeline forbids."""
