"""Base protocol and types for track generation providers."""

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from ytdj.models import Constraints, Track


@dataclass(frozen=True)
class GenerationContext:
    """Where the requested tracks will land in the set.

    Attributes:
        count: Number of tracks wanted.
        previous: Track immediately before the target range, if any.
        next: Track immediately after the target range, if any.
        exclude_ids: Track ids already in the set; must not be suggested again.
        exclude_keys: Normalized artist/title keys already in the set.
        segment_name: Name of the segment being regenerated, if any.
        replacing: Track being swapped out (single-node regeneration).
    """

    count: int
    previous: Track | None = None
    next: Track | None = None
    exclude_ids: frozenset[str] = field(default_factory=frozenset)
    exclude_keys: frozenset[str] = field(default_factory=frozenset)
    segment_name: str | None = None
    replacing: Track | None = None


@runtime_checkable
class TrackProvider(Protocol):
    """Protocol that all track providers must implement.

    The engine treats a provider as a plain function of constraints and
    context. Providers raise on failure or timeout; the engine wraps the
    exception and never retries.
    """

    @property
    def name(self) -> str:
        """Provider name checked against the caller's tier ("openai", ...)."""
        ...

    def generate_tracks(self, constraints: Constraints, context: GenerationContext) -> list[Track]:
        """Suggest tracks for the given brief and position.

        Args:
            constraints: Generation brief, already narrowed to the target scope.
            context: Neighbouring tracks, exclusions and wanted count.

        Returns:
            Suggested tracks in play order. May contain fewer or more than
            ``context.count``; the engine trims and validates.
        """
        ...
