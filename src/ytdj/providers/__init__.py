"""Track generation providers."""

from ytdj.providers.base import GenerationContext, TrackProvider

__all__ = [
    "GenerationContext",
    "TrackProvider",
]
