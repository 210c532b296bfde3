"""Shared data models for the ytdj set engine.

This module contains the dataclasses used across components:
- Track: Immutable track attributes (value object)
- PlaylistNode: One occurrence of a track at a position in a set
- TransitionQuality: Derived verdict between two adjacent nodes
- Constraints / SegmentConstraints: The generation brief and its overrides
- AnchorTrack: A must-include track named in a brief
- TrackCount / DurationMinutes: Segment duration specifications
- SetSegment: A named, regenerable slice of the set
- ReplacedRange: Result of a segment regeneration
"""

import re
import uuid
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Literal

NodeState = Literal["resolved", "unresolved", "unavailable", "loading"]
NODE_STATES: tuple[str, ...] = ("resolved", "unresolved", "unavailable", "loading")

TransitionScore = Literal["smooth", "ok", "jarring"]
KeyCompatibility = Literal["perfect", "compatible", "warning", "clash"]

ARC_TEMPLATES: dict[str, str] = {
    "warmup": "Warm-up Peak: start low, rise to a peak in the middle, ease off at the end",
    "burn": "Slow Burn: steady climb from low energy to the highest energy at the close",
    "valley": "The Valley: open high, dip to a calm middle, climb back up to finish",
    "chaos": "Pulse Chaos: unpredictable swings between high and low energy",
}

_WHITESPACE = re.compile(r"\s+")


def identity_key(artist: str, title: str) -> str:
    """Normalized ``artist - title`` key for duplicate detection."""
    artist = _WHITESPACE.sub(" ", artist.strip().lower())
    title = _WHITESPACE.sub(" ", title.strip().lower())
    return f"{artist} - {title}"


def new_id() -> str:
    """Short random identifier for nodes and segments."""
    return str(uuid.uuid4())[:8]


@dataclass(frozen=True)
class Track:
    """Immutable track attributes.

    Tracks are value objects: two nodes may hold equal tracks, so nothing
    in the engine uses a track as a mutation key.

    Attributes:
        id: Provider/catalog identifier.
        title: Track title.
        artist: Performing artist.
        duration: Length in seconds (> 0).
        bpm: Tempo, if known (> 0).
        energy: Intensity on a 0-100 scale, if known.
        key: Musical key string (e.g. "Am", "F#").
        genre: Primary genre.
        thumbnail: Artwork URL.
        ai_reasoning: Explanation from the provider of why it was picked.
    """

    id: str
    title: str
    artist: str
    duration: float
    bpm: float | None = None
    energy: float | None = None
    key: str | None = None
    genre: str | None = None
    thumbnail: str | None = None
    ai_reasoning: str | None = None

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Track id must not be empty")
        if self.duration <= 0:
            raise ValueError(f"Track duration must be > 0 (got {self.duration})")
        if self.bpm is not None and self.bpm <= 0:
            raise ValueError(f"Track bpm must be > 0 when present (got {self.bpm})")
        if self.energy is not None and not (0 <= self.energy <= 100):
            raise ValueError(f"Track energy must be within 0-100 (got {self.energy})")

    def identity_key(self) -> str:
        return identity_key(self.artist, self.title)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Track":
        """Deserialize from a dictionary, tolerating camelCase keys."""
        reasoning = data.get("ai_reasoning", data.get("aiReasoning"))
        if isinstance(reasoning, list):
            reasoning = " ".join(str(r) for r in reasoning)
        return cls(
            id=str(data["id"]),
            title=data["title"],
            artist=data["artist"],
            duration=float(data["duration"]),
            bpm=data.get("bpm"),
            energy=data.get("energy"),
            key=data.get("key"),
            genre=data.get("genre"),
            thumbnail=data.get("thumbnail"),
            ai_reasoning=reasoning,
        )


@dataclass(frozen=True)
class TransitionQuality:
    """Quality verdict between two adjacent nodes.

    ``key_compatibility`` is informational and never affects ``score``.
    """

    from_id: str
    to_id: str
    score: TransitionScore
    bpm_delta: float
    energy_delta: float
    key_compatibility: KeyCompatibility = "compatible"

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        # inf does not survive JSON
        for name in ("bpm_delta", "energy_delta"):
            if data[name] == float("inf"):
                data[name] = None
        return data


@dataclass
class PlaylistNode:
    """A single occurrence of a track within a set.

    ``transition_to_next`` is owned by the PlaylistSequence holding the node
    and is recomputed on every structural change; never assign it by hand.
    """

    track: Track
    id: str = field(default_factory=new_id)
    is_locked: bool = False
    locked_by: str | None = None
    state: NodeState = "resolved"
    transition_to_next: TransitionQuality | None = None

    def __post_init__(self) -> None:
        if self.state not in NODE_STATES:
            raise ValueError(f"Unknown node state '{self.state}'")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "track": self.track.to_dict(),
            "is_locked": self.is_locked,
            "locked_by": self.locked_by,
            "state": self.state,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PlaylistNode":
        return cls(
            track=Track.from_dict(data["track"]),
            id=data["id"],
            is_locked=data.get("is_locked", False),
            locked_by=data.get("locked_by"),
            state=data.get("state", "resolved"),
        )


@dataclass(frozen=True)
class AnchorTrack:
    """A track the user wants in the result no matter what."""

    title: str
    artist: str

    def identity_key(self) -> str:
        return identity_key(self.artist, self.title)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AnchorTrack":
        return cls(title=data["title"], artist=data["artist"])


def _anchors_from(data: dict[str, Any]) -> tuple[AnchorTrack, ...]:
    return tuple(AnchorTrack.from_dict(a) for a in data.get("anchor_tracks", ()))


@dataclass(frozen=True)
class SegmentConstraints:
    """Per-segment overrides that narrow the global brief."""

    energy_range: tuple[int, int] | None = None
    bpm_range: tuple[int, int] | None = None
    moods: tuple[str, ...] = ()
    preferred_genres: tuple[str, ...] = ()
    avoid_genres: tuple[str, ...] = ()
    discovery: int | None = None  # 0 = familiar hits, 100 = deep cuts
    anchor_tracks: tuple[AnchorTrack, ...] = ()

    def merged(self, other: "SegmentConstraints") -> "SegmentConstraints":
        """Overlay ``other`` on top of self; set fields in ``other`` win."""
        return SegmentConstraints(
            energy_range=other.energy_range or self.energy_range,
            bpm_range=other.bpm_range or self.bpm_range,
            moods=other.moods or self.moods,
            preferred_genres=other.preferred_genres or self.preferred_genres,
            avoid_genres=other.avoid_genres or self.avoid_genres,
            discovery=other.discovery if other.discovery is not None else self.discovery,
            anchor_tracks=other.anchor_tracks or self.anchor_tracks,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SegmentConstraints":
        return cls(
            energy_range=tuple(data["energy_range"]) if data.get("energy_range") else None,  # type: ignore[arg-type]
            bpm_range=tuple(data["bpm_range"]) if data.get("bpm_range") else None,  # type: ignore[arg-type]
            moods=tuple(data.get("moods", ())),
            preferred_genres=tuple(data.get("preferred_genres", ())),
            avoid_genres=tuple(data.get("avoid_genres", ())),
            discovery=data.get("discovery"),
            anchor_tracks=_anchors_from(data),
        )


@dataclass(frozen=True)
class Constraints:
    """The generation brief for a set or a part of it."""

    prompt: str
    bpm_range: tuple[int, int] | None = None
    energy_range: tuple[int, int] | None = None
    arc_template: str | None = None
    moods: tuple[str, ...] = ()
    genres: tuple[str, ...] = ()
    avoid_genres: tuple[str, ...] = ()
    avoid_artists: tuple[str, ...] = ()
    avoid_explicit: bool = False
    discovery: int | None = None
    track_count: int | None = None
    target_duration_minutes: int | None = None
    anchor_tracks: tuple[AnchorTrack, ...] = ()

    def __post_init__(self) -> None:
        if self.arc_template is not None and self.arc_template not in ARC_TEMPLATES:
            raise ValueError(
                f"Unknown arc template '{self.arc_template}'. "
                f"Available: {', '.join(ARC_TEMPLATES)}"
            )
        for name in ("bpm_range", "energy_range"):
            bounds = getattr(self, name)
            if bounds is not None and bounds[0] > bounds[1]:
                raise ValueError(f"{name} min must be <= max (got {bounds})")

    def narrowed(
        self,
        overrides: SegmentConstraints,
        segment_prompt: str | None = None,
    ) -> "Constraints":
        """Return a copy scoped to a segment.

        The segment's BPM range is intersected with the global range (when
        they do not overlap the segment range wins). Energy, moods and genre
        lists are replaced when the segment sets them. Anchor tracks
        come from the segment only; the set-wide anchors belong to a full
        generation.
        """
        bpm_range = self.bpm_range
        if overrides.bpm_range:
            bpm_range = overrides.bpm_range
            if self.bpm_range:
                low = max(self.bpm_range[0], overrides.bpm_range[0])
                high = min(self.bpm_range[1], overrides.bpm_range[1])
                if low <= high:
                    bpm_range = (low, high)

        prompt = self.prompt
        if segment_prompt and segment_prompt.strip():
            prompt = f"{self.prompt}\n{segment_prompt.strip()}" if self.prompt else segment_prompt.strip()

        return replace(
            self,
            prompt=prompt,
            bpm_range=bpm_range,
            energy_range=overrides.energy_range or self.energy_range,
            moods=overrides.moods or self.moods,
            genres=overrides.preferred_genres or self.genres,
            avoid_genres=overrides.avoid_genres or self.avoid_genres,
            discovery=overrides.discovery if overrides.discovery is not None else self.discovery,
            anchor_tracks=overrides.anchor_tracks,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Constraints":
        return cls(
            prompt=data.get("prompt", ""),
            bpm_range=tuple(data["bpm_range"]) if data.get("bpm_range") else None,  # type: ignore[arg-type]
            energy_range=tuple(data["energy_range"]) if data.get("energy_range") else None,  # type: ignore[arg-type]
            arc_template=data.get("arc_template"),
            moods=tuple(data.get("moods", ())),
            genres=tuple(data.get("genres", ())),
            avoid_genres=tuple(data.get("avoid_genres", ())),
            avoid_artists=tuple(data.get("avoid_artists", ())),
            avoid_explicit=data.get("avoid_explicit", False),
            discovery=data.get("discovery"),
            track_count=data.get("track_count"),
            target_duration_minutes=data.get("target_duration_minutes"),
            anchor_tracks=_anchors_from(data),
        )


@dataclass(frozen=True)
class TrackCount:
    """Segment sized by number of tracks."""

    count: int
    type: Literal["tracks"] = "tracks"

    def __post_init__(self) -> None:
        if self.count <= 0:
            raise ValueError(f"Track count must be > 0 (got {self.count})")

    def weight(self, average_track_seconds: float) -> float:
        return float(self.count)


@dataclass(frozen=True)
class DurationMinutes:
    """Segment sized by wall-clock minutes."""

    minutes: float
    type: Literal["duration"] = "duration"

    def __post_init__(self) -> None:
        if self.minutes <= 0:
            raise ValueError(f"Duration must be > 0 minutes (got {self.minutes})")

    def weight(self, average_track_seconds: float) -> float:
        """Track-equivalents so minutes compare with track counts."""
        return self.minutes * 60 / average_track_seconds


DurationSpec = TrackCount | DurationMinutes


def duration_spec_from_dict(data: dict[str, Any]) -> DurationSpec:
    if data.get("type") == "tracks":
        return TrackCount(count=int(data["count"]))
    if data.get("type") in ("duration", "minutes"):
        return DurationMinutes(minutes=float(data.get("minutes", data.get("duration", 0))))
    raise ValueError(f"Unknown duration spec: {data}")


@dataclass
class SetSegment:
    """A named, colored, independently regenerable slice of a set.

    Index ranges are not stored here; the SegmentManager derives them from
    segment order, duration specs and the current sequence length.
    """

    name: str
    duration: DurationSpec
    id: str = field(default_factory=new_id)
    color: str = "#3B82F6"
    order: int = 0
    prompt: str | None = None
    constraints: SegmentConstraints = field(default_factory=SegmentConstraints)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "color": self.color,
            "order": self.order,
            "duration": asdict(self.duration),
            "prompt": self.prompt,
            "constraints": self.constraints.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SetSegment":
        return cls(
            id=data["id"],
            name=data["name"],
            color=data.get("color", "#3B82F6"),
            order=data.get("order", 0),
            duration=duration_spec_from_dict(data["duration"]),
            prompt=data.get("prompt"),
            constraints=SegmentConstraints.from_dict(data.get("constraints") or {}),
        )


@dataclass(frozen=True)
class SegmentRange:
    """Derived, inclusive index range of a segment (empty when end < start)."""

    segment_id: str
    start_index: int
    end_index: int

    @property
    def length(self) -> int:
        return self.end_index - self.start_index + 1

    @property
    def is_empty(self) -> bool:
        return self.end_index < self.start_index

    def contains(self, index: int) -> bool:
        return self.start_index <= index <= self.end_index


@dataclass
class ReplacedRange:
    """Outcome of a segment regeneration."""

    segment_id: str
    start_index: int
    end_index: int
    nodes: list[PlaylistNode]
    replaced_count: int = 0
