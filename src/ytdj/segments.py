"""Segment manager for segmented sets.

Segments are contiguous, ordered slices of the playlist (Warmup, Build,
Peak, ...). Their index ranges are never stored: they are derived from the
segment order, each segment's duration spec and the current sequence
length, so a regenerated sequence of a different length can never leave a
stale boundary behind.

Range derivation:
    Each spec is converted to a weight (track counts as-is, minutes as
    track-equivalents using a fixed average track length, never the
    lengths of the tracks currently in the set). Segment k ends at
    the cumulative weight through k, scaled to the sequence length and
    rounded half-up; the last segment always ends at the final index and
    absorbs the rounding remainder.
"""

import logging
import math
from dataclasses import dataclass
from typing import Any

from ytdj.errors import LastSegmentError, NotFound
from ytdj.models import (
    DurationMinutes,
    DurationSpec,
    SegmentConstraints,
    SegmentRange,
    SetSegment,
    TrackCount,
)

logger = logging.getLogger(__name__)

DEFAULT_AVERAGE_TRACK_SECONDS = 240.0
IMPLICIT_SEGMENT_ID = "set"

SEGMENT_COLORS = ["#3B82F6", "#8B5CF6", "#EC4899", "#06B6D4", "#F59E0B", "#10B981"]


@dataclass(frozen=True)
class SegmentPreset:
    """Named starting point for a segment's look and constraints."""

    name: str
    color: str
    duration: DurationSpec
    constraints: SegmentConstraints


SEGMENT_PRESETS: dict[str, SegmentPreset] = {
    "warmup": SegmentPreset(
        name="Warmup",
        color="#3B82F6",
        duration=DurationMinutes(15),
        constraints=SegmentConstraints(energy_range=(30, 55), discovery=40),
    ),
    "build": SegmentPreset(
        name="Build",
        color="#8B5CF6",
        duration=DurationMinutes(25),
        constraints=SegmentConstraints(energy_range=(50, 75)),
    ),
    "peak": SegmentPreset(
        name="Peak",
        color="#EC4899",
        duration=DurationMinutes(30),
        constraints=SegmentConstraints(energy_range=(75, 100)),
    ),
    "land": SegmentPreset(
        name="Land",
        color="#06B6D4",
        duration=DurationMinutes(20),
        constraints=SegmentConstraints(energy_range=(40, 65)),
    ),
}

DEFAULT_LAYOUT = ("warmup", "build", "peak", "land")


def derive_ranges(
    segments: list[SetSegment],
    sequence_length: int,
    average_track_seconds: float | None = None,
) -> list[SegmentRange]:
    """Partition ``[0, sequence_length)`` across ``segments`` in order."""
    if sequence_length < 0:
        raise ValueError(f"Sequence length must be >= 0 (got {sequence_length})")
    if not segments:
        return [SegmentRange(IMPLICIT_SEGMENT_ID, 0, sequence_length - 1)]

    avg = average_track_seconds or DEFAULT_AVERAGE_TRACK_SECONDS
    weights = [s.duration.weight(avg) for s in segments]
    total = sum(weights)

    ranges: list[SegmentRange] = []
    start = 0
    cumulative = 0.0
    for i, (segment, weight) in enumerate(zip(segments, weights)):
        cumulative += weight
        if i == len(segments) - 1:
            boundary = sequence_length
        else:
            boundary = math.floor(cumulative * sequence_length / total + 0.5)
            boundary = min(max(boundary, start), sequence_length)
        ranges.append(SegmentRange(segment.id, start, boundary - 1))
        start = boundary
    return ranges


def _merge_durations(
    survivor: DurationSpec,
    removed: DurationSpec,
    average_track_seconds: float,
) -> DurationSpec:
    """Combine two specs so the survivor's weight absorbs the removed one."""
    if isinstance(survivor, TrackCount) and isinstance(removed, TrackCount):
        return TrackCount(survivor.count + removed.count)
    minutes = (
        survivor.weight(average_track_seconds) + removed.weight(average_track_seconds)
    ) * average_track_seconds / 60
    return DurationMinutes(minutes)


class SegmentManager:
    """Owns the ordered segment list of one set.

    The manager knows nothing about tiers or in-flight work; the engine
    gates calls into it.
    """

    def __init__(self, segments: list[SetSegment] | None = None) -> None:
        self._segments: list[SetSegment] = list(segments or [])
        self._active_id: str | None = None
        self._renumber()

    @property
    def segments(self) -> list[SetSegment]:
        return list(self._segments)

    @property
    def is_segmented(self) -> bool:
        return bool(self._segments)

    @property
    def active_segment_id(self) -> str | None:
        return self._active_id

    def get(self, segment_id: str) -> SetSegment:
        for segment in self._segments:
            if segment.id == segment_id:
                return segment
        raise NotFound("segment", segment_id)

    def contains(self, segment_id: str) -> bool:
        return any(s.id == segment_id for s in self._segments)

    def _position(self, segment_id: str) -> int:
        for i, segment in enumerate(self._segments):
            if segment.id == segment_id:
                return i
        raise NotFound("segment", segment_id)

    def _renumber(self) -> None:
        for i, segment in enumerate(self._segments):
            segment.order = i

    # ------------------------------------------------------------------
    # Structure
    # ------------------------------------------------------------------

    def add_segment(
        self,
        duration: DurationSpec,
        after_segment_id: str | None = None,
        name: str | None = None,
        color: str | None = None,
        prompt: str | None = None,
        constraints: SegmentConstraints | None = None,
    ) -> SetSegment:
        """Insert a segment after ``after_segment_id`` (or at the end)."""
        position = len(self._segments)
        if after_segment_id is not None:
            position = self._position(after_segment_id) + 1

        segment = SetSegment(
            name=name or f"Segment {len(self._segments) + 1}",
            duration=duration,
            color=color or SEGMENT_COLORS[len(self._segments) % len(SEGMENT_COLORS)],
            prompt=prompt,
            constraints=constraints or SegmentConstraints(),
        )
        self._segments.insert(position, segment)
        self._renumber()
        logger.info(f"Added segment '{segment.name}' ({segment.id}) at position {position}")
        return segment

    def remove_segment(
        self,
        segment_id: str,
        average_track_seconds: float | None = None,
    ) -> SetSegment:
        """Remove a segment, merging its share into the following segment.

        When the removed segment was last, the preceding segment absorbs it.
        """
        position = self._position(segment_id)
        if len(self._segments) == 1:
            raise LastSegmentError(segment_id)

        removed = self._segments.pop(position)
        survivor_pos = position if position < len(self._segments) else position - 1
        survivor = self._segments[survivor_pos]
        avg = average_track_seconds or DEFAULT_AVERAGE_TRACK_SECONDS
        survivor.duration = _merge_durations(survivor.duration, removed.duration, avg)

        if self._active_id == segment_id:
            self._active_id = None
        self._renumber()
        logger.info(f"Removed segment '{removed.name}', merged into '{survivor.name}'")
        return removed

    def update_segment(
        self,
        segment_id: str,
        name: str | None = None,
        color: str | None = None,
        duration: DurationSpec | None = None,
        prompt: str | None = None,
        constraints: SegmentConstraints | None = None,
    ) -> SetSegment:
        segment = self.get(segment_id)
        if name is not None:
            segment.name = name
        if color is not None:
            segment.color = color
        if duration is not None:
            segment.duration = duration
        if prompt is not None:
            segment.prompt = prompt
        if constraints is not None:
            segment.constraints = constraints
        return segment

    def reorder_segments(self, from_index: int, to_index: int) -> None:
        count = len(self._segments)
        if not (0 <= from_index < count and 0 <= to_index < count):
            raise IndexError(f"Segment positions must be within [0, {count - 1}]")
        moved = self._segments.pop(from_index)
        self._segments.insert(to_index, moved)
        self._renumber()

    def apply_preset(self, segment_id: str, preset_name: str) -> SetSegment:
        """Overwrite name, color, duration and merge preset constraints."""
        if preset_name not in SEGMENT_PRESETS:
            raise ValueError(
                f"Unknown preset '{preset_name}'. Available: {', '.join(SEGMENT_PRESETS)}"
            )
        preset = SEGMENT_PRESETS[preset_name]
        segment = self.get(segment_id)
        segment.name = preset.name
        segment.color = preset.color
        segment.duration = preset.duration
        segment.constraints = segment.constraints.merged(preset.constraints)
        return segment

    def initialize_default_segments(self) -> list[SetSegment]:
        """Replace all segments with the Warmup/Build/Peak/Land layout."""
        self._segments = []
        for key in DEFAULT_LAYOUT:
            preset = SEGMENT_PRESETS[key]
            self._segments.append(
                SetSegment(
                    name=preset.name,
                    color=preset.color,
                    duration=preset.duration,
                    constraints=preset.constraints,
                )
            )
        self._active_id = None
        self._renumber()
        return self.segments

    def clear(self) -> None:
        """Drop all segments; the set becomes one implicit segment."""
        self._segments = []
        self._active_id = None

    def set_active_segment(self, segment_id: str | None) -> None:
        if segment_id is not None:
            self.get(segment_id)
        self._active_id = segment_id

    # ------------------------------------------------------------------
    # Ranges
    # ------------------------------------------------------------------

    def derive_ranges(
        self,
        sequence_length: int,
        average_track_seconds: float | None = None,
    ) -> list[SegmentRange]:
        return derive_ranges(self._segments, sequence_length, average_track_seconds)

    def range_for(
        self,
        segment_id: str,
        sequence_length: int,
        average_track_seconds: float | None = None,
    ) -> SegmentRange:
        self.get(segment_id)
        for segment_range in self.derive_ranges(sequence_length, average_track_seconds):
            if segment_range.segment_id == segment_id:
                return segment_range
        raise NotFound("segment", segment_id)

    def segment_for_index(
        self,
        index: int,
        sequence_length: int,
        average_track_seconds: float | None = None,
    ) -> str:
        if not 0 <= index < sequence_length:
            raise IndexError(f"Index {index} outside sequence of length {sequence_length}")
        for segment_range in self.derive_ranges(sequence_length, average_track_seconds):
            if segment_range.contains(index):
                return segment_range.segment_id
        raise IndexError(f"Index {index} not covered by any segment")

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_list(self) -> list[dict[str, Any]]:
        return [s.to_dict() for s in self._segments]

    @classmethod
    def from_list(cls, data: list[dict[str, Any]]) -> "SegmentManager":
        return cls([SetSegment.from_dict(item) for item in sorted(data, key=lambda d: d.get("order", 0))])
