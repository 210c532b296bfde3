"""Prompt text for LLM-backed track providers.

Turns a Constraints brief and a GenerationContext into the system and user
messages sent to the model. Kept separate from the client so the wording can
be tested without a network.
"""

from dataclasses import replace

from ytdj.models import ARC_TEMPLATES, Constraints, Track
from ytdj.providers.base import GenerationContext

SYSTEM_PROMPT = """
<curator_identity>
You are a professional DJ curating real, released tracks for a continuous DJ set.
Every suggestion must be an existing song that can be found on YouTube.

PRIORITIES (in order):
1. Respect the requested track count and every hard constraint
2. Keep transitions mixable: BPM within a few beats and no abrupt energy jumps
3. Follow the energy arc across the set
4. Never repeat a track or suggest anything from the exclusion list
</curator_identity>

<output_schema>
Return ONLY a JSON object, no markdown:

{
  "tracks": [
    {
      "title": "string",
      "artist": "string",
      "bpm": 124,
      "key": "Am",
      "genre": "string",
      "energy": 65,
      "duration": 245,
      "aiReasoning": "One sentence on why it fits here"
    }
  ]
}

- energy is an integer from 1 (calm) to 100 (peak intensity)
- duration is in seconds
</output_schema>
"""


def describe_track(track: Track) -> str:
    parts = [f'"{track.title}" by {track.artist}']
    details = []
    if track.bpm is not None:
        details.append(f"{track.bpm:g} BPM")
    if track.energy is not None:
        details.append(f"energy {track.energy:g}")
    if track.key:
        details.append(f"key {track.key}")
    if details:
        parts.append(f"({', '.join(details)})")
    return " ".join(parts)


def build_constraint_lines(constraints: Constraints) -> list[str]:
    """Hard and soft constraints as instruction lines."""
    lines: list[str] = []

    if constraints.bpm_range:
        lines.append(f"BPM: Keep BPM between {constraints.bpm_range[0]}-{constraints.bpm_range[1]}")
    if constraints.energy_range:
        lines.append(
            f"ENERGY: Keep energy between {constraints.energy_range[0]}-{constraints.energy_range[1]} (1-100 scale)"
        )
    if constraints.arc_template:
        lines.append(f"ENERGY ARC: {ARC_TEMPLATES[constraints.arc_template]}")
    if constraints.moods:
        lines.append(f"MOODS: Focus on {', '.join(constraints.moods)} vibes")
    if constraints.genres:
        lines.append(f"PREFERRED GENRES: {', '.join(constraints.genres)}")
    if constraints.avoid_genres:
        lines.append(f"AVOID GENRES: {', '.join(constraints.avoid_genres)}")
    if constraints.avoid_artists:
        lines.append(f"AVOID ARTISTS: {', '.join(constraints.avoid_artists)}")
    if constraints.avoid_explicit:
        lines.append("CONTENT: Clean tracks only - no explicit content")
    if constraints.discovery is not None:
        if constraints.discovery < 30:
            lines.append("SELECTION: Use well-known hits")
        elif constraints.discovery > 70:
            lines.append("SELECTION: Use deep cuts and obscure selections")
    if constraints.target_duration_minutes:
        lines.append(f"TOTAL LENGTH: About {constraints.target_duration_minutes} minutes")
    if constraints.anchor_tracks:
        anchors = ", ".join(f'"{a.title}" by {a.artist}' for a in constraints.anchor_tracks)
        lines.append(f"MUST INCLUDE: {anchors}")

    return lines


def build_user_prompt(constraints: Constraints, context: GenerationContext) -> str:
    """User message for a generation, segment regeneration, or swap."""
    if context.replacing is not None:
        # A single swap cannot honour must-include tracks
        constraints = replace(constraints, anchor_tracks=())
    lines: list[str] = []

    if context.replacing is not None:
        lines.append(f"Suggest ONE replacement for {describe_track(context.replacing)}.")
    elif context.segment_name:
        lines.append(
            f'=== REGENERATING SEGMENT: {context.segment_name.upper()} ===\n'
            f'Generate exactly {context.count} REPLACEMENT tracks for the "{context.segment_name}" segment.'
        )
    else:
        lines.append(f"Generate exactly {context.count} tracks for this DJ set.")

    if constraints.prompt.strip():
        lines.append(f'SET VIBE: "{constraints.prompt.strip()}"')

    lines.extend(build_constraint_lines(constraints))

    if context.previous is not None:
        lines.append(
            f"TRANSITION FROM: The set before this point ends with {describe_track(context.previous)}. "
            f"Ensure a smooth transition."
        )
    if context.next is not None:
        lines.append(
            f"TRANSITION TO: The set continues with {describe_track(context.next)}. "
            f"Ensure a smooth transition."
        )
    if context.exclude_keys:
        excluded = ", ".join(sorted(context.exclude_keys))
        lines.append(f"ALREADY IN THE SET (do not suggest): {excluded}")

    return "\n".join(lines)
