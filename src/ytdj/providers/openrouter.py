"""OpenRouter-backed track provider.

Asks an OpenAI-compatible chat model (through OpenRouter) for real tracks
that fit a brief, then parses the loosely structured JSON it returns into
Track values. The client is created with ``max_retries=0``: retry policy
belongs to the caller, never to the engine.
"""

import hashlib
import json
import logging
import re
from typing import Any

import httpx
from openai import OpenAI

from ytdj.config import Settings, get_settings
from ytdj.errors import ProviderError
from ytdj.models import Constraints, Track
from ytdj.providers.base import GenerationContext, TrackProvider
from ytdj.providers.prompts import SYSTEM_PROMPT, build_user_prompt

logger = logging.getLogger(__name__)

DEFAULT_TRACK_SECONDS = 240.0

_TRAILING_COMMA = re.compile(r",(\s*[}\]])")


def create_client(settings: Settings | None = None) -> OpenAI:
    """Create an OpenAI client configured for OpenRouter."""
    s = settings or get_settings()
    if not s.openrouter_api_key:
        raise ProviderError("OPENROUTER_API_KEY is not configured", provider="openrouter")
    return OpenAI(
        base_url=s.openrouter_base_url,
        api_key=s.openrouter_api_key,
        timeout=httpx.Timeout(s.provider_timeout_s, connect=10.0),
        max_retries=0,
    )


def strip_fences(content: str) -> str:
    """Remove a surrounding markdown code fence, if present."""
    content = content.strip()
    if content.startswith("```"):
        first_newline = content.find("\n")
        if first_newline != -1:
            content = content[first_newline + 1:]
        if content.endswith("```"):
            content = content[:-3].strip()
    return content


def repair_json(text: str) -> str:
    """Best-effort fix for common model JSON mistakes.

    Cuts anything after the last balanced top-level bracket and drops
    trailing commas before a closing bracket.
    """
    depth = 0
    last_valid_end = -1
    in_string = False
    escape_next = False

    for i, char in enumerate(text):
        if escape_next:
            escape_next = False
            continue
        if char == "\\":
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char in "[{":
            depth += 1
        elif char in "]}":
            depth -= 1
            if depth == 0:
                last_valid_end = i

    if 0 < last_valid_end < len(text) - 1:
        text = text[:last_valid_end + 1]
    return _TRAILING_COMMA.sub(r"\1", text)


def _load_json(content: str) -> Any:
    try:
        return json.loads(content)
    except json.JSONDecodeError:
        repaired = repair_json(content)
        try:
            return json.loads(repaired)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON from track provider: {e}") from e


def _extract_rows(data: Any) -> list[dict[str, Any]]:
    if isinstance(data, list):
        return [row for row in data if isinstance(row, dict)]
    if isinstance(data, dict):
        for key in ("tracks", "playlist", "items"):
            if isinstance(data.get(key), list):
                return [row for row in data[key] if isinstance(row, dict)]
        if "title" in data and "artist" in data:
            return [data]
    raise ValueError("Track provider response holds no track list")


def track_id_for(artist: str, title: str) -> str:
    """Stable id derived from the normalized artist/title pair."""
    key = f"{artist.strip().lower()}|{title.strip().lower()}"
    return hashlib.sha256(key.encode()).hexdigest()[:12]


def _number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def row_to_track(row: dict[str, Any]) -> Track | None:
    """Convert one model row to a Track, or None if it is unusable."""
    title = str(row.get("title") or "").strip()
    artist = str(row.get("artist") or "").strip()
    if not title or not artist:
        return None

    bpm = _number(row.get("bpm"))
    if bpm is not None and bpm <= 0:
        bpm = None

    energy = _number(row.get("energy"))
    if energy is not None:
        # Some models answer on a 0-1 scale
        if 0 < energy <= 1 and isinstance(row.get("energy"), float):
            energy = energy * 100
        energy = min(max(energy, 0.0), 100.0)

    duration = _number(row.get("duration"))
    if duration is None or duration <= 0:
        duration = DEFAULT_TRACK_SECONDS

    reasoning = row.get("aiReasoning") or row.get("ai_reasoning") or row.get("reasoning")
    if isinstance(reasoning, list):
        reasoning = " ".join(str(r) for r in reasoning)

    return Track(
        id=str(row.get("id") or track_id_for(artist, title)),
        title=title,
        artist=artist,
        duration=duration,
        bpm=bpm,
        energy=energy,
        key=row.get("key") or None,
        genre=row.get("genre") or None,
        thumbnail=row.get("thumbnail") or None,
        ai_reasoning=reasoning or None,
    )


def parse_tracks(content: str) -> list[Track]:
    """Parse a model response into tracks, skipping unusable rows."""
    rows = _extract_rows(_load_json(strip_fences(content)))
    tracks: list[Track] = []
    for row in rows:
        track = row_to_track(row)
        if track is None:
            logger.warning(f"Skipping track row without title/artist: {row}")
            continue
        tracks.append(track)
    return tracks


class OpenRouterTrackProvider:
    """Track provider that asks a chat model for real, released tracks.

    ``provider`` is the tier-facing name ("openai", "claude", "gemini"); it
    selects the OpenRouter model from settings.
    """

    def __init__(
        self,
        provider: str = "openai",
        model: str | None = None,
        client: OpenAI | None = None,
        settings: Settings | None = None,
    ) -> None:
        s = settings or get_settings()
        self._name = provider
        self._model = model or s.model_for(provider)
        self._temperature = s.provider_temperature
        self._settings = s
        self._client = client

    @property
    def name(self) -> str:
        return self._name

    @property
    def model(self) -> str:
        return self._model

    def _get_client(self) -> OpenAI:
        """Lazy-load the OpenRouter client."""
        if self._client is None:
            self._client = create_client(self._settings)
        return self._client

    def generate_tracks(self, constraints: Constraints, context: GenerationContext) -> list[Track]:
        client = self._get_client()
        user_prompt = build_user_prompt(constraints, context)

        logger.info(f"Requesting {context.count} track(s) from {self._name} ({self._model})")

        try:
            response = client.chat.completions.create(
                model=self._model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": user_prompt},
                ],
                temperature=self._temperature,
                response_format={"type": "json_object"},
            )
        except Exception as e:
            raise ProviderError(f"OpenRouter API error: {e}", provider=self._name) from e

        if not response.choices:
            raise ProviderError("Empty response from track provider", provider=self._name)
        content = response.choices[0].message.content
        if not content:
            raise ProviderError("Empty response from track provider", provider=self._name)

        try:
            tracks = parse_tracks(content)
        except ValueError as e:
            raise ProviderError(str(e), provider=self._name) from e

        logger.info(f"{self._name} returned {len(tracks)} track(s)")
        return tracks


# Type assertion to verify protocol compliance
def _check_protocol() -> TrackProvider:
    return OpenRouterTrackProvider(client=OpenAI(api_key="unused"))
