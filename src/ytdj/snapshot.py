"""Save and restore a set as a JSON file.

The CLI keeps a set between invocations in one JSON document:

    {
      "version": 1,
      "saved_at": "...",
      "identity": "local",
      "constraints": {...} | null,
      "nodes": [...],
      "segments": [...],
      "active_segment_id": "..." | null,
      "ranges": [...]            # derived, informational only
    }

Ranges are written for readers of the file but ignored on load; they are
always derived again from the segments and the node count.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ytdj.credits import CreditLedger
from ytdj.models import Constraints
from ytdj.orchestrator import SetEngine
from ytdj.providers.base import TrackProvider
from ytdj.segments import SegmentManager
from ytdj.sequence import PlaylistSequence

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


def engine_to_dict(engine: SetEngine) -> dict[str, Any]:
    data = engine.to_dict()
    data["version"] = SNAPSHOT_VERSION
    data["saved_at"] = datetime.now(timezone.utc).isoformat()
    return data


def save_set(engine: SetEngine, path: Path) -> Path:
    """Write the engine's set to ``path`` (parent directories are created)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(engine_to_dict(engine), indent=2))
    logger.info(f"Saved set ({len(engine.sequence)} tracks) to {path}")
    return path


def read_snapshot(path: Path) -> dict[str, Any]:
    """Load and sanity-check a snapshot document.

    Raises:
        FileNotFoundError: If ``path`` does not exist.
        ValueError: If the file is not a set snapshot this version can read.
    """
    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise ValueError(f"{path} is not valid JSON: {e}") from e
    if not isinstance(data, dict) or "nodes" not in data:
        raise ValueError(f"{path} is not a set snapshot")
    version = data.get("version", SNAPSHOT_VERSION)
    if version > SNAPSHOT_VERSION:
        raise ValueError(f"{path} was written by a newer version (v{version})")
    return data


def engine_from_dict(
    data: dict[str, Any],
    provider: TrackProvider,
    ledger: CreditLedger,
    identity: str | None = None,
    default_track_count: int | None = None,
    average_track_seconds: float | None = None,
) -> SetEngine:
    segments = SegmentManager.from_list(data.get("segments") or [])
    if data.get("active_segment_id"):
        segments.set_active_segment(data["active_segment_id"])
    constraints = Constraints.from_dict(data["constraints"]) if data.get("constraints") else None

    kwargs: dict[str, Any] = {}
    if default_track_count is not None:
        kwargs["default_track_count"] = default_track_count
    return SetEngine(
        provider=provider,
        ledger=ledger,
        identity=identity or data.get("identity") or "local",
        sequence=PlaylistSequence.from_list(data.get("nodes") or []),
        segments=segments,
        constraints=constraints,
        average_track_seconds=average_track_seconds,
        **kwargs,
    )


def load_set(
    path: Path,
    provider: TrackProvider,
    ledger: CreditLedger,
    identity: str | None = None,
    default_track_count: int | None = None,
    average_track_seconds: float | None = None,
) -> SetEngine:
    """Rebuild an engine around the set saved at ``path``."""
    engine = engine_from_dict(
        read_snapshot(path),
        provider,
        ledger,
        identity=identity,
        default_track_count=default_track_count,
        average_track_seconds=average_track_seconds,
    )
    logger.debug(f"Loaded set ({len(engine.sequence)} tracks) from {path}")
    return engine
