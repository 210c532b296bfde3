"""Transition quality scoring between adjacent tracks.

Thresholds are fixed policy and shared with every client that renders
transition colors:

- smooth: bpm delta <= 5 AND energy delta <= 20
- ok:     bpm delta <= 15 OR energy delta <= 40
- jarring: everything else

A missing bpm or energy on either track scores as maximally dissimilar
(``MISSING_DELTA``). This is a policy choice pending product clarification:
it forces a non-smooth verdict, and the missing half can never satisfy its
side of the ``ok`` rule.
"""

from collections import Counter
from dataclasses import dataclass
from typing import Iterable, Sequence

from ytdj.harmonic import key_compatibility
from ytdj.models import PlaylistNode, Track, TransitionQuality, TransitionScore

SMOOTH_MAX_BPM_DELTA = 5
SMOOTH_MAX_ENERGY_DELTA = 20
OK_MAX_BPM_DELTA = 15
OK_MAX_ENERGY_DELTA = 40

MISSING_DELTA = float("inf")


def _delta(a: float | None, b: float | None) -> float:
    if a is None or b is None:
        return MISSING_DELTA
    return abs(a - b)


def score(a: Track, b: Track, from_id: str = "", to_id: str = "") -> TransitionQuality:
    """Score the transition from track ``a`` into track ``b``."""
    bpm_delta = _delta(a.bpm, b.bpm)
    energy_delta = _delta(a.energy, b.energy)

    verdict: TransitionScore
    if bpm_delta <= SMOOTH_MAX_BPM_DELTA and energy_delta <= SMOOTH_MAX_ENERGY_DELTA:
        verdict = "smooth"
    elif bpm_delta <= OK_MAX_BPM_DELTA or energy_delta <= OK_MAX_ENERGY_DELTA:
        verdict = "ok"
    else:
        verdict = "jarring"

    return TransitionQuality(
        from_id=from_id,
        to_id=to_id,
        score=verdict,
        bpm_delta=bpm_delta,
        energy_delta=energy_delta,
        key_compatibility=key_compatibility(a.key, b.key),
    )


def score_nodes(prev: PlaylistNode, nxt: PlaylistNode) -> TransitionQuality:
    return score(prev.track, nxt.track, from_id=prev.id, to_id=nxt.id)


@dataclass(frozen=True)
class TransitionSummary:
    """Aggregate view of a set's transitions."""

    smooth: int
    ok: int
    jarring: int
    average_bpm: float | None
    average_energy: float | None

    @property
    def total(self) -> int:
        return self.smooth + self.ok + self.jarring


def summarize(nodes: Sequence[PlaylistNode]) -> TransitionSummary:
    """Count verdicts along ``nodes`` and average the known bpm/energy.

    Tracks with no bpm (or energy) are left out of the matching average.
    """
    counts: Counter[str] = Counter(
        score_nodes(prev, nxt).score for prev, nxt in zip(nodes, nodes[1:])
    )
    return TransitionSummary(
        smooth=counts["smooth"],
        ok=counts["ok"],
        jarring=counts["jarring"],
        average_bpm=_mean(n.track.bpm for n in nodes),
        average_energy=_mean(n.track.energy for n in nodes),
    )


def _mean(values: Iterable[float | None]) -> float | None:
    known = [v for v in values if v is not None]
    if not known:
        return None
    return sum(known) / len(known)
