"""Credit-gated generation orchestrator.

SetEngine is the single front door for building and editing one set. It:
- Checks the credit ledger (and tier entitlements) before any provider call
- Calls the provider outside its lock, with no automatic retry
- Validates provider output (exclusions, duplicates, count)
- Merges results through PlaylistSequence.replace_range over unlocked runs
- Consumes exactly one credit per successful call, atomically with the merge
- Tracks in-flight regenerations so conflicting requests fail fast

Concurrency model:
    The engine spawns no threads. A per-set RLock guards all state and is
    never held across a provider call. In-flight work is recorded in a
    registry instead: a second regeneration of the same target fails with
    RegenerationInProgress, and segment-structure changes issued while any
    regeneration is pending fail with StructuralChangeBlocked. Node edits
    (insert/remove/reorder) stay allowed; if they invalidate an in-flight
    target the merge fails with StaleTarget. The credit is still consumed
    in that case because the provider call succeeded (no refund).
"""

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict
from typing import Any

from ytdj.credits import CheckResult, CreditLedger
from ytdj.errors import (
    InsufficientCredits,
    NodeBusy,
    NodeLocked,
    ProviderError,
    ProviderNotAllowed,
    RegenerationInProgress,
    SegmentedSetsDisabled,
    StaleTarget,
    StructuralChangeBlocked,
)
from ytdj.models import (
    Constraints,
    DurationSpec,
    NodeState,
    PlaylistNode,
    ReplacedRange,
    SegmentConstraints,
    SegmentRange,
    SetSegment,
    Track,
)
from ytdj.providers.base import GenerationContext, TrackProvider
from ytdj.segments import DEFAULT_AVERAGE_TRACK_SECONDS, SegmentManager
from ytdj.sequence import PlaylistSequence

logger = logging.getLogger(__name__)

DEFAULT_TRACK_COUNT = 15
FULL_SET_TARGET = "set"


def filter_tracks(
    tracks: list[Track],
    exclude_ids: frozenset[str],
    exclude_keys: frozenset[str],
    count: int,
) -> list[Track]:
    """Drop excluded and duplicate suggestions, then trim to ``count``."""
    seen_ids = set(exclude_ids)
    seen_keys = set(exclude_keys)
    kept: list[Track] = []
    dropped = 0
    for track in tracks:
        key = track.identity_key()
        if track.id in seen_ids or key in seen_keys:
            dropped += 1
            continue
        seen_ids.add(track.id)
        seen_keys.add(key)
        kept.append(track)
    if dropped:
        logger.warning(f"Dropped {dropped} excluded or duplicate suggestion(s)")
    if len(kept) > count:
        logger.debug(f"Discarding {len(kept) - count} surplus suggestion(s)")
    return kept[:count]


class SetEngine:
    """Build and regenerate one set on behalf of one identity.

    Args:
        provider: Track provider collaborator.
        ledger: Credit ledger collaborator.
        identity: Caller identity used for credits and node locks.
        sequence: Existing sequence to edit (default: empty).
        segments: Existing segment layout (default: none, implicit segment).
        constraints: Brief the set was generated from, reused as the default
            for regenerations.
        default_track_count: Track count when constraints do not set one.
        average_track_seconds: Track length used to turn minute-based
            segment durations into track counts (default 240 s). It stays
            fixed so ranges depend only on segment order, durations and
            sequence length.
    """

    def __init__(
        self,
        provider: TrackProvider,
        ledger: CreditLedger,
        identity: str,
        sequence: PlaylistSequence | None = None,
        segments: SegmentManager | None = None,
        constraints: Constraints | None = None,
        default_track_count: int = DEFAULT_TRACK_COUNT,
        average_track_seconds: float | None = None,
    ) -> None:
        self.provider = provider
        self.ledger = ledger
        self.identity = identity
        self.sequence = sequence if sequence is not None else PlaylistSequence()
        self.segments = segments if segments is not None else SegmentManager()
        self.constraints = constraints
        self._default_track_count = default_track_count
        self._average_track_seconds = average_track_seconds or DEFAULT_AVERAGE_TRACK_SECONDS

        self._lock = threading.RLock()
        self._inflight_segments: dict[str, list[str]] = {}
        self._inflight_nodes: set[str] = set()
        self._full_generation = False

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    def segment_ranges(self) -> list[SegmentRange]:
        """Current derived ranges (the implicit segment when unsegmented)."""
        with self._lock:
            return self._ranges_locked()

    def pending(self) -> list[str]:
        """Targets with a generation in flight."""
        with self._lock:
            return self._pending()

    def to_dict(self) -> dict[str, Any]:
        """Serializable view of the set (nodes, segments, brief)."""
        with self._lock:
            return {
                "identity": self.identity,
                "constraints": self.constraints.to_dict() if self.constraints else None,
                "nodes": self.sequence.to_list(),
                "segments": self.segments.to_list(),
                "active_segment_id": self.segments.active_segment_id,
                "ranges": [asdict(r) for r in self._ranges_locked()],
            }

    def _ranges_locked(self) -> list[SegmentRange]:
        return self.segments.derive_ranges(len(self.sequence), self._average_track_seconds)

    def _pending(self) -> list[str]:
        pending = [f"segment:{sid}" for sid in self._inflight_segments]
        pending.extend(f"node:{nid}" for nid in sorted(self._inflight_nodes))
        if self._full_generation:
            pending.append(FULL_SET_TARGET)
        return pending

    # ------------------------------------------------------------------
    # Gates
    # ------------------------------------------------------------------

    def _authorize(self) -> CheckResult:
        """Credit and provider entitlement check before an external call."""
        check = self.ledger.check(self.identity)
        if not check.allowed:
            raise InsufficientCredits(
                self.identity,
                credits_remaining=check.credits_remaining,
                tier=check.tier,
                reason=check.reason,
            )
        if self.provider.name not in check.config.allowed_providers:
            raise ProviderNotAllowed(self.provider.name, check.tier)
        return check

    def _require_segmented_sets(self, check: CheckResult | None = None) -> None:
        check = check or self.ledger.check(self.identity)
        if not check.config.has_segmented_sets:
            raise SegmentedSetsDisabled(check.tier)

    def _block_structural(self, operation: str) -> None:
        pending = self._pending()
        if pending:
            raise StructuralChangeBlocked(operation, pending)

    def _block_during_full_generation(self, operation: str) -> None:
        if self._full_generation:
            raise StructuralChangeBlocked(operation, [FULL_SET_TARGET])

    def _reject_during_full_generation(self) -> None:
        if self._full_generation:
            raise RegenerationInProgress(FULL_SET_TARGET)

    def _consume_or_raise(self) -> None:
        if not self.ledger.consume(self.identity):
            check = self.ledger.check(self.identity)
            raise InsufficientCredits(
                self.identity,
                credits_remaining=check.credits_remaining,
                tier=check.tier,
                reason="consumed_concurrently",
            )

    def _stale(self, target_id: str, detail: str) -> StaleTarget:
        consumed = self.ledger.consume(self.identity)
        logger.warning(
            f"Discarding result for {target_id}: {detail} "
            f"(credit {'consumed' if consumed else 'not consumed, balance was zero'})"
        )
        return StaleTarget(target_id, detail, credit_consumed=consumed)

    def _current_exclusions(self, replacing: set[str]) -> tuple[frozenset[str], frozenset[str]]:
        """Track ids and keys in the set now, minus the nodes being replaced. Lock held."""
        kept = [n.track for n in self.sequence if n.id not in replacing]
        return frozenset(t.id for t in kept), frozenset(t.identity_key() for t in kept)

    def _call_provider(self, constraints: Constraints, context: GenerationContext) -> list[Track]:
        logger.info(
            f"Calling provider '{self.provider.name}' for {context.count} track(s)"
            + (f" in segment '{context.segment_name}'" if context.segment_name else "")
        )
        try:
            return list(self.provider.generate_tracks(constraints, context))
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(str(e) or type(e).__name__, provider=self.provider.name) from e

    @contextmanager
    def _tracking(self, registry: str, target_id: str) -> Iterator[None]:
        """Hold a target in the in-flight registry until the block exits.

        The caller must register under the lock; this only guarantees removal.
        """
        try:
            yield
        finally:
            with self._lock:
                if registry == "segment":
                    self._inflight_segments.pop(target_id, None)
                elif registry == "node":
                    self._inflight_nodes.discard(target_id)
                else:
                    self._full_generation = False

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def generate(self, constraints: Constraints) -> PlaylistSequence:
        """Build a whole new set from ``constraints``.

        Locked nodes of the current set survive at their positions (clamped
        to the new length); every other node is replaced. Segments are
        cleared so the new set is one implicit segment.
        """
        with self._lock:
            self._block_structural("generate a new set")
            self._authorize()
            count = constraints.track_count or self._default_track_count
            locked = [(i, n) for i, n in enumerate(self.sequence) if n.is_locked]
            wanted = max(count - len(locked), 0)
            locked_tracks = [n.track for _, n in locked]
            context = GenerationContext(
                count=wanted,
                exclude_ids=frozenset(t.id for t in locked_tracks),
                exclude_keys=frozenset(t.identity_key() for t in locked_tracks),
            )
            self._full_generation = True

        with self._tracking("set", FULL_SET_TARGET):
            tracks: list[Track] = []
            if wanted:
                tracks = self._call_provider(constraints, context)
                tracks = filter_tracks(tracks, context.exclude_ids, context.exclude_keys, wanted)
                if not tracks:
                    raise ProviderError("Provider returned no usable tracks", provider=self.provider.name)

            with self._lock:
                # Re-read locks: a node may have been locked while the call was out
                locked = [(i, n) for i, n in enumerate(self.sequence) if n.is_locked]
                locked_keys = {n.track.identity_key() for _, n in locked}
                nodes = [PlaylistNode(track=t) for t in tracks if t.identity_key() not in locked_keys]
                for index, node in locked:
                    nodes.insert(min(index, len(nodes)), node)
                if wanted:
                    self._consume_or_raise()
                self.sequence = PlaylistSequence(nodes)
                self.segments.clear()
                self.constraints = constraints
                logger.info(f"Generated set with {len(nodes)} tracks ({len(locked)} locked kept)")
                return self.sequence

    def regenerate_node(self, node_id: str, constraints: Constraints | None = None) -> PlaylistNode:
        """Swap one node's track, using its positional neighbours as context.

        The replacement is a new node (new id) at the same position.
        """
        with self._lock:
            self._reject_during_full_generation()
            node = self.sequence.get(node_id)
            if node.is_locked:
                raise NodeLocked(node_id, locked_by=node.locked_by)
            if node_id in self._inflight_nodes:
                raise RegenerationInProgress(node_id)
            for segment_id, range_ids in self._inflight_segments.items():
                if node_id in range_ids:
                    raise RegenerationInProgress(segment_id)
            self._authorize()

            index = self.sequence.index_of(node_id)
            prev, nxt = self.sequence.neighbors(index)
            context = GenerationContext(
                count=1,
                previous=prev.track if prev else None,
                next=nxt.track if nxt else None,
                exclude_ids=frozenset(self.sequence.track_ids),
                exclude_keys=frozenset(n.track.identity_key() for n in self.sequence),
                replacing=node.track,
            )
            brief = constraints or self.constraints or Constraints(prompt="")
            self._inflight_nodes.add(node_id)

        with self._tracking("node", node_id):
            tracks = self._call_provider(brief, context)
            tracks = filter_tracks(tracks, context.exclude_ids, context.exclude_keys, 1)
            if not tracks:
                raise ProviderError("Provider returned no usable replacement", provider=self.provider.name)

            with self._lock:
                if not self.sequence.contains(node_id):
                    raise self._stale(node_id, "node was removed")
                # Other merges may have added the same track while the call was out
                exclude_ids, exclude_keys = self._current_exclusions({node_id})
                tracks = filter_tracks(tracks, exclude_ids, exclude_keys, 1)
                if not tracks:
                    raise ProviderError(
                        "Replacement was added to the set by another merge", provider=self.provider.name
                    )
                index = self.sequence.index_of(node_id)
                replacement = PlaylistNode(track=tracks[0])
                self._consume_or_raise()
                self.sequence.replace_range(index, index, [replacement])
                logger.info(
                    f"Swapped node {node_id} -> {replacement.id} "
                    f"('{tracks[0].title}' by {tracks[0].artist})"
                )
                return replacement

    def regenerate_segment(
        self,
        segment_id: str,
        constraints: Constraints | None = None,
    ) -> ReplacedRange:
        """Regenerate the unlocked nodes of one segment.

        The provider is asked for one track per unlocked position in the
        segment's current range, with the tracks just outside the range as
        transition context. Locked nodes keep their position and track. If
        fewer usable tracks come back, the remaining positions keep their
        current nodes.
        """
        with self._lock:
            self._reject_during_full_generation()
            check = self._authorize()
            self._require_segmented_sets(check)
            segment = self.segments.get(segment_id)
            if segment_id in self._inflight_segments:
                raise RegenerationInProgress(segment_id)

            seg_range = self.segments.range_for(
                segment_id, len(self.sequence), self._average_track_seconds
            )
            if seg_range.is_empty:
                return ReplacedRange(segment_id, seg_range.start_index, seg_range.end_index, [])

            range_nodes = self.sequence.slice(seg_range.start_index, seg_range.end_index)
            range_ids = [n.id for n in range_nodes]
            for node_id in range_ids:
                if node_id in self._inflight_nodes:
                    raise RegenerationInProgress(node_id)
            for other_id, other_ids in self._inflight_segments.items():
                if set(other_ids) & set(range_ids):
                    raise RegenerationInProgress(other_id)

            unlocked = sum(1 for n in range_nodes if not n.is_locked)
            if unlocked == 0:
                logger.info(f"Segment '{segment.name}' is fully locked; nothing to regenerate")
                return ReplacedRange(segment_id, seg_range.start_index, seg_range.end_index, range_nodes)

            before = self.sequence[seg_range.start_index - 1] if seg_range.start_index > 0 else None
            after = (
                self.sequence[seg_range.end_index + 1]
                if seg_range.end_index + 1 < len(self.sequence)
                else None
            )
            base = constraints or self.constraints or Constraints(prompt="")
            brief = base.narrowed(segment.constraints, segment.prompt)

            # An anchor on a position being replaced may come back
            anchor_keys = {a.identity_key() for a in brief.anchor_tracks}
            excluded = [
                n.track
                for n in self.sequence
                if n.is_locked or n.id not in range_ids or n.track.identity_key() not in anchor_keys
            ]
            context = GenerationContext(
                count=unlocked,
                previous=before.track if before else None,
                next=after.track if after else None,
                exclude_ids=frozenset(t.id for t in excluded),
                exclude_keys=frozenset(t.identity_key() for t in excluded),
                segment_name=segment.name,
            )
            self._inflight_segments[segment_id] = range_ids

        with self._tracking("segment", segment_id):
            tracks = self._call_provider(brief, context)
            tracks = filter_tracks(tracks, context.exclude_ids, context.exclude_keys, unlocked)
            if not tracks:
                raise ProviderError("Provider returned no usable tracks", provider=self.provider.name)

            with self._lock:
                return self._merge_segment(segment_id, range_ids, tracks)

    def _merge_segment(self, segment_id: str, range_ids: list[str], tracks: list[Track]) -> ReplacedRange:
        """Apply regenerated tracks to a segment's unlocked positions. Lock held."""
        if not self.segments.contains(segment_id):
            raise self._stale(segment_id, "segment was removed")
        seg_range = self.segments.range_for(
            segment_id, len(self.sequence), self._average_track_seconds
        )
        current_ids = (
            [] if seg_range.is_empty
            else [n.id for n in self.sequence.slice(seg_range.start_index, seg_range.end_index)]
        )
        if current_ids != range_ids:
            raise self._stale(segment_id, "segment range changed")

        replacing = {
            n.id
            for n in self.sequence.slice(seg_range.start_index, seg_range.end_index)
            if not n.is_locked
        }
        if not replacing:
            logger.info(f"Segment {segment_id} was fully locked while regenerating; nothing merged")
            return ReplacedRange(
                segment_id, seg_range.start_index, seg_range.end_index,
                self.sequence.slice(seg_range.start_index, seg_range.end_index),
            )
        exclude_ids, exclude_keys = self._current_exclusions(replacing)
        tracks = filter_tracks(tracks, exclude_ids, exclude_keys, len(replacing))
        if not tracks:
            raise ProviderError(
                "Every suggestion was added to the set by another merge", provider=self.provider.name
            )

        self._consume_or_raise()

        remaining = iter(tracks)
        replaced = 0
        for run_start, run_end in self.sequence.unlocked_runs(seg_range.start_index, seg_range.end_index):
            new_nodes: list[PlaylistNode] = []
            for _ in range(run_end - run_start + 1):
                track = next(remaining, None)
                if track is None:
                    break
                new_nodes.append(PlaylistNode(track=track))
            if not new_nodes:
                break
            self.sequence.replace_range(run_start, run_start + len(new_nodes) - 1, new_nodes)
            replaced += len(new_nodes)

        logger.info(
            f"Regenerated segment {segment_id}: replaced {replaced} node(s) in "
            f"[{seg_range.start_index}, {seg_range.end_index}]"
        )
        return ReplacedRange(
            segment_id=segment_id,
            start_index=seg_range.start_index,
            end_index=seg_range.end_index,
            nodes=self.sequence.slice(seg_range.start_index, seg_range.end_index),
            replaced_count=replaced,
        )

    # ------------------------------------------------------------------
    # Node edits
    # ------------------------------------------------------------------

    def lock(self, node_id: str, owner: str | None = None) -> PlaylistNode:
        with self._lock:
            if node_id in self._inflight_nodes:
                raise NodeBusy(node_id)
            return self.sequence.lock(node_id, owner=owner or self.identity)

    def unlock(self, node_id: str, owner: str | None = None) -> PlaylistNode:
        with self._lock:
            if node_id in self._inflight_nodes:
                raise NodeBusy(node_id)
            return self.sequence.unlock(node_id, owner=owner or self.identity)

    def set_lifecycle_state(self, node_id: str, state: NodeState) -> PlaylistNode:
        with self._lock:
            return self.sequence.set_lifecycle_state(node_id, state)

    def insert_track(self, track: Track, at_index: int) -> PlaylistNode:
        with self._lock:
            self._block_during_full_generation("insert a track")
            node = PlaylistNode(track=track)
            self.sequence.insert(node, at_index)
            return node

    def remove_node(self, node_id: str) -> PlaylistNode:
        with self._lock:
            self._block_during_full_generation("remove a node")
            if node_id in self._inflight_nodes:
                raise NodeBusy(node_id)
            return self.sequence.remove(node_id)

    def reorder(self, new_order: list[str]) -> None:
        with self._lock:
            self._block_during_full_generation("reorder the set")
            self.sequence.reorder(new_order)

    # ------------------------------------------------------------------
    # Segment structure
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
        with self._lock:
            self._require_segmented_sets()
            self._block_structural("add a segment")
            return self.segments.add_segment(
                duration,
                after_segment_id=after_segment_id,
                name=name,
                color=color,
                prompt=prompt,
                constraints=constraints,
            )

    def remove_segment(self, segment_id: str) -> SetSegment:
        with self._lock:
            self._block_structural("remove a segment")
            return self.segments.remove_segment(segment_id, self._average_track_seconds)

    def update_segment(
        self,
        segment_id: str,
        name: str | None = None,
        color: str | None = None,
        duration: DurationSpec | None = None,
        prompt: str | None = None,
        constraints: SegmentConstraints | None = None,
    ) -> SetSegment:
        """Edit a segment. Changing its duration is a structural change."""
        with self._lock:
            if duration is not None:
                self._block_structural("resize a segment")
            return self.segments.update_segment(
                segment_id,
                name=name,
                color=color,
                duration=duration,
                prompt=prompt,
                constraints=constraints,
            )

    def reorder_segments(self, from_index: int, to_index: int) -> None:
        with self._lock:
            self._block_structural("reorder segments")
            self.segments.reorder_segments(from_index, to_index)

    def apply_preset(self, segment_id: str, preset_name: str) -> SetSegment:
        with self._lock:
            self._block_structural("apply a segment preset")
            return self.segments.apply_preset(segment_id, preset_name)

    def initialize_default_segments(self) -> list[SetSegment]:
        with self._lock:
            self._require_segmented_sets()
            self._block_structural("initialize segments")
            return self.segments.initialize_default_segments()

    def clear_segments(self) -> None:
        with self._lock:
            self._block_structural("clear segments")
            self.segments.clear()

    def set_active_segment(self, segment_id: str | None) -> None:
        with self._lock:
            self.segments.set_active_segment(segment_id)
