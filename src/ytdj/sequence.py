"""Ordered container of playlist nodes.

Every structural mutation recomputes ``transition_to_next`` for the node
before the affected range, every pair inside it, and the pair leading out of
it, so no stale transition survives a mutation. Lock and lifecycle changes
never touch transitions.
"""

import logging
from typing import Any, Iterator, Sequence

from ytdj.errors import LockedNodeConflict, NodeLocked, NotFound
from ytdj.models import NODE_STATES, NodeState, PlaylistNode, Track
from ytdj.transitions import score_nodes

logger = logging.getLogger(__name__)


class PlaylistSequence:
    """Ordered list of PlaylistNodes with invariant-preserving mutations."""

    def __init__(self, nodes: Sequence[PlaylistNode] | None = None) -> None:
        self._nodes: list[PlaylistNode] = []
        if nodes:
            self._check_unique_ids(nodes)
            self._nodes = list(nodes)
        self._recompute(0, len(self._nodes) - 1)

    @classmethod
    def from_tracks(cls, tracks: Sequence[Track]) -> "PlaylistSequence":
        return cls([PlaylistNode(track=t) for t in tracks])

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[PlaylistNode]:
        return iter(list(self._nodes))

    def __getitem__(self, index: int) -> PlaylistNode:
        return self._nodes[index]

    @property
    def nodes(self) -> list[PlaylistNode]:
        """Snapshot of the current node order."""
        return list(self._nodes)

    @property
    def tracks(self) -> list[Track]:
        return [n.track for n in self._nodes]

    @property
    def track_ids(self) -> set[str]:
        return {n.track.id for n in self._nodes}

    @property
    def total_duration(self) -> float:
        """Total length in seconds."""
        return sum(n.track.duration for n in self._nodes)

    def index_of(self, node_id: str) -> int:
        for i, node in enumerate(self._nodes):
            if node.id == node_id:
                return i
        raise NotFound("node", node_id)

    def get(self, node_id: str) -> PlaylistNode:
        return self._nodes[self.index_of(node_id)]

    def contains(self, node_id: str) -> bool:
        return any(n.id == node_id for n in self._nodes)

    def neighbors(self, index: int) -> tuple[PlaylistNode | None, PlaylistNode | None]:
        """Nodes immediately before and after ``index`` (by position)."""
        self._check_index(index)
        prev = self._nodes[index - 1] if index > 0 else None
        nxt = self._nodes[index + 1] if index + 1 < len(self._nodes) else None
        return prev, nxt

    def slice(self, start_index: int, end_index: int) -> list[PlaylistNode]:
        """Nodes in the inclusive range; empty when ``end_index < start_index``."""
        if end_index < start_index:
            return []
        self._check_range(start_index, end_index)
        return self._nodes[start_index:end_index + 1]

    # ------------------------------------------------------------------
    # Node state
    # ------------------------------------------------------------------

    def lock(self, node_id: str, owner: str | None = None) -> PlaylistNode:
        """Lock a node so no regeneration replaces its track."""
        node = self.get(node_id)
        if not node.is_locked:
            node.is_locked = True
            node.locked_by = owner
        return node

    def unlock(self, node_id: str, owner: str | None = None) -> PlaylistNode:
        """Unlock a node; only the caller that locked it may do so."""
        node = self.get(node_id)
        if not node.is_locked:
            return node
        if node.locked_by is not None and owner is not None and node.locked_by != owner:
            raise NodeLocked(node_id, locked_by=node.locked_by)
        node.is_locked = False
        node.locked_by = None
        return node

    def set_lifecycle_state(self, node_id: str, state: NodeState) -> PlaylistNode:
        if state not in NODE_STATES:
            raise ValueError(f"Unknown node state '{state}'")
        node = self.get(node_id)
        node.state = state
        return node

    # ------------------------------------------------------------------
    # Structural mutations
    # ------------------------------------------------------------------

    def insert(self, node: PlaylistNode, at_index: int) -> None:
        if not 0 <= at_index <= len(self._nodes):
            raise IndexError(f"Insert index {at_index} outside [0, {len(self._nodes)}]")
        if self.contains(node.id):
            raise ValueError(f"Node '{node.id}' is already in the sequence")
        self._nodes.insert(at_index, node)
        self._recompute(at_index - 1, at_index)

    def remove(self, node_id: str) -> PlaylistNode:
        index = self.index_of(node_id)
        node = self._nodes.pop(index)
        node.transition_to_next = None
        self._recompute(index - 1, index - 1)
        return node

    def reorder(self, new_order: Sequence[str]) -> None:
        """Reorder by a full permutation of the current node ids."""
        by_id = {n.id: n for n in self._nodes}
        if len(new_order) != len(self._nodes) or set(new_order) != set(by_id):
            raise ValueError("New order must be a permutation of the current node ids")
        self._nodes = [by_id[node_id] for node_id in new_order]
        self._recompute(0, len(self._nodes) - 1)

    def replace_range(
        self,
        start_index: int,
        end_index: int,
        new_nodes: Sequence[PlaylistNode],
    ) -> list[PlaylistNode]:
        """Replace the inclusive range with ``new_nodes`` and return the old nodes.

        Raises:
            IndexError: If the range is malformed (caller bug).
            LockedNodeConflict: If any node inside the range is locked.
        """
        self._check_range(start_index, end_index)
        old = self._nodes[start_index:end_index + 1]
        locked = [n.id for n in old if n.is_locked]
        if locked:
            raise LockedNodeConflict(start_index, end_index, locked)

        outside = {n.id for n in self._nodes[:start_index]} | {
            n.id for n in self._nodes[end_index + 1:]
        }
        self._check_unique_ids(new_nodes)
        clashes = [n.id for n in new_nodes if n.id in outside]
        if clashes:
            raise ValueError(f"Replacement nodes reuse ids outside the range: {clashes}")

        for node in old:
            node.transition_to_next = None
        self._nodes[start_index:end_index + 1] = list(new_nodes)
        self._recompute(start_index - 1, start_index + len(new_nodes) - 1)
        logger.debug(
            f"Replaced [{start_index}, {end_index}] ({len(old)} nodes) with {len(new_nodes)} nodes"
        )
        return old

    def unlocked_runs(self, start_index: int, end_index: int) -> list[tuple[int, int]]:
        """Split an inclusive range into maximal runs of unlocked nodes."""
        self._check_range(start_index, end_index)
        runs: list[tuple[int, int]] = []
        run_start: int | None = None
        for i in range(start_index, end_index + 1):
            if self._nodes[i].is_locked:
                if run_start is not None:
                    runs.append((run_start, i - 1))
                    run_start = None
            elif run_start is None:
                run_start = i
        if run_start is not None:
            runs.append((run_start, end_index))
        return runs

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_list(self) -> list[dict[str, Any]]:
        return [n.to_dict() for n in self._nodes]

    @classmethod
    def from_list(cls, data: list[dict[str, Any]]) -> "PlaylistSequence":
        return cls([PlaylistNode.from_dict(item) for item in data])

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _recompute(self, first: int, last: int) -> None:
        """Recompute outgoing transitions for nodes ``first..last`` (clamped)."""
        count = len(self._nodes)
        for i in range(max(first, 0), min(last, count - 1) + 1):
            if i + 1 < count:
                self._nodes[i].transition_to_next = score_nodes(self._nodes[i], self._nodes[i + 1])
            else:
                self._nodes[i].transition_to_next = None

    def _check_index(self, index: int) -> None:
        if not 0 <= index < len(self._nodes):
            raise IndexError(f"Index {index} outside sequence of length {len(self._nodes)}")

    def _check_range(self, start_index: int, end_index: int) -> None:
        if start_index > end_index:
            raise IndexError(f"Malformed range: start {start_index} > end {end_index}")
        if start_index < 0 or end_index >= len(self._nodes):
            raise IndexError(
                f"Range [{start_index}, {end_index}] outside sequence of length {len(self._nodes)}"
            )

    @staticmethod
    def _check_unique_ids(nodes: Sequence[PlaylistNode]) -> None:
        ids = [n.id for n in nodes]
        if len(ids) != len(set(ids)):
            raise ValueError("Node ids must be unique within a sequence")
