"""Tests for SetEngine: credit gating, merges, locks and in-flight conflicts."""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace

import pytest

from conftest import IDENTITY, FakeProvider, make_sequence, make_track, wait_for_calls
from ytdj.credits import InMemoryCreditLedger
from ytdj.errors import (
    InsufficientCredits,
    NodeBusy,
    NodeLocked,
    NotFound,
    ProviderError,
    ProviderNotAllowed,
    RegenerationInProgress,
    SegmentedSetsDisabled,
    StaleTarget,
    StructuralChangeBlocked,
)
from ytdj.models import AnchorTrack, Constraints, DurationMinutes, SegmentConstraints, TrackCount
from ytdj.orchestrator import SetEngine, filter_tracks
from ytdj.transitions import score


def credits(engine: SetEngine) -> int:
    return engine.ledger.check(engine.identity).credits_remaining


def add_segments(engine: SetEngine) -> list[str]:
    """Split the 10-node set into segments of 4, 4 and 2 tracks."""
    return [engine.add_segment(TrackCount(n)).id for n in (4, 4, 2)]


def assert_transitions_fresh(engine: SetEngine) -> None:
    nodes = engine.sequence.nodes
    for prev, nxt in zip(nodes, nodes[1:]):
        assert prev.transition_to_next == score(prev.track, nxt.track, prev.id, nxt.id)


@pytest.fixture
def free_engine(provider):
    ledger = InMemoryCreditLedger()
    ledger.provision(IDENTITY, "free")
    return SetEngine(provider, ledger, IDENTITY, sequence=make_sequence(10))


@pytest.fixture
def blocking_engine(ledger, brief):
    provider = FakeProvider(blocking=True)
    engine = SetEngine(provider, ledger, IDENTITY, sequence=make_sequence(10), constraints=brief)
    yield engine
    provider.release()


class TestGenerate:
    def test_builds_set_and_consumes_one_credit(self, provider, ledger, brief):
        engine = SetEngine(provider, ledger, IDENTITY)

        sequence = engine.generate(brief)

        assert len(sequence) == 10
        assert credits(engine) == 49
        assert engine.constraints is brief
        assert len(provider.calls) == 1
        assert provider.calls[0][1].count == 10
        assert [r.segment_id for r in engine.segment_ranges()] == ["set"]
        assert_transitions_fresh(engine)

    def test_clears_segments(self, engine, brief):
        add_segments(engine)

        engine.generate(brief)

        assert not engine.segments.is_segmented

    def test_keeps_locked_nodes_in_place(self, engine, provider, brief):
        engine.lock("n3")

        engine.generate(brief)

        _, context = provider.calls[0]
        assert context.count == 9
        assert "n3" in context.exclude_ids
        assert len(engine.sequence) == 10
        assert engine.sequence.index_of("n3") == 3
        assert engine.sequence.get("n3").is_locked

    def test_uses_default_track_count(self, provider, ledger):
        engine = SetEngine(provider, ledger, IDENTITY, default_track_count=6)

        engine.generate(Constraints(prompt="disco"))

        assert len(engine.sequence) == 6

    def test_insufficient_credits_skips_provider(self, provider):
        ledger = InMemoryCreditLedger()
        ledger.provision(IDENTITY, "pro", credits=0)
        engine = SetEngine(provider, ledger, IDENTITY)

        with pytest.raises(InsufficientCredits) as exc_info:
            engine.generate(Constraints(prompt="x"))

        assert exc_info.value.credits_remaining == 0
        assert provider.calls == []

    def test_provider_failure_consumes_nothing(self, engine, provider, brief):
        provider.error = RuntimeError("upstream timeout")
        before = [n.id for n in engine.sequence]

        with pytest.raises(ProviderError, match="upstream timeout"):
            engine.generate(brief)

        assert credits(engine) == 50
        assert [n.id for n in engine.sequence] == before
        assert engine.pending() == []

    def test_provider_not_allowed_on_tier(self, free_engine):
        free_engine.provider = FakeProvider(name="claude")

        with pytest.raises(ProviderNotAllowed):
            free_engine.generate(Constraints(prompt="x"))

    def test_drops_duplicate_suggestions(self, provider, ledger):
        engine = SetEngine(provider, ledger, IDENTITY)
        dup = make_track("a")
        same_song = replace(dup, id="a-remaster")
        provider.script.append([dup, make_track("a"), same_song, make_track("c")])

        engine.generate(Constraints(prompt="x", track_count=3))

        assert [n.track.id for n in engine.sequence] == ["a", "c"]


class TestRegenerateNode:
    def test_swaps_track_using_neighbours(self, engine, provider):
        replacement = engine.regenerate_node("n4")

        _, context = provider.calls[0]
        assert context.count == 1
        assert context.previous.id == "n3"
        assert context.next.id == "n5"
        assert context.replacing.id == "n4"
        assert engine.sequence.index_of(replacement.id) == 4
        assert not engine.sequence.contains("n4")
        assert credits(engine) == 49
        assert_transitions_fresh(engine)

    def test_edge_node_has_one_neighbour(self, engine, provider):
        engine.regenerate_node("n0")

        _, context = provider.calls[0]
        assert context.previous is None
        assert context.next.id == "n1"

    def test_locked_node_is_refused(self, engine, provider):
        engine.lock("n2")

        with pytest.raises(NodeLocked):
            engine.regenerate_node("n2")

        assert provider.calls == []
        assert credits(engine) == 50

    def test_unknown_node(self, engine):
        with pytest.raises(NotFound):
            engine.regenerate_node("missing")

    def test_skips_tracks_already_in_set(self, engine, provider):
        provider.script.append([make_track("n7"), make_track("fresh")])

        replacement = engine.regenerate_node("n4")

        assert replacement.track.id == "fresh"

    def test_no_usable_suggestion_is_a_provider_error(self, engine, provider):
        provider.script.append([make_track("n7")])

        with pytest.raises(ProviderError):
            engine.regenerate_node("n4")

        assert credits(engine) == 50
        assert engine.sequence.contains("n4")


class TestRegenerateSegment:
    def test_replaces_only_unlocked_nodes_in_range(self, engine, provider):
        _, middle, _ = add_segments(engine)
        engine.lock("n5")

        result = engine.regenerate_segment(middle)

        _, context = provider.calls[0]
        assert context.count == 3
        assert context.previous.id == "n3"
        assert context.next.id == "n8"
        assert (result.start_index, result.end_index) == (4, 7)
        assert result.replaced_count == 3
        assert engine.sequence[5].id == "n5"
        ids = [n.id for n in engine.sequence]
        assert ids[:4] == ["n0", "n1", "n2", "n3"]
        assert ids[8:] == ["n8", "n9"]
        assert not {"n4", "n6", "n7"} & set(ids)
        assert credits(engine) == 49
        assert_transitions_fresh(engine)

    def test_sequential_calls_both_succeed(self, engine):
        first, _, _ = add_segments(engine)

        engine.regenerate_segment(first)
        engine.regenerate_segment(first)

        assert credits(engine) == 48

    def test_narrows_brief_with_segment_constraints(self, engine, provider, brief):
        segment = engine.add_segment(
            TrackCount(10),
            prompt="go harder",
            constraints=SegmentConstraints(energy_range=(75, 100)),
        )

        engine.regenerate_segment(segment.id)

        constraints, context = provider.calls[0]
        assert constraints.energy_range == (75, 100)
        assert "go harder" in constraints.prompt
        assert context.segment_name == segment.name

    def test_short_answer_keeps_remaining_nodes(self, engine, provider):
        first, _, _ = add_segments(engine)
        provider.script.append([make_track("only")])

        result = engine.regenerate_segment(first)

        assert result.replaced_count == 1
        assert [n.id for n in engine.sequence][:4] == [engine.sequence[0].id, "n1", "n2", "n3"]
        assert engine.sequence[0].track.id == "only"

    def test_fully_locked_segment_costs_nothing(self, engine, provider):
        _, _, last = add_segments(engine)
        engine.lock("n8")
        engine.lock("n9")

        result = engine.regenerate_segment(last)

        assert result.replaced_count == 0
        assert provider.calls == []
        assert credits(engine) == 50

    def test_implicit_segment_is_not_regenerable(self, engine):
        with pytest.raises(NotFound):
            engine.regenerate_segment("set")

    def test_free_tier_cannot_use_segments(self, free_engine):
        with pytest.raises(SegmentedSetsDisabled):
            free_engine.add_segment(TrackCount(4))
        with pytest.raises(SegmentedSetsDisabled):
            free_engine.regenerate_segment("anything")


    def test_segment_anchor_on_replaced_position_may_return(self, engine, provider, brief):
        anchor = AnchorTrack(title="Track n2", artist="Artist n2")
        engine.constraints = replace(brief, anchor_tracks=(AnchorTrack(title="Elsewhere", artist="Someone"),))
        first = engine.add_segment(TrackCount(4), constraints=SegmentConstraints(anchor_tracks=(anchor,)))
        engine.add_segment(TrackCount(6))
        provider.script.append([make_track("n2"), make_track("x1"), make_track("x2"), make_track("x3")])

        result = engine.regenerate_segment(first.id)

        constraints, context = provider.calls[0]
        assert constraints.anchor_tracks == (anchor,)
        assert anchor.identity_key() not in context.exclude_keys
        assert "artist n1 - track n1" in context.exclude_keys
        assert "artist n5 - track n5" in context.exclude_keys
        assert result.replaced_count == 4
        assert [n.track.id for n in engine.sequence].count("n2") == 1
        assert engine.sequence[0].track.id == "n2"


class TestInFlightConflicts:
    def test_concurrent_regeneration_of_same_segment(self, blocking_engine):
        engine = blocking_engine
        first, _, _ = add_segments(engine)

        with ThreadPoolExecutor(max_workers=1) as pool:
            future = pool.submit(engine.regenerate_segment, first)
            assert engine.provider.started.wait(timeout=2)

            with pytest.raises(RegenerationInProgress):
                engine.regenerate_segment(first)

            engine.provider.release()
            result = future.result(timeout=5)

        assert result.replaced_count == 4
        assert len(engine.provider.calls) == 1
        assert credits(engine) == 49
        assert engine.pending() == []

    def test_structural_change_blocked_while_pending(self, blocking_engine):
        engine = blocking_engine
        first, second, _ = add_segments(engine)

        with ThreadPoolExecutor(max_workers=1) as pool:
            future = pool.submit(engine.regenerate_segment, first)
            assert engine.provider.started.wait(timeout=2)

            with pytest.raises(StructuralChangeBlocked) as exc_info:
                engine.remove_segment(second)
            assert exc_info.value.pending == [f"segment:{first}"]
            with pytest.raises(StructuralChangeBlocked):
                engine.add_segment(TrackCount(1))
            with pytest.raises(StructuralChangeBlocked):
                engine.generate(Constraints(prompt="x"))

            engine.provider.release()
            future.result(timeout=5)

        engine.remove_segment(second)
        assert len(engine.segments.segments) == 2

    def test_lock_of_node_being_regenerated_is_busy(self, blocking_engine):
        engine = blocking_engine

        with ThreadPoolExecutor(max_workers=1) as pool:
            future = pool.submit(engine.regenerate_node, "n4")
            assert engine.provider.started.wait(timeout=2)

            with pytest.raises(NodeBusy):
                engine.lock("n4")
            with pytest.raises(NodeBusy):
                engine.remove_node("n4")
            with pytest.raises(RegenerationInProgress):
                engine.regenerate_node("n4")
            engine.lock("n5")

            engine.provider.release()
            replacement = future.result(timeout=5)

        assert engine.sequence.index_of(replacement.id) == 4
        assert engine.sequence.get("n5").is_locked

    def test_node_inside_pending_segment_is_in_progress(self, blocking_engine):
        engine = blocking_engine
        first, _, _ = add_segments(engine)

        with ThreadPoolExecutor(max_workers=1) as pool:
            future = pool.submit(engine.regenerate_segment, first)
            assert engine.provider.started.wait(timeout=2)

            with pytest.raises(RegenerationInProgress) as exc_info:
                engine.regenerate_node("n2")
            assert exc_info.value.target_id == first

            engine.provider.release()
            future.result(timeout=5)

    def test_regeneration_during_full_generation(self, blocking_engine, brief):
        engine = blocking_engine

        with ThreadPoolExecutor(max_workers=1) as pool:
            future = pool.submit(engine.generate, brief)
            assert engine.provider.started.wait(timeout=2)

            with pytest.raises(RegenerationInProgress):
                engine.regenerate_node("n1")
            with pytest.raises(StructuralChangeBlocked):
                engine.insert_track(make_track("x"), 0)

            engine.provider.release()
            future.result(timeout=5)

        assert credits(engine) == 49

    def test_node_edit_during_segment_regeneration_is_stale(self, blocking_engine):
        engine = blocking_engine
        first, _, _ = add_segments(engine)

        with ThreadPoolExecutor(max_workers=1) as pool:
            future = pool.submit(engine.regenerate_segment, first)
            assert engine.provider.started.wait(timeout=2)

            engine.insert_track(make_track("x"), 0)

            engine.provider.release()
            with pytest.raises(StaleTarget) as exc_info:
                future.result(timeout=5)

        assert exc_info.value.credit_consumed
        assert credits(engine) == 49
        assert [n.id for n in engine.sequence][1:5] == ["n0", "n1", "n2", "n3"]
        assert engine.pending() == []


    def test_independent_segments_regenerate_together(self, blocking_engine):
        engine = blocking_engine
        first, _, last = add_segments(engine)

        with ThreadPoolExecutor(max_workers=2) as pool:
            futures = [pool.submit(engine.regenerate_segment, sid) for sid in (first, last)]
            assert wait_for_calls(engine.provider, 2)
            assert sorted(engine.pending()) == sorted([f"segment:{first}", f"segment:{last}"])

            engine.provider.release()
            results = [f.result(timeout=5) for f in futures]

        assert [r.replaced_count for r in results] == [4, 2]
        assert credits(engine) == 48
        assert [n.id for n in engine.sequence][4:8] == ["n4", "n5", "n6", "n7"]
        assert [(r.start_index, r.end_index) for r in engine.segment_ranges()] == [(0, 3), (4, 7), (8, 9)]
        assert engine.pending() == []

    def test_concurrent_segment_merges_never_duplicate_a_track(self, blocking_engine):
        engine = blocking_engine
        first, second, _ = add_segments(engine)
        engine.provider.script = [
            [make_track("same"), make_track("a1"), make_track("a2"), make_track("a3")],
            [make_track("same"), make_track("b1"), make_track("b2"), make_track("b3")],
        ]

        with ThreadPoolExecutor(max_workers=2) as pool:
            futures = [pool.submit(engine.regenerate_segment, sid) for sid in (first, second)]
            assert wait_for_calls(engine.provider, 2)
            engine.provider.release()
            results = [f.result(timeout=5) for f in futures]

        track_ids = [n.track.id for n in engine.sequence]
        assert track_ids.count("same") == 1
        assert sorted(r.replaced_count for r in results) == [3, 4]
        assert credits(engine) == 48

    def test_concurrent_swaps_never_duplicate_a_track(self, blocking_engine):
        engine = blocking_engine
        engine.provider.script = [[make_track("same")], [make_track("same")]]

        with ThreadPoolExecutor(max_workers=2) as pool:
            futures = [pool.submit(engine.regenerate_node, nid) for nid in ("n1", "n7")]
            assert wait_for_calls(engine.provider, 2)
            engine.provider.release()
            outcomes = []
            for future in futures:
                try:
                    outcomes.append(future.result(timeout=5).track.id)
                except ProviderError:
                    outcomes.append("error")

        assert sorted(outcomes) == ["error", "same"]
        assert [n.track.id for n in engine.sequence].count("same") == 1
        assert credits(engine) == 49

    def test_minute_segments_keep_boundaries_when_track_lengths_change(self, ledger, brief):
        provider = FakeProvider(blocking=True)
        engine = SetEngine(provider, ledger, IDENTITY, sequence=make_sequence(8), constraints=brief)
        first = engine.add_segment(TrackCount(4)).id
        second = engine.add_segment(DurationMinutes(16)).id
        provider.script = [
            [make_track(f"long{i}", duration=600) for i in range(4)],
            [make_track(f"long{i}", duration=600) for i in range(4, 8)],
        ]

        try:
            with ThreadPoolExecutor(max_workers=2) as pool:
                futures = [pool.submit(engine.regenerate_segment, sid) for sid in (first, second)]
                assert wait_for_calls(provider, 2)
                provider.release()
                results = [f.result(timeout=5) for f in futures]
        finally:
            provider.release()

        assert [r.replaced_count for r in results] == [4, 4]
        assert credits(engine) == 48
        assert [(r.start_index, r.end_index) for r in engine.segment_ranges()] == [(0, 3), (4, 7)]


class TestFilterTracks:
    def test_excludes_ids_keys_and_duplicates_then_trims(self):
        tracks = [
            make_track("a"),
            make_track("b"),
            make_track("b"),
            replace(make_track("b"), id="b-live"),
            make_track("d"),
            make_track("e"),
        ]

        kept = filter_tracks(tracks, frozenset({"a"}), frozenset(), count=2)

        assert [t.id for t in kept] == ["b", "d"]
