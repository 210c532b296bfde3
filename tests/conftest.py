"""Shared fixtures for the ytdj test suite."""

import itertools
import threading
import time

import pytest

from ytdj.credits import InMemoryCreditLedger
from ytdj.models import Constraints, PlaylistNode, Track
from ytdj.orchestrator import SetEngine
from ytdj.providers.base import GenerationContext
from ytdj.sequence import PlaylistSequence

IDENTITY = "dj@example.com"


def make_track(
    track_id: str,
    bpm: float | None = 124,
    energy: float | None = 60,
    key: str | None = None,
    artist: str | None = None,
    duration: float = 240,
) -> Track:
    return Track(
        id=track_id,
        title=f"Track {track_id}",
        artist=artist or f"Artist {track_id}",
        duration=duration,
        bpm=bpm,
        energy=energy,
        key=key,
    )


def make_sequence(count: int, prefix: str = "n") -> PlaylistSequence:
    """Sequence of ``count`` smooth-mixing nodes with ids ``n0..n{count-1}``."""
    return PlaylistSequence(
        [PlaylistNode(track=make_track(f"{prefix}{i}", bpm=120 + i % 3), id=f"{prefix}{i}") for i in range(count)]
    )


class FakeProvider:
    """Scripted provider that records every call.

    By default it answers with ``context.count`` fresh tracks. Queue exact
    responses with ``script``, fail with ``error``, or hold the call open
    until ``release()`` with ``blocking=True``.
    """

    def __init__(self, name: str = "openai", blocking: bool = False) -> None:
        self._name = name
        self.calls: list[tuple[Constraints, GenerationContext]] = []
        self.script: list[list[Track]] = []
        self.error: Exception | None = None
        self.started = threading.Event()
        self._gate = threading.Event()
        if not blocking:
            self._gate.set()
        self._ids = itertools.count(1)
        self._calls_lock = threading.Lock()

    @property
    def name(self) -> str:
        return self._name

    def release(self) -> None:
        self._gate.set()

    def generate_tracks(self, constraints: Constraints, context: GenerationContext) -> list[Track]:
        with self._calls_lock:
            self.calls.append((constraints, context))
        self.started.set()
        if not self._gate.wait(timeout=5):
            raise TimeoutError("test provider was never released")
        if self.error is not None:
            raise self.error
        if self.script:
            return self.script.pop(0)
        return [make_track(f"gen{next(self._ids)}", bpm=122) for _ in range(context.count)]


def wait_for_calls(provider: FakeProvider, count: int, timeout: float = 2.0) -> bool:
    """Wait until ``count`` calls are being held by a blocking provider."""
    deadline = time.monotonic() + timeout
    while len(provider.calls) < count:
        if time.monotonic() > deadline:
            return False
        time.sleep(0.01)
    return True


@pytest.fixture
def ledger():
    """Pro-tier ledger with the full monthly allowance."""
    ledger = InMemoryCreditLedger()
    ledger.provision(IDENTITY, "pro")
    return ledger


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def brief():
    return Constraints(prompt="sunset deep house", track_count=10)


@pytest.fixture
def engine(provider, ledger, brief):
    """Engine holding a 10-node set (ids n0..n9) with no segments."""
    return SetEngine(
        provider=provider,
        ledger=ledger,
        identity=IDENTITY,
        sequence=make_sequence(10),
        constraints=brief,
    )
