"""Tests for transition scoring and harmonic key helpers."""

import math

import pytest

from conftest import make_track
from ytdj.harmonic import compatible_codes, key_compatibility, normalize_key, to_camelot
from ytdj.models import PlaylistNode
from ytdj.transitions import score, summarize


class TestScore:
    def test_close_bpm_and_energy_is_smooth(self):
        a = make_track("a", bpm=120, energy=50)
        b = make_track("b", bpm=123, energy=60)

        result = score(a, b)

        assert result.score == "smooth"
        assert result.bpm_delta == 3
        assert result.energy_delta == 10

    def test_energy_within_ok_band_rescues_bpm_jump(self):
        a = make_track("a", bpm=120, energy=50)
        c = make_track("c", bpm=200, energy=55)

        assert score(a, c).score == "ok"

    def test_bpm_within_ok_band_rescues_energy_jump(self):
        a = make_track("a", bpm=120, energy=10)
        b = make_track("b", bpm=130, energy=90)

        assert score(a, b).score == "ok"

    def test_both_deltas_large_is_jarring(self):
        a = make_track("a", bpm=90, energy=10)
        b = make_track("b", bpm=140, energy=95)

        assert score(a, b).score == "jarring"

    def test_boundaries_are_inclusive(self):
        a = make_track("a", bpm=120, energy=50)
        b = make_track("b", bpm=125, energy=70)

        assert score(a, b).score == "smooth"

    def test_missing_bpm_is_never_smooth(self):
        a = make_track("a", bpm=None, energy=50)
        b = make_track("b", bpm=120, energy=50)

        result = score(a, b)

        assert math.isinf(result.bpm_delta)
        assert result.score == "ok"

    def test_missing_bpm_and_energy_is_jarring(self):
        a = make_track("a", bpm=None, energy=None)
        b = make_track("b", bpm=120, energy=50)

        assert score(a, b).score == "jarring"

    def test_missing_delta_serializes_as_null(self):
        a = make_track("a", bpm=None)
        b = make_track("b")

        assert score(a, b).to_dict()["bpm_delta"] is None

    def test_reports_key_compatibility(self):
        a = make_track("a", key="Am")
        b = make_track("b", key="C")

        assert score(a, b).key_compatibility == "compatible"


class TestSummarize:
    def test_counts_verdicts_and_averages_known_values(self):
        nodes = [
            PlaylistNode(track=make_track("a", bpm=120, energy=50)),
            PlaylistNode(track=make_track("b", bpm=122, energy=55)),
            PlaylistNode(track=make_track("c", bpm=None, energy=None)),
        ]

        summary = summarize(nodes)

        assert (summary.smooth, summary.ok, summary.jarring) == (1, 0, 1)
        assert summary.total == 2
        assert summary.average_bpm == 121
        assert summary.average_energy == 52.5

    def test_empty_set(self):
        summary = summarize([])

        assert summary.total == 0
        assert summary.average_bpm is None


class TestHarmonic:
    @pytest.mark.parametrize(
        "raw,expected",
        [("A minor", "Am"), ("F sharp major", "F#"), ("Bb maj", "Bb"), ("c#m", "C#m")],
    )
    def test_normalize_key(self, raw, expected):
        assert normalize_key(raw) == expected

    def test_to_camelot_accepts_names_and_codes(self):
        assert to_camelot("Am") == "8A"
        assert to_camelot("8b") == "8B"
        assert to_camelot("H major") is None
        assert to_camelot(None) is None

    def test_compatible_codes_wrap_around_the_wheel(self):
        assert compatible_codes("12A") == ["12A", "1A", "11A", "12B"]

    @pytest.mark.parametrize(
        "a,b,expected",
        [
            ("Am", "Am", "perfect"),
            ("Am", "Em", "compatible"),
            ("Am", "Bm", "warning"),
            ("Am", "Ebm", "clash"),
            ("Am", None, "compatible"),
        ],
    )
    def test_key_compatibility(self, a, b, expected):
        assert key_compatibility(a, b) == expected
