"""Camelot wheel helpers for harmonic mixing.

The wheel has 12 positions around the circle of fifths, with minor keys in
column A and major keys in column B. Adjacent positions and the relative
major/minor at the same position mix cleanly.
"""

import re

from ytdj.models import KeyCompatibility

KEY_TO_CAMELOT: dict[str, str] = {
    # Minor keys (A column)
    "Abm": "1A", "G#m": "1A",
    "Ebm": "2A", "D#m": "2A",
    "Bbm": "3A", "A#m": "3A",
    "Fm": "4A",
    "Cm": "5A",
    "Gm": "6A",
    "Dm": "7A",
    "Am": "8A",
    "Em": "9A",
    "Bm": "10A",
    "F#m": "11A", "Gbm": "11A",
    "C#m": "12A", "Dbm": "12A",
    # Major keys (B column)
    "B": "1B", "Cb": "1B",
    "F#": "2B", "Gb": "2B",
    "Db": "3B", "C#": "3B",
    "Ab": "4B", "G#": "4B",
    "Eb": "5B", "D#": "5B",
    "Bb": "6B", "A#": "6B",
    "F": "7B",
    "C": "8B",
    "G": "9B",
    "D": "10B",
    "A": "11B",
    "E": "12B",
}

_CAMELOT_CODE = re.compile(r"^(\d{1,2})([AB])$")


def normalize_key(key: str) -> str:
    """Normalize spellings like "a minor", "F sharp major" or "Bb maj"."""
    cleaned = key.strip()
    if not cleaned:
        return ""
    cleaned = cleaned[0].upper() + cleaned[1:]
    cleaned = re.sub(r"\s*sharp", "#", cleaned, flags=re.IGNORECASE)
    cleaned = re.sub(r"\s*flat", "b", cleaned, flags=re.IGNORECASE)
    cleaned = re.sub(r"\s*minor", "m", cleaned, flags=re.IGNORECASE)
    cleaned = re.sub(r"\s*min$", "m", cleaned, flags=re.IGNORECASE)
    cleaned = re.sub(r"\s*maj$", "", cleaned, flags=re.IGNORECASE)
    cleaned = re.sub(r"\s*major", "", cleaned, flags=re.IGNORECASE)
    return re.sub(r"\s+", "", cleaned)


def to_camelot(key: str | None) -> str | None:
    """Camelot code for a key, or None when unrecognized."""
    if not key:
        return None
    normalized = normalize_key(key)
    if _CAMELOT_CODE.match(normalized.upper()):
        return normalized.upper()
    return KEY_TO_CAMELOT.get(normalized)


def _parse(code: str) -> tuple[int, str] | None:
    match = _CAMELOT_CODE.match(code)
    if not match:
        return None
    num = int(match.group(1))
    if not 1 <= num <= 12:
        return None
    return num, match.group(2)


def compatible_codes(code: str) -> list[str]:
    """Same key, one step either way, and the relative major/minor."""
    parsed = _parse(code)
    if parsed is None:
        return [code]
    num, letter = parsed
    prev_num = 12 if num == 1 else num - 1
    next_num = 1 if num == 12 else num + 1
    other = "B" if letter == "A" else "A"
    return [code, f"{next_num}{letter}", f"{prev_num}{letter}", f"{num}{other}"]


def key_compatibility(key_a: str | None, key_b: str | None) -> KeyCompatibility:
    """Rate how well two keys mix.

    Unknown keys are reported as compatible so they never raise a warning.
    """
    code_a = to_camelot(key_a)
    code_b = to_camelot(key_b)
    if not code_a or not code_b:
        return "compatible"
    if code_a == code_b:
        return "perfect"
    if code_b in compatible_codes(code_a):
        return "compatible"

    parsed_a = _parse(code_a)
    parsed_b = _parse(code_b)
    if parsed_a is None or parsed_b is None:
        return "compatible"

    diff = abs(parsed_a[0] - parsed_b[0])
    if min(diff, 12 - diff) <= 2:
        return "warning"
    return "clash"
