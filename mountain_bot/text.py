"""Search normalisation helpers for Japanese mountain names.

Mountain names arrive written in kanji, katakana or hiragana depending on the
provider, often with the phonetic reading glued onto the end of the name. The
helpers here produce a canonical comparison form plus a small set of script
variants so that a query typed in one script still finds a record stored in
another.
"""
from __future__ import annotations

import re
import unicodedata
from typing import Iterable, Optional, Set, Tuple

_WHITESPACE = re.compile(r"[　\s]+")
_KATAKANA = re.compile(r"[ァ-ヶ]")
_HIRAGANA = re.compile(r"[ぁ-ゖ]")

_ITERATION_MARK = "々"
_SMALL_KE = "ヶ"
_PROLONGED = "ー"


def kata_to_hira(text: str) -> str:
    """Map katakana U+30A1–U+30F6 onto the matching hiragana code points."""

    return _KATAKANA.sub(lambda m: chr(ord(m.group(0)) - 0x60), text)


def hira_to_kata(text: str) -> str:
    """Map hiragana U+3041–U+3096 onto the matching katakana code points."""

    return _HIRAGANA.sub(lambda m: chr(ord(m.group(0)) + 0x60), text)


def _strip_symbols(text: str) -> str:
    return "".join(ch for ch in text if unicodedata.category(ch)[0] not in ("P", "S"))


def normalize(text: Optional[str]) -> str:
    """Return the canonical comparison form of ``text``.

    NFKC, lowercase, punctuation and symbols removed, whitespace (including
    the ideographic space) collapsed and trimmed. Applying it twice is a no-op.
    """

    if not text:
        return ""
    value = unicodedata.normalize("NFKC", str(text)).lower()
    value = unicodedata.normalize("NFKC", value)
    value = _strip_symbols(value)
    value = _WHITESPACE.sub(" ", value).strip()
    return unicodedata.normalize("NFKC", value)


def variants(normalized: str) -> Set[str]:
    """Script variants used for fuzzy matching; empty strings are excluded."""

    base = normalized or ""
    compact = _WHITESPACE.sub("", base)
    out = {
        base,
        compact,
        kata_to_hira(base),
        hira_to_kata(base),
        kata_to_hira(compact),
        hira_to_kata(compact),
    }
    out.discard("")
    return out


def candidate_variants(values: Iterable[Optional[str]]) -> Set[str]:
    out: Set[str] = set()
    for value in values:
        if value:
            out |= variants(normalize(value))
    return out


def matches(query: Optional[str], candidates: Iterable[Optional[str]]) -> bool:
    """Bidirectional substring match between query and candidate variants.

    Deliberately permissive: a one-character query matches any candidate that
    contains it, and a long query matches a short candidate it contains.
    """

    query_variants = variants(normalize(query))
    if not query_variants:
        return False
    stored = candidate_variants(candidates)
    for qv in query_variants:
        for sv in stored:
            if qv in sv or sv in qv:
                return True
    return False


# Name / reading split -------------------------------------------------------

def _is_kanji(ch: str) -> bool:
    code = ord(ch)
    return (
        0x4E00 <= code <= 0x9FFF
        or 0x3400 <= code <= 0x4DBF
        or 0xF900 <= code <= 0xFAFF
        or ch in (_ITERATION_MARK, _SMALL_KE)
    )


def _is_hiragana(ch: str) -> bool:
    return 0x3041 <= ord(ch) <= 0x309F


def _is_katakana(ch: str) -> bool:
    code = ord(ch)
    return (0x30A1 <= code <= 0x30FF and ch != _SMALL_KE) or ch == _PROLONGED


def _is_kana(ch: str) -> bool:
    return _is_hiragana(ch) or _is_katakana(ch)


def _pure_kana(text: str) -> bool:
    stripped = _WHITESPACE.sub("", text)
    return bool(stripped) and all(_is_kana(ch) for ch in stripped)


def _kana_runs(text: str) -> list[Tuple[str, str]]:
    """Split a kana string into ``(script, run)`` pairs.

    The prolonged sound mark continues whichever run it appears in.
    """

    runs: list[Tuple[str, str]] = []
    for ch in _WHITESPACE.sub("", text):
        if ch == _PROLONGED and runs:
            script = runs[-1][0]
        elif _is_hiragana(ch):
            script = "hira"
        else:
            script = "kata"
        if runs and runs[-1][0] == script:
            runs[-1] = (script, runs[-1][1] + ch)
        else:
            runs.append((script, ch))
    return runs


def _dedupe_reading(reading: str) -> str:
    runs = _kana_runs(reading)
    kata = next((run for script, run in runs if script == "kata"), None)
    hira = next((run for script, run in runs if script == "hira"), None)
    if kata is None or hira is None:
        return reading
    converted = kata_to_hira(kata)
    if converted == hira or converted in hira or hira in converted:
        return kata
    return reading


def has_kanji_and_both_kana(text: Optional[str]) -> bool:
    """True when ``text`` mixes kanji, katakana and hiragana, e.g. ``富士ふじフジ``."""

    chars = [ch for ch in (text or "") if ch != _PROLONGED]
    return (
        any(_is_kanji(ch) for ch in chars)
        and any(_is_katakana(ch) for ch in chars)
        and any(_is_hiragana(ch) for ch in chars)
    )


def parse_name_and_reading(raw: Optional[str]) -> Tuple[str, Optional[str]]:
    """Split ``"八ヶ岳やつがたけ"`` style strings into name and reading.

    Kanji, 々 and ヶ always belong to the name. A trailing run made only of
    kana becomes the reading once the name has a kanji (or a leading katakana
    run, for names that are natively katakana).
    """

    text = (raw or "").strip()
    if not text:
        return "", None

    index = 0
    seen_base = False
    while index < len(text) and _is_katakana(text[index]):
        index += 1
    if index:
        seen_base = True

    name_end = len(text)
    while index < len(text):
        ch = text[index]
        if _is_kanji(ch):
            seen_base = True
        elif _is_kana(ch) and seen_base and _pure_kana(text[index:]):
            name_end = index
            break
        index += 1

    name = text[:name_end].strip()
    reading = text[name_end:].strip()
    if reading:
        reading = _dedupe_reading(reading).strip()
    return name, reading or None


__all__ = [
    "candidate_variants",
    "has_kanji_and_both_kana",
    "hira_to_kata",
    "kata_to_hira",
    "matches",
    "normalize",
    "parse_name_and_reading",
    "variants",
]
