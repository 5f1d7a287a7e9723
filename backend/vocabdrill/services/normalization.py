"""
Text normalization used to detect duplicate or ambiguous answer choices.

Every exercise type goes through these helpers so that "same answer" means the
same thing everywhere.
"""
from __future__ import annotations

import re
import unicodedata
from collections.abc import Callable, Hashable, Iterable, Sequence
from typing import TypeVar

T = TypeVar("T")

_WHITESPACE_RE = re.compile(r"\s+")
_PUNCTUATION_RE = re.compile(r"[\"“”'‘’.,!;:()\[\]{}?]")


def normalize_term(s: str) -> str:
    """Storage form of a saved term: trimmed, lowercased, single-spaced."""
    return _WHITESPACE_RE.sub(" ", s.strip().lower())


def normalize_base(s: str) -> str:
    stripped = _PUNCTUATION_RE.sub("", s.lower())
    return _WHITESPACE_RE.sub(" ", stripped).strip()


def normalize_localized(s: str) -> str:
    """normalize_base, ignoring diacritics (e.g. Greek tonos and dialytika)."""
    decomposed = unicodedata.normalize("NFD", s)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return normalize_base(stripped)


def unique_by(items: Iterable[T], key: Callable[[T], Hashable]) -> list[T]:
    seen: set[Hashable] = set()
    out: list[T] = []
    for item in items:
        k = key(item)
        if k in seen:
            continue
        seen.add(k)
        out.append(item)
    return out


def is_ambiguous(choices: Sequence[str], normalize: Callable[[str], str] = normalize_base) -> bool:
    keys = [normalize(choice) for choice in choices]
    return len(set(keys)) != len(keys)
