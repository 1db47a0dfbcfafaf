"""
Condition Name Matching

Maps free-text condition names returned by the AI service onto knowledge-base
identifiers.  Matching is a pure lookup: exact match on id, name or alias
first, then a normalized fuzzy match above a similarity threshold.

The matcher is pluggable: anything implementing ``NameMatcher`` can be
handed to the SymptomAnalyzer.
"""

from __future__ import annotations

import re
import unicodedata
from typing import Iterable, Optional, Protocol

from rapidfuzz import fuzz, process

# Hedging words the model tends to prepend ("suspected mastitis").
_HEDGE_WORDS: set[str] = {
    "suspected", "possible", "probable", "likely", "early", "acute",
    "chronic", "mild", "severe", "signs", "of", "sign", "case",
}

_NON_WORD_RE = re.compile(r"[^\w\s]+")
_SPACE_RE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """Lower-case, strip accents and punctuation, collapse whitespace."""
    text = unicodedata.normalize("NFKD", text)
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = _NON_WORD_RE.sub(" ", text.lower())
    return _SPACE_RE.sub(" ", text).strip()


def normalize_condition_name(name: str) -> str:
    """``normalize_text`` plus removal of hedging qualifiers."""
    words = [w for w in normalize_text(name).split() if w not in _HEDGE_WORDS]
    return " ".join(words)


class NameMatcher(Protocol):
    def match(self, name: str, choices: dict[str, str]) -> Optional[str]:
        """Return the identifier for ``name`` or None.

        ``choices`` maps a lookup label (id, name, alias) to the condition
        identifier it stands for.
        """
        ...


class FuzzyNameMatcher:
    """Exact-then-fuzzy matcher backed by rapidfuzz.

    Args:
        threshold: Minimum ``token_sort_ratio`` score (0-100) accepted as a
            fuzzy match.
    """

    def __init__(self, threshold: float = 85.0) -> None:
        self.threshold = threshold

    def match(self, name: str, choices: dict[str, str]) -> Optional[str]:
        if not name or not choices:
            return None

        normalized = {normalize_condition_name(label): cid for label, cid in choices.items()}

        exact = choices.get(name) or normalized.get(normalize_text(name))
        if exact:
            return exact

        query = normalize_condition_name(name)
        if not query:
            return None
        if query in normalized:
            return normalized[query]

        best = process.extractOne(
            query,
            list(normalized.keys()),
            scorer=fuzz.token_sort_ratio,
            score_cutoff=self.threshold,
        )
        if best is None:
            return None
        label, _score, _index = best
        return normalized[label]


def build_choices(entries: Iterable[tuple[str, Iterable[str]]]) -> dict[str, str]:
    """Flatten ``(condition_id, labels)`` pairs into a label -> id map."""
    choices: dict[str, str] = {}
    for condition_id, labels in entries:
        choices[condition_id] = condition_id
        for label in labels:
            if label:
                choices.setdefault(label, condition_id)
    return choices
