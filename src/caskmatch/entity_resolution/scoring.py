"""Deterministic, explainable confidence scoring.

Signals and weights:

* name similarity (45): normalised Levenshtein similarity x 45
* brand / token signal (up to 35): brand field 35, first word 30,
  brand in name 25, distillery in name 20
* proof proximity (up to 20): exact 20, <1 15, <2 10, <5 5
* multi-signal bonus (10): two or more of first-word match, proof within
  2, name similarity above 0.7

The raw total can reach 110; :attr:`Candidate.confidence` is capped at
100 for display while :attr:`Candidate.raw_score` keeps the ordering.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from rapidfuzz.distance import Levenshtein

from caskmatch.entity_resolution.models import CanonicalEntry, Candidate, SourceRecord
from caskmatch.entity_resolution.normalize import (
    contains_words,
    first_token,
    key_words,
    normalize_name,
)

NAME_WEIGHT = 45
BRAND_EXACT_POINTS = 35
FIRST_WORD_POINTS = 30
BRAND_IN_NAME_POINTS = 25
DISTILLERY_IN_NAME_POINTS = 20
MULTI_SIGNAL_BONUS = 10
MAX_CONFIDENCE = 100

HIGH_NAME_SIMILARITY = 0.7


def string_similarity(a: str, b: str) -> float:
    """``1 - levenshtein(a, b) / max(len(a), len(b))``; two empty strings are identical."""
    if a == b:
        return 1.0
    longest = max(len(a), len(b))
    return 1 - Levenshtein.distance(a, b) / longest


def proof_points(incoming: float | None, existing: float | None) -> int:
    if not incoming or not existing:
        return 0
    diff = abs(incoming - existing)
    if diff == 0:
        return 20
    if diff < 1:
        return 15
    if diff < 2:
        return 10
    if diff < 5:
        return 5
    return 0


@dataclass(frozen=True)
class Signals:
    """Intermediate comparison results shared by the score and the reasons."""

    name_similarity: float
    brand_exact: bool
    first_word: bool
    brand_in_name: bool
    distillery_in_name: bool
    proof_diff: float | None
    key_words: bool


def compare(record: SourceRecord, entry: CanonicalEntry) -> Signals:
    proof_diff = None
    if record.proof and entry.proof:
        proof_diff = abs(record.proof - entry.proof)

    incoming_keys = key_words(record.name)
    incoming_first = first_token(record.name)
    return Signals(
        name_similarity=string_similarity(
            normalize_name(record.name), normalize_name(entry.name),
        ),
        brand_exact=bool(
            record.brand and entry.brand
            and record.brand.lower() == entry.brand.lower()
        ),
        first_word=bool(incoming_first) and incoming_first == first_token(entry.name),
        brand_in_name=contains_words(entry.name, record.brand),
        distillery_in_name=contains_words(entry.name, record.distillery),
        proof_diff=proof_diff,
        key_words=bool(incoming_keys) and incoming_keys == key_words(entry.name),
    )


def raw_score(signals: Signals, record: SourceRecord, entry: CanonicalEntry) -> int:
    score = signals.name_similarity * NAME_WEIGHT

    if signals.brand_exact:
        score += BRAND_EXACT_POINTS
    elif signals.first_word:
        score += FIRST_WORD_POINTS
    elif signals.brand_in_name:
        score += BRAND_IN_NAME_POINTS
    elif signals.distillery_in_name:
        score += DISTILLERY_IN_NAME_POINTS

    score += proof_points(record.proof, entry.proof)

    matching = [
        signals.first_word,
        signals.proof_diff is not None and signals.proof_diff < 2,
        signals.name_similarity > HIGH_NAME_SIMILARITY,
    ]
    if sum(matching) >= 2:
        score += MULTI_SIGNAL_BONUS

    return round(score)


def match_reasons(signals: Signals, record: SourceRecord) -> list[str]:
    """Human-readable explanation of a score, for audit and review screens."""
    reasons: list[str] = []

    if signals.first_word:
        reasons.append("First word match")

    if signals.brand_exact:
        reasons.append("Brand match")
    elif signals.brand_in_name:
        reasons.append("Brand in product name")
    elif signals.distillery_in_name:
        reasons.append("Distillery in product name")

    if signals.name_similarity > 0.85:
        reasons.append("Very high name similarity")
    elif signals.name_similarity > HIGH_NAME_SIMILARITY:
        reasons.append("High name similarity")
    elif signals.name_similarity > 0.6:
        reasons.append("Good name similarity")

    if signals.proof_diff is not None:
        if signals.proof_diff == 0:
            reasons.append(f"Exact {record.proof:g}° proof")
        elif signals.proof_diff < 1:
            reasons.append("Nearly exact proof")
        elif signals.proof_diff < 2:
            reasons.append("Similar proof")

    if signals.key_words:
        reasons.append("Key words match")

    return reasons


def score_candidate(record: SourceRecord, entry: CanonicalEntry) -> Candidate:
    """Score one existing entry against an incoming record."""
    signals = compare(record, entry)
    total = raw_score(signals, record, entry)
    return Candidate(
        entry=entry,
        confidence=max(0, min(MAX_CONFIDENCE, total)),
        reasons=match_reasons(signals, record),
        raw_score=total,
    )


def rank_candidates(
    record: SourceRecord,
    entries: Iterable[CanonicalEntry],
    *,
    cap: int | None = None,
) -> list[Candidate]:
    """Score *entries* and return them best-first.

    Ties are broken by entry id so the order is reproducible.
    """
    scored = [score_candidate(record, entry) for entry in entries]
    scored.sort(key=lambda c: (-c.raw_score, c.entry.id))
    if cap is not None:
        return scored[:cap]
    return scored
