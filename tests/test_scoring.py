"""Tests for confidence scoring."""

from __future__ import annotations

import pytest

from caskmatch.entity_resolution.models import CanonicalEntry, SourceRecord
from caskmatch.entity_resolution.scoring import (
    compare,
    proof_points,
    rank_candidates,
    score_candidate,
    string_similarity,
)


def _entry(entry_id: str = "e-1", name: str = "Blanton's", **kwargs) -> CanonicalEntry:
    kwargs.setdefault("brand", "Blanton's")
    kwargs.setdefault("distillery", "Buffalo Trace")
    return CanonicalEntry(id=entry_id, name=name, **kwargs)


# =========================================================================
# string_similarity / proof_points
# =========================================================================


class TestStringSimilarity:
    def test_identical(self):
        assert string_similarity("weller", "weller") == 1.0

    def test_both_empty(self):
        assert string_similarity("", "") == 1.0

    def test_one_edit(self):
        assert string_similarity("abc", "abd") == pytest.approx(2 / 3)

    def test_completely_different(self):
        assert string_similarity("abc", "xyz") == 0.0


class TestProofPoints:
    @pytest.mark.parametrize(
        ("incoming", "existing", "points"),
        [
            (93, 93, 20),
            (93, 93.5, 15),
            (93, 94.5, 10),
            (93, 96, 5),
            (93, 100, 0),
            (None, 93, 0),
            (93, None, 0),
        ],
    )
    def test_points(self, incoming, existing, points):
        assert proof_points(incoming, existing) == points


# =========================================================================
# score_candidate
# =========================================================================


class TestScoreCandidate:
    """Tests for the weighted confidence formula."""

    def test_single_barrel_scenario_reaches_merge_threshold(self):
        record = SourceRecord(name="Blanton's Single Barrel", brand="Blanton's", proof=93)
        entry = _entry(proof=93)

        signals = compare(record, entry)
        assert signals.name_similarity == pytest.approx(0.45)
        assert signals.first_word is True
        assert signals.brand_in_name is True

        candidate = score_candidate(record, entry)
        # 0.45 * 45 + 35 (brand) + 20 (proof) + 10 (first word + proof)
        assert candidate.confidence == 85
        assert "First word match" in candidate.reasons
        assert "Brand match" in candidate.reasons
        assert "Exact 93° proof" in candidate.reasons

    def test_brand_in_name_without_brand_field_match(self):
        record = SourceRecord(name="Single Barrel Select", brand="Blanton's", proof=93)
        entry = _entry(name="Blanton's Single Barrel", brand="Buffalo Trace", proof=93)
        candidate = score_candidate(record, entry)
        assert "Brand in product name" in candidate.reasons

    def test_confidence_capped_raw_score_kept(self):
        record = SourceRecord(name="Eagle Rare 10", brand="Eagle Rare", proof=90)
        entry = _entry(name="Eagle Rare 10", brand="Eagle Rare", proof=90)
        candidate = score_candidate(record, entry)
        assert candidate.raw_score == 110
        assert candidate.confidence == 100
        assert "Very high name similarity" in candidate.reasons
        assert "Key words match" in candidate.reasons

    def test_no_signals_scores_low_but_not_negative(self):
        record = SourceRecord(name="Totally New Release XYZ")
        entry = _entry(name="Weller Special Reserve", brand="Weller", proof=90)
        candidate = score_candidate(record, entry)
        assert 0 <= candidate.confidence < 35
        assert candidate.reasons == []

    def test_empty_names_do_not_count_as_first_word_match(self):
        record = SourceRecord(name="")
        entry = _entry(name="", brand="", distillery="")
        signals = compare(record, entry)
        assert signals.first_word is False
        assert signals.key_words is False

    def test_nearby_proof_reason(self):
        record = SourceRecord(name="Weller 12", proof=90)
        entry = _entry(name="Weller 12", brand="Weller", proof=90.5)
        assert "Nearly exact proof" in score_candidate(record, entry).reasons


# =========================================================================
# rank_candidates
# =========================================================================


class TestRankCandidates:
    def test_best_first(self):
        record = SourceRecord(name="Eagle Rare 10", brand="Eagle Rare", proof=90)
        entries = [
            _entry("weak", name="Weller Special Reserve", brand="Weller"),
            _entry("strong", name="Eagle Rare 10", brand="Eagle Rare", proof=90),
        ]
        assert [c.entry.id for c in rank_candidates(record, entries)] == ["strong", "weak"]

    def test_ties_broken_by_id(self):
        record = SourceRecord(name="Eagle Rare 10")
        entries = [_entry("b", name="Eagle Rare 10"), _entry("a", name="Eagle Rare 10")]
        assert [c.entry.id for c in rank_candidates(record, entries)] == ["a", "b"]

    def test_orders_by_raw_score(self):
        record = SourceRecord(name="Eagle Rare 10", brand="Eagle Rare", proof=90)
        entries = [
            _entry("z-capped", name="Eagle Rare 10 Year", brand="Eagle Rare", proof=90),
            _entry("a-perfect", name="Eagle Rare 10", brand="Eagle Rare", proof=90),
        ]
        ranked = rank_candidates(record, entries)
        assert ranked[0].entry.id == "a-perfect"
        assert ranked[0].raw_score > ranked[1].raw_score

    def test_cap_limits_results(self):
        record = SourceRecord(name="Eagle Rare 10")
        entries = [_entry(str(i), name="Eagle Rare 10") for i in range(5)]
        assert len(rank_candidates(record, entries, cap=3)) == 3
