"""Entity resolution layer mapping incoming product records to canonical catalog entries."""

from __future__ import annotations

from caskmatch.entity_resolution.backfill import backfill_stats, run_backfill
from caskmatch.entity_resolution.candidates import (
    generate_fuzzy_candidates,
    generate_prefilter_candidates,
    match_by_exact_key,
    match_by_identifiers,
)
from caskmatch.entity_resolution.catalog import mark_no_match, next_review_entry
from caskmatch.entity_resolution.create import create_entry
from caskmatch.entity_resolution.grouping import group_rows
from caskmatch.entity_resolution.merge import merge_into_entry
from caskmatch.entity_resolution.normalize import key_words, normalize_name
from caskmatch.entity_resolution.policy import decide, select_for_review
from caskmatch.entity_resolution.resolver import (
    BatchSummary,
    approve_match,
    resolve_group,
    resolve_record,
    suggest_matches,
)
from caskmatch.entity_resolution.scoring import rank_candidates, score_candidate
from caskmatch.entity_resolution.validation import (
    compute_resolution_metrics,
    format_import_summary,
    generate_validation_report,
)

__all__ = [
    "BatchSummary",
    "approve_match",
    "backfill_stats",
    "compute_resolution_metrics",
    "create_entry",
    "decide",
    "format_import_summary",
    "generate_fuzzy_candidates",
    "generate_prefilter_candidates",
    "generate_validation_report",
    "group_rows",
    "key_words",
    "mark_no_match",
    "match_by_exact_key",
    "match_by_identifiers",
    "merge_into_entry",
    "next_review_entry",
    "normalize_name",
    "rank_candidates",
    "resolve_group",
    "resolve_record",
    "run_backfill",
    "score_candidate",
    "select_for_review",
    "suggest_matches",
]
