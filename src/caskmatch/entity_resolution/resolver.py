"""Entity resolution orchestrator.

Maps incoming records to canonical entries:

* :func:`resolve_record` runs the automatic flow for one feed record
  (already-imported check, exact UPC, fuzzy + pre-filter candidates,
  scoring, decision, then merge or create).
* :func:`resolve_group` runs the exact-key flow for one bulk-import group
  (import id, then ``(name, distillery)``, then create).
* :func:`suggest_matches` and :func:`approve_match` back the human-review
  flow, which never merges without an explicit approval.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

import psycopg
import structlog

from caskmatch.config import Settings, get_settings
from caskmatch.entity_resolution.candidates import (
    generate_fuzzy_candidates,
    generate_prefilter_candidates,
    match_by_exact_key,
    match_by_feed_id,
    match_by_identifiers,
    match_by_import_id,
)
from caskmatch.entity_resolution.catalog import get_entry, mark_duplicate
from caskmatch.entity_resolution.create import create_entry, unique_key
from caskmatch.entity_resolution.merge import merge_into_entry
from caskmatch.entity_resolution.models import (
    OUTCOME_AUTO_MERGED,
    OUTCOME_CREATED,
    OUTCOME_EXISTING,
    OUTCOME_MERGED,
    SOURCE_FEED,
    CanonicalEntry,
    Candidate,
    ResolutionResult,
    SourceRecord,
    entry_to_record,
)
from caskmatch.entity_resolution.policy import (
    AUTO_MERGE,
    CREATE,
    Decision,
    decide,
    select_for_review,
)
from caskmatch.entity_resolution.scoring import rank_candidates
from caskmatch.errors import MAX_REPORTED_ERRORS, ResolutionError, RowError

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Batch summary
# ---------------------------------------------------------------------------

@dataclass
class BatchSummary:
    """Counters, bounded error list and per-unit results of one batch run.

    Counters count input units (feed records or import rows).  ``merged``
    includes auto-merges.
    """

    created: int = 0
    merged: int = 0
    existing: int = 0
    failed: int = 0
    groups: int = 0
    stopped: bool = False
    errors: list[RowError] = field(default_factory=list)
    results: list[ResolutionResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.created + self.merged + self.existing + self.failed

    def add_result(self, result: ResolutionResult) -> None:
        if result.outcome == OUTCOME_CREATED:
            self.created += 1
        elif result.outcome in (OUTCOME_MERGED, OUTCOME_AUTO_MERGED):
            self.merged += 1
        elif result.outcome == OUTCOME_EXISTING:
            self.existing += 1
        self.results.append(result)

    def add_failure(self, reference: str, message: str) -> None:
        self.failed += 1
        if len(self.errors) < MAX_REPORTED_ERRORS:
            self.errors.append(RowError(reference=reference, message=message))

    def counts(self) -> dict[str, int]:
        return {
            "created": self.created,
            "merged": self.merged,
            "existing": self.existing,
            "failed": self.failed,
            "total": self.total,
        }


# ---------------------------------------------------------------------------
# Decision execution
# ---------------------------------------------------------------------------

def apply_decision(
    conn: psycopg.Connection,
    record: SourceRecord,
    decision: Decision,
    *,
    now: datetime | None = None,
) -> ResolutionResult:
    """Merge into the decided target, or create a new entry."""
    if decision.action == CREATE:
        entry, created = create_entry(conn, record, now=now)
        if created:
            return ResolutionResult(record.reference, entry.id, OUTCOME_CREATED)
        # Lost a creation race: treat the winner as an exact match.
        merge_into_entry(conn, entry.id, record, now=now)
        return ResolutionResult(
            record.reference, entry.id, OUTCOME_AUTO_MERGED, confidence=100,
        )

    target = decision.candidate
    merge_into_entry(conn, target.entry.id, record, now=now)
    outcome = OUTCOME_AUTO_MERGED if decision.action == AUTO_MERGE else OUTCOME_MERGED
    return ResolutionResult(
        record.reference, target.entry.id, outcome, confidence=target.confidence,
    )


# ---------------------------------------------------------------------------
# Automatic flow (feed records)
# ---------------------------------------------------------------------------

def score_record(
    conn: psycopg.Connection,
    record: SourceRecord,
    settings: Settings,
) -> list[Candidate]:
    """Fuzzy and pre-filter candidates for *record*, scored and ranked best-first."""
    entries = generate_fuzzy_candidates(conn, record, limit=settings.strategy_limit)

    seen = {e.id for e in entries}
    for candidate in generate_prefilter_candidates(
        conn, record, threshold=settings.prefilter_threshold,
    ):
        if candidate.entry.id not in seen:
            seen.add(candidate.entry.id)
            entries.append(candidate.entry)

    return rank_candidates(record, entries, cap=settings.candidate_cap)


def resolve_record(
    conn: psycopg.Connection,
    record: SourceRecord,
    settings: Settings | None = None,
    *,
    now: datetime | None = None,
) -> ResolutionResult:
    """Resolve one feed record to a canonical entry id.

    Resolution order:
      1. Entry already linked to the feed id -> ``existing``, no mutation.
      2. Non-feed entry owning one of the record's UPCs -> auto-merge.
      3. Best scored candidate at or above the merge threshold -> merge.
      4. Otherwise create a new entry.
    """
    settings = settings or get_settings()

    if record.external_feed_id:
        linked = match_by_feed_id(conn, record.external_feed_id)
        if linked is not None:
            return ResolutionResult(record.reference, linked.id, OUTCOME_EXISTING)

    exact: Candidate | None = None
    scored: list[Candidate] = []

    by_upc = match_by_identifiers(conn, record.upcs)
    if by_upc is not None:
        exact = Candidate(entry=by_upc, reasons=["UPC match"])
    else:
        scored = score_record(conn, record, settings)

    decision = decide(exact, scored, merge_threshold=settings.merge_threshold)
    logger.debug(
        "match_decision",
        record=record.reference,
        action=decision.action,
        target=decision.target_id,
        confidence=decision.candidate.confidence if decision.candidate else None,
    )
    return apply_decision(conn, record, decision, now=now)


# ---------------------------------------------------------------------------
# Exact-key flow (bulk import groups)
# ---------------------------------------------------------------------------

def resolve_group(
    conn: psycopg.Connection,
    record: SourceRecord,
    *,
    now: datetime | None = None,
) -> ResolutionResult:
    """Resolve one bulk-import group, represented by its first row.

    Resolution order:
      1. Entry previously resolved from the same import id.
      2. Non-variant entry with the same name and distillery.
      3. Create a new entry.

    A hit in (1) or (2) is an exact candidate and is auto-merged.
    """
    exact: Candidate | None = None

    if record.import_id:
        entry = match_by_import_id(conn, record.import_id)
        if entry is not None:
            exact = Candidate(entry=entry, reasons=["Import id match"])

    if exact is None:
        name, _brand, distillery = unique_key(record)
        entry = match_by_exact_key(conn, name, distillery)
        if entry is not None:
            exact = Candidate(entry=entry, reasons=["Name and distillery match"])

    return apply_decision(conn, record, decide(exact, []), now=now)


# ---------------------------------------------------------------------------
# Human-review flow
# ---------------------------------------------------------------------------

def suggest_matches(
    conn: psycopg.Connection,
    entry: CanonicalEntry,
    settings: Settings | None = None,
) -> list[Candidate]:
    """Feed-sourced candidates a reviewer might link *entry* to. Read-only."""
    settings = settings or get_settings()
    record = entry_to_record(entry)

    entries = generate_fuzzy_candidates(
        conn,
        record,
        limit=settings.strategy_limit,
        source=SOURCE_FEED,
        exclude_ids=[entry.id],
    )
    scored = rank_candidates(record, entries)
    return select_for_review(
        scored, threshold=settings.review_threshold, limit=settings.review_limit,
    )


def approve_match(
    conn: psycopg.Connection,
    entry_id: str,
    target_id: str,
    *,
    now: datetime | None = None,
) -> CanonicalEntry:
    """Apply a reviewer-approved match: fill *target_id* from *entry_id* and retire it.

    The reviewed entry is kept and marked ``duplicate_of`` the target.

    Raises:
        ResolutionError: If either entry does not exist, is already retired,
            or they are the same.
    """
    if entry_id == target_id:
        msg = "An entry cannot be merged into itself"
        raise ResolutionError(msg)

    entry = get_entry(conn, entry_id)
    target = get_entry(conn, target_id)
    if entry is None or target is None:
        msg = f"Cannot merge {entry_id} into {target_id}: entry not found"
        raise ResolutionError(msg)
    for e in (entry, target):
        if e.duplicate_of:
            msg = f"Entry {e.id} is retired; it duplicates {e.duplicate_of}"
            raise ResolutionError(msg)

    merged = merge_into_entry(
        conn, target_id, entry_to_record(entry, source=target.source), now=now,
    )
    mark_duplicate(conn, entry_id, target_id)
    logger.info("review_match_approved", entry_id=entry_id, target_id=target_id)
    return merged
