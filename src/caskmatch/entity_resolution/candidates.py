"""Candidate generation against the canonical catalog.

Two modes:

* **Exact-key** lookups (feed id, identifier codes, import id, and the
  case-insensitive full-string ``(name, distillery)`` key) used by bulk
  import and as the first step of feed resolution.
* **Fuzzy** generation, which federates several independent, capped
  ``~*`` queries and unions their results by entry id.

Every piece of user-supplied text is passed through
:func:`~caskmatch.entity_resolution.normalize.escape_pattern` before it is
embedded in a pattern.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

import psycopg
import structlog

from caskmatch.db import execute_query
from caskmatch.entity_resolution.models import (
    ENTRY_COLUMNS,
    KIND_FEED_ID,
    KIND_IMPORT_ID,
    KIND_UPC,
    SOURCE_FEED,
    CanonicalEntry,
    Candidate,
    SourceRecord,
    entry_from_row,
)
from caskmatch.entity_resolution.normalize import escape_pattern
from caskmatch.errors import StrategyLookupFailure

logger = structlog.get_logger(__name__)

STRATEGY_LIMIT = 30
PREFILTER_LIMIT = 10


# ---------------------------------------------------------------------------
# Exact-key lookups
# ---------------------------------------------------------------------------

def _first_entry(rows: list[dict]) -> CanonicalEntry | None:
    if rows:
        return entry_from_row(rows[0])
    return None


def _active_entry(
    conn: psycopg.Connection,
    owner_where: str,
    params: tuple,
) -> CanonicalEntry | None:
    """Active entry for the first row matching *owner_where*.

    A retired owner resolves to the entry it was folded into.  Active
    owners are preferred when several rows match.
    """
    rows = execute_query(
        conn,
        f"""
        SELECT {ENTRY_COLUMNS}
        FROM canonical_entries
        WHERE duplicate_of IS NULL
          AND id = (
              SELECT COALESCE(duplicate_of, id)
              FROM canonical_entries
              WHERE {owner_where}
              ORDER BY duplicate_of IS NOT NULL, created_at, id
              LIMIT 1
          )
        """,
        params,
    )
    return _first_entry(rows)


def match_by_feed_id(conn: psycopg.Connection, feed_id: str) -> CanonicalEntry | None:
    """Active entry already linked to *feed_id*, if the record was imported before.

    A feed id is linked through the entry's own feed id column, or through
    a ``feed-id`` identifier left by a later merge.
    """
    return _active_entry(
        conn,
        """
        external_feed_id = %s
           OR id IN (
               SELECT entry_id FROM entry_identifiers
               WHERE kind = %s AND code = %s
           )
        """,
        (feed_id, KIND_FEED_ID, feed_id),
    )


def match_by_identifiers(
    conn: psycopg.Connection,
    codes: list[str],
    *,
    kind: str = KIND_UPC,
    exclude_source: str | None = SOURCE_FEED,
) -> CanonicalEntry | None:
    """Entry owning any of *codes*, skipping entries from *exclude_source*."""
    if not codes:
        return None

    query = f"""
        SELECT {ENTRY_COLUMNS}
        FROM canonical_entries
        WHERE duplicate_of IS NULL
          AND id IN (
              SELECT entry_id FROM entry_identifiers
              WHERE kind = %s AND code = ANY(%s)
          )
    """
    params: tuple = (kind, list(codes))
    if exclude_source is not None:
        query += " AND source <> %s"
        params = (*params, exclude_source)
    query += " ORDER BY created_at, id LIMIT 1"

    return _first_entry(execute_query(conn, query, params))


def match_by_import_id(conn: psycopg.Connection, import_id: str) -> CanonicalEntry | None:
    """Entry previously resolved from the same spreadsheet product id."""
    return match_by_identifiers(
        conn, [import_id], kind=KIND_IMPORT_ID, exclude_source=None,
    )


def find_by_unique_key(
    conn: psycopg.Connection,
    name: str,
    distillery: str,
    *,
    is_variant: bool = False,
) -> CanonicalEntry | None:
    """Look up the active entry owning a uniqueness key (literal, case-insensitive).

    Retired entries keep their key, so a retired owner resolves to the
    entry it was folded into.
    """
    return _active_entry(
        conn,
        "name ~* %s AND distillery ~* %s AND is_variant = %s",
        (
            f"^{escape_pattern(name.strip())}$",
            f"^{escape_pattern(distillery.strip())}$",
            is_variant,
        ),
    )


def match_by_exact_key(
    conn: psycopg.Connection,
    name: str,
    distillery: str,
) -> CanonicalEntry | None:
    """Exact-key candidate for bulk import: same name and distillery, not a variant."""
    if not name:
        return None
    return find_by_unique_key(conn, name, distillery, is_variant=False)


# ---------------------------------------------------------------------------
# Fuzzy generation
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Strategy:
    name: str
    column: str  # "name" or "brand"
    pattern: str


def build_strategies(record: SourceRecord) -> list[Strategy]:
    """Targeted lookups for *record*, in a fixed order.

    Strategies whose search term is empty are omitted, since an empty
    pattern would match the whole catalog.
    """
    words = record.name.split()
    strategies: list[Strategy] = []

    if words:
        strategies.append(Strategy("first_word", "name", f"^{escape_pattern(words[0])}"))
    if len(words) >= 2:
        strategies.append(
            Strategy("first_two_words", "name", escape_pattern(" ".join(words[:2])))
        )
    if record.brand:
        strategies.append(Strategy("brand_in_name", "name", escape_pattern(record.brand)))

    significant = [w for w in words if len(w) > 3][:3]
    for i, word in enumerate(significant):
        strategies.append(Strategy(f"significant_word_{i + 1}", "name", escape_pattern(word)))

    if record.brand:
        strategies.append(Strategy("brand_field", "brand", escape_pattern(record.brand)))
    if record.distillery:
        strategies.append(
            Strategy("distillery_in_name", "name", escape_pattern(record.distillery))
        )

    return strategies


def _run_strategy(
    conn: psycopg.Connection,
    strategy: Strategy,
    *,
    limit: int,
    source: str | None,
    exclude_ids: list[str],
) -> list[dict]:
    query = f"""
        SELECT {ENTRY_COLUMNS}
        FROM canonical_entries
        WHERE {strategy.column} ~* %s
          AND duplicate_of IS NULL
          AND NOT (id = ANY(%s::uuid[]))
    """
    params: tuple = (strategy.pattern, exclude_ids)
    if source is not None:
        query += " AND source = %s"
        params = (*params, source)
    query += " ORDER BY id LIMIT %s"
    params = (*params, limit)

    # Savepoint: a failed strategy must not abort the surrounding transaction.
    with conn.transaction():
        return execute_query(conn, query, params)


def generate_fuzzy_candidates(
    conn: psycopg.Connection,
    record: SourceRecord,
    *,
    limit: int = STRATEGY_LIMIT,
    source: str | None = None,
    exclude_ids: Iterable[str] = (),
) -> list[CanonicalEntry]:
    """Union the results of every strategy, deduplicated by entry id.

    Results keep first-seen order over (strategy order, entry id), so the
    same data always yields the same candidate list.  A failing strategy
    is logged and skipped.  Connection-level failures propagate.
    """
    excluded = list(exclude_ids)
    seen: dict[str, CanonicalEntry] = {}

    for strategy in build_strategies(record):
        try:
            rows = _run_strategy(
                conn, strategy, limit=limit, source=source, exclude_ids=excluded,
            )
        except psycopg.OperationalError:
            raise
        except psycopg.Error as e:
            failure = StrategyLookupFailure(strategy.name, e)
            logger.warning(
                "strategy_lookup_failed",
                strategy=strategy.name,
                record=record.reference,
                error=str(failure),
            )
            continue

        for row in rows:
            if row["id"] not in seen:
                seen[row["id"]] = entry_from_row(row)

    logger.debug(
        "fuzzy_candidates_generated", record=record.reference, count=len(seen),
    )
    return list(seen.values())


# ---------------------------------------------------------------------------
# Early-stage pre-filter
# ---------------------------------------------------------------------------

def prefilter_score(record: SourceRecord, entry: CanonicalEntry) -> int:
    """Cheap name/brand/proof score used before full confidence scoring."""
    score = 0
    incoming = record.name.lower()
    existing = entry.name.lower()

    if existing == incoming:
        score += 50
    elif incoming in existing or existing in incoming:
        score += 30

    if entry.brand and record.brand and entry.brand.lower() == record.brand.lower():
        score += 30

    if entry.proof and record.proof:
        diff = abs(entry.proof - record.proof)
        if diff == 0:
            score += 20
        elif diff < 2:
            score += 10

    return score


def generate_prefilter_candidates(
    conn: psycopg.Connection,
    record: SourceRecord,
    *,
    threshold: int = 50,
    limit: int = PREFILTER_LIMIT,
) -> list[Candidate]:
    """Non-feed entries named exactly like *record* or starting with its first word.

    Only candidates scoring strictly above *threshold* are kept.
    """
    words = record.name.split()
    if not words:
        return []

    rows = execute_query(
        conn,
        f"""
        SELECT {ENTRY_COLUMNS}
        FROM canonical_entries
        WHERE source <> %s
          AND duplicate_of IS NULL
          AND (name = %s OR name ~* %s)
        ORDER BY id
        LIMIT %s
        """,
        (SOURCE_FEED, record.name, f"^{escape_pattern(words[0])}", limit),
    )

    candidates = []
    for row in rows:
        entry = entry_from_row(row)
        score = prefilter_score(record, entry)
        if score > threshold:
            candidates.append(Candidate(entry=entry, confidence=score, raw_score=score))

    candidates.sort(key=lambda c: c.raw_score, reverse=True)
    return candidates
