"""Offline duplicate scan over the whole canonical catalog.

Walks active entries in id order by keyset pagination.  The position is
persisted in ``backfill_checkpoints`` and committed after every page, so a
scan can be interrupted at any point and resumed later.  Duplicates are
folded into the older entry and marked ``duplicate_of``; nothing is
deleted.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

import psycopg
import structlog

from caskmatch.config import Settings, get_settings
from caskmatch.db import execute_query
from caskmatch.entity_resolution.candidates import generate_fuzzy_candidates
from caskmatch.entity_resolution.catalog import get_entry, mark_duplicate
from caskmatch.entity_resolution.merge import merge_into_entry
from caskmatch.entity_resolution.models import (
    ENTRY_COLUMNS,
    CanonicalEntry,
    Candidate,
    entry_from_row,
    entry_to_record,
)
from caskmatch.entity_resolution.policy import MERGE, decide
from caskmatch.entity_resolution.scoring import rank_candidates
from caskmatch.errors import InfrastructureFailure, ResolutionError

logger = structlog.get_logger(__name__)

CHECKPOINT_NAME = "duplicate_scan"

_NEVER = datetime.max.replace(tzinfo=UTC)


@dataclass
class BackfillSummary:
    pages: int = 0
    scanned: int = 0
    merged: int = 0
    failed: int = 0
    last_entry_id: str | None = None
    finished: bool = False


# ---------------------------------------------------------------------------
# Checkpoints
# ---------------------------------------------------------------------------

def load_checkpoint(conn: psycopg.Connection, name: str = CHECKPOINT_NAME) -> str | None:
    """Last entry id processed by scan *name*, or ``None`` to start from the beginning."""
    rows = execute_query(
        conn,
        "SELECT last_entry_id::text AS last_entry_id FROM backfill_checkpoints WHERE name = %s",
        (name,),
    )
    return rows[0]["last_entry_id"] if rows else None


def save_checkpoint(
    conn: psycopg.Connection,
    last_entry_id: str,
    merged: int,
    name: str = CHECKPOINT_NAME,
) -> None:
    execute_query(
        conn,
        """
        INSERT INTO backfill_checkpoints (name, last_entry_id, merged, updated_at)
        VALUES (%s, %s::uuid, %s, now())
        ON CONFLICT (name) DO UPDATE SET
            last_entry_id = EXCLUDED.last_entry_id,
            merged = backfill_checkpoints.merged + EXCLUDED.merged,
            updated_at = now()
        """,
        (name, last_entry_id, merged),
    )


def reset_checkpoint(conn: psycopg.Connection, name: str = CHECKPOINT_NAME) -> None:
    """Forget the position of scan *name* so the next run starts over."""
    execute_query(conn, "DELETE FROM backfill_checkpoints WHERE name = %s", (name,))
    conn.commit()


# ---------------------------------------------------------------------------
# Scan
# ---------------------------------------------------------------------------

def fetch_page(
    conn: psycopg.Connection,
    after_id: str | None,
    limit: int,
) -> list[CanonicalEntry]:
    """Next *limit* active entries with an id greater than *after_id*."""
    query = f"""
        SELECT {ENTRY_COLUMNS}
        FROM canonical_entries
        WHERE duplicate_of IS NULL
    """
    params: tuple = ()
    if after_id is not None:
        query += " AND id > %s::uuid"
        params = (after_id,)
    query += " ORDER BY id LIMIT %s"
    params = (*params, limit)

    return [entry_from_row(r) for r in execute_query(conn, query, params)]


def find_duplicate(
    conn: psycopg.Connection,
    entry: CanonicalEntry,
    settings: Settings,
) -> Candidate | None:
    """Best other active entry with the same variant flag scoring at or above the merge threshold."""
    record = entry_to_record(entry)
    others = [
        e
        for e in generate_fuzzy_candidates(
            conn, record, limit=settings.strategy_limit, exclude_ids=[entry.id],
        )
        if e.is_variant == entry.is_variant
    ]
    decision = decide(
        None, rank_candidates(record, others), merge_threshold=settings.merge_threshold,
    )
    return decision.candidate if decision.action == MERGE else None


def _age_key(entry: CanonicalEntry) -> tuple[datetime, str]:
    return (entry.created_at or _NEVER, entry.id)


def fold_duplicate(
    conn: psycopg.Connection,
    first: CanonicalEntry,
    second: CanonicalEntry,
    *,
    now: datetime | None = None,
) -> tuple[str, str]:
    """Fold the newer of two duplicates into the older one.

    Returns ``(kept_id, retired_id)``.
    """
    keep, drop = sorted((first, second), key=_age_key)

    # Reload so the retired entry's identifiers travel with it.
    retired = get_entry(conn, drop.id) or drop
    merge_into_entry(conn, keep.id, entry_to_record(retired, source=keep.source), now=now)
    mark_duplicate(conn, drop.id, keep.id)

    logger.info("duplicate_folded", kept=keep.id, retired=drop.id, name=keep.name)
    return keep.id, drop.id


def run_backfill(
    conn: psycopg.Connection,
    settings: Settings | None = None,
    *,
    name: str = CHECKPOINT_NAME,
    page_size: int | None = None,
    max_pages: int | None = None,
    should_stop: Callable[[], bool] | None = None,
    now: datetime | None = None,
) -> BackfillSummary:
    """Scan for already-created duplicates, resuming from the stored checkpoint.

    Each page is committed together with its checkpoint.  Stops when the
    catalog is exhausted (``finished``), after *max_pages*, or when
    *should_stop* returns true between pages.
    """
    settings = settings or get_settings()
    page_size = page_size or settings.backfill_page_size
    summary = BackfillSummary(last_entry_id=load_checkpoint(conn, name))

    logger.info("backfill_started", checkpoint=summary.last_entry_id, page_size=page_size)

    while True:
        if max_pages is not None and summary.pages >= max_pages:
            break
        if should_stop is not None and should_stop():
            logger.info("backfill_stopped", pages=summary.pages)
            break

        try:
            page = fetch_page(conn, summary.last_entry_id, page_size)
        except psycopg.OperationalError as e:
            raise InfrastructureFailure(str(e)) from e
        if not page:
            summary.finished = True
            break

        merged_in_page = 0
        retired: set[str] = set()
        for entry in page:
            if entry.id in retired:
                continue
            summary.scanned += 1
            try:
                with conn.transaction():
                    match = find_duplicate(conn, entry, settings)
                    if match is None:
                        continue
                    _, dropped = fold_duplicate(conn, entry, match.entry, now=now)
            except psycopg.OperationalError as e:
                raise InfrastructureFailure(str(e)) from e
            except (ResolutionError, psycopg.Error) as e:
                logger.warning("backfill_entry_failed", entry_id=entry.id, error=str(e))
                summary.failed += 1
                continue
            retired.add(dropped)
            merged_in_page += 1

        summary.last_entry_id = page[-1].id
        save_checkpoint(conn, summary.last_entry_id, merged_in_page, name)
        conn.commit()

        summary.pages += 1
        summary.merged += merged_in_page
        logger.info(
            "backfill_page_complete",
            page=summary.pages,
            checkpoint=summary.last_entry_id,
            merged=merged_in_page,
        )

    logger.info(
        "backfill_complete",
        pages=summary.pages,
        scanned=summary.scanned,
        merged=summary.merged,
        failed=summary.failed,
        finished=summary.finished,
    )
    return summary


def backfill_stats(conn: psycopg.Connection) -> dict[str, float]:
    """Catalog coverage: active entries, identifier coverage and duplicates retired."""
    rows = execute_query(
        conn,
        """
        SELECT
            count(*) FILTER (WHERE duplicate_of IS NULL) AS total,
            count(*) FILTER (
                WHERE duplicate_of IS NULL
                  AND EXISTS (SELECT 1 FROM entry_identifiers i WHERE i.entry_id = e.id)
            ) AS with_identifiers,
            count(*) FILTER (WHERE duplicate_of IS NOT NULL) AS duplicates
        FROM canonical_entries e
        """,
    )
    row = rows[0] if rows else {}
    total = int(row.get("total") or 0)
    with_identifiers = int(row.get("with_identifiers") or 0)

    return {
        "total": total,
        "with_identifiers": with_identifiers,
        "without_identifiers": total - with_identifiers,
        "percent_complete": round(100 * with_identifiers / total, 1) if total else 0.0,
        "duplicates": int(row.get("duplicates") or 0),
    }
