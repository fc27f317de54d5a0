"""Canonical catalog reads and small atomic writes.

All database interaction uses raw SQL via psycopg3.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime

import psycopg

from caskmatch.db import execute_many, execute_query
from caskmatch.entity_resolution.models import (
    ENTRY_COLUMNS,
    CanonicalEntry,
    Identifier,
    entry_from_row,
)


def fetch_identifiers(
    conn: psycopg.Connection,
    entry_ids: Iterable[str],
) -> dict[str, list[Identifier]]:
    """Return identifiers grouped by entry id, oldest first."""
    ids = list(entry_ids)
    if not ids:
        return {}

    rows = execute_query(
        conn,
        """
        SELECT entry_id::text AS entry_id, code, kind, verified_count,
               is_admin_added, added_at
        FROM entry_identifiers
        WHERE entry_id = ANY(%s::uuid[])
        ORDER BY added_at, code
        """,
        (ids,),
    )

    grouped: dict[str, list[Identifier]] = {i: [] for i in ids}
    for r in rows:
        grouped.setdefault(r["entry_id"], []).append(
            Identifier(
                code=r["code"],
                kind=r["kind"],
                verified_count=r["verified_count"],
                is_admin_added=r["is_admin_added"],
                added_at=r["added_at"],
            )
        )
    return grouped


def get_entry(conn: psycopg.Connection, entry_id: str) -> CanonicalEntry | None:
    """Load one canonical entry with its identifiers, or ``None``."""
    rows = execute_query(
        conn,
        f"SELECT {ENTRY_COLUMNS} FROM canonical_entries WHERE id = %s::uuid",
        (entry_id,),
    )
    if not rows:
        return None
    identifiers = fetch_identifiers(conn, [entry_id]).get(entry_id, [])
    return entry_from_row(rows[0], identifiers)


def add_identifiers(
    conn: psycopg.Connection,
    entry_id: str,
    identifiers: list[Identifier],
) -> int:
    """Union-add identifiers to an entry.

    Codes already present on the entry are left untouched (metadata
    included), so calling this repeatedly is harmless.  Returns the
    number of rows actually inserted.
    """
    if not identifiers:
        return 0

    now = datetime.now(UTC)
    return execute_many(
        conn,
        """
        INSERT INTO entry_identifiers
            (entry_id, code, kind, verified_count, is_admin_added, added_at)
        VALUES (%s, %s, %s, %s, %s, %s)
        ON CONFLICT (entry_id, code) DO NOTHING
        """,
        [
            (
                entry_id,
                ident.code,
                ident.kind,
                ident.verified_count,
                ident.is_admin_added,
                ident.added_at or now,
            )
            for ident in identifiers
        ],
    )


def mark_duplicate(conn: psycopg.Connection, entry_id: str, keep_id: str) -> None:
    """Point *entry_id* at the entry it duplicates. Nothing is deleted.

    Entries already retired into *entry_id* are re-pointed at *keep_id*,
    so ``duplicate_of`` always names an active entry.
    """
    execute_query(
        conn,
        """
        UPDATE canonical_entries
        SET duplicate_of = %s::uuid
        WHERE duplicate_of = %s::uuid
        """,
        (keep_id, entry_id),
    )
    execute_query(
        conn,
        """
        UPDATE canonical_entries
        SET duplicate_of = %s::uuid
        WHERE id = %s::uuid AND duplicate_of IS NULL
        """,
        (keep_id, entry_id),
    )


def mark_no_match(conn: psycopg.Connection, entry_id: str) -> None:
    """Record that human review found no match for *entry_id*."""
    execute_query(
        conn,
        "UPDATE canonical_entries SET no_match_marked_at = now() WHERE id = %s::uuid",
        (entry_id,),
    )


def next_review_entry(
    conn: psycopg.Connection,
    skip_ids: Iterable[str] = (),
) -> CanonicalEntry | None:
    """Oldest manual/user entry not yet merged away nor marked as having no match."""
    rows = execute_query(
        conn,
        f"""
        SELECT {ENTRY_COLUMNS}
        FROM canonical_entries
        WHERE source IN ('manual', 'user')
          AND duplicate_of IS NULL
          AND no_match_marked_at IS NULL
          AND NOT (id = ANY(%s::uuid[]))
        ORDER BY created_at, id
        LIMIT 1
        """,
        (list(skip_ids),),
    )
    if not rows:
        return None
    return entry_from_row(rows[0])
