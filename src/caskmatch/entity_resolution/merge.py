"""Non-destructive merge of an incoming record into an existing canonical entry."""

from __future__ import annotations

from datetime import UTC, datetime

import psycopg
import structlog

from caskmatch.db import execute_query
from caskmatch.entity_resolution.catalog import add_identifiers, get_entry
from caskmatch.entity_resolution.models import (
    KIND_FEED_ID,
    KIND_IMPORT_ID,
    KIND_SKU,
    KIND_UPC,
    SOURCE_FEED,
    SPEC_FIELDS,
    CanonicalEntry,
    Identifier,
    SourceRecord,
)
from caskmatch.errors import ResolutionError

logger = structlog.get_logger(__name__)

# Retail-feed codes are trusted; user-entered codes start unverified.
FEED_VERIFIED_COUNT = 1000
USER_VERIFIED_COUNT = 1


def record_identifiers(record: SourceRecord, added_at: datetime) -> list[Identifier]:
    """Identifier rows carried by *record* (UPCs, feed SKU and id, spreadsheet product id)."""
    from_feed = record.source == SOURCE_FEED
    verified = FEED_VERIFIED_COUNT if from_feed else USER_VERIFIED_COUNT

    identifiers = [
        Identifier(
            code=code,
            kind=KIND_UPC,
            verified_count=verified,
            is_admin_added=from_feed,
            added_at=added_at,
        )
        for code in record.upcs
    ]
    if record.sku:
        identifiers.append(
            Identifier(code=record.sku, kind=KIND_SKU, verified_count=verified,
                       is_admin_added=from_feed, added_at=added_at)
        )
    if record.external_feed_id:
        identifiers.append(
            Identifier(code=record.external_feed_id, kind=KIND_FEED_ID,
                       verified_count=verified, is_admin_added=from_feed,
                       added_at=added_at)
        )
    if record.import_id:
        identifiers.append(
            Identifier(code=record.import_id, kind=KIND_IMPORT_ID,
                       verified_count=verified, added_at=added_at)
        )
    return identifiers


def _fill_missing_assignments(record: SourceRecord) -> tuple[list[str], list]:
    """``SET`` clauses that only write a specification field when it is empty."""
    assignments: list[str] = []
    params: list = []
    for name in SPEC_FIELDS:
        value = getattr(record, name)
        if value is None or value == "":
            continue
        if isinstance(value, str):
            assignments.append(f"{name} = COALESCE(NULLIF({name}, ''), %s)")
        else:
            assignments.append(f"{name} = COALESCE({name}, %s)")
        params.append(value)
    return assignments, params


def merge_into_entry(
    conn: psycopg.Connection,
    entry_id: str,
    record: SourceRecord,
    *,
    now: datetime | None = None,
) -> CanonicalEntry:
    """Fill gaps in entry *entry_id* from *record* and union-add its identifiers.

    Populated fields are never changed.  Provenance (source tag and last
    sync time) is always refreshed; the feed id, SKU and import time are
    only set when absent.  Applying the same record twice gives the same
    end state as applying it once (for a fixed *now*).

    Raises:
        ResolutionError: If the entry does not exist.
    """
    now = now or datetime.now(UTC)

    assignments, params = _fill_missing_assignments(record)
    assignments += [
        "source = %s",
        "last_sync_at = %s",
        "external_feed_id = COALESCE(external_feed_id, %s)",
        "sku = COALESCE(sku, %s)",
        "imported_at = COALESCE(imported_at, %s)",
    ]
    params += [record.source, now, record.external_feed_id, record.sku, now]

    rows = execute_query(
        conn,
        f"""
        UPDATE canonical_entries
        SET {", ".join(assignments)}
        WHERE id = %s::uuid
        RETURNING id::text AS id
        """,
        (*params, entry_id),
    )
    if not rows:
        msg = f"Canonical entry {entry_id} not found"
        raise ResolutionError(msg)

    added = add_identifiers(conn, entry_id, record_identifiers(record, now))
    logger.info(
        "entry_merged",
        entry_id=entry_id,
        record=record.reference,
        identifiers_added=added,
    )

    entry = get_entry(conn, entry_id)
    if entry is None:
        msg = f"Canonical entry {entry_id} disappeared during merge"
        raise ResolutionError(msg)
    return entry
