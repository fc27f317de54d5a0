"""Race-safe creation of canonical entries.

Concurrent importers may try to create the same product at the same
time.  The unique index on ``(lower(name), lower(distillery), is_variant)``
decides the winner; the loser re-reads the winning entry and carries on
as if it had matched from the start.
"""

from __future__ import annotations

import uuid
from datetime import UTC, date, datetime
from typing import Any

import psycopg
import structlog

from caskmatch.db import execute_query
from caskmatch.entity_resolution.candidates import find_by_unique_key
from caskmatch.entity_resolution.catalog import add_identifiers
from caskmatch.entity_resolution.merge import record_identifiers
from caskmatch.entity_resolution.models import CanonicalEntry, SourceRecord
from caskmatch.entity_resolution.normalize import derive_age, extract_strength
from caskmatch.errors import ResolutionError, ValidationError

logger = structlog.get_logger(__name__)

DEFAULT_CATEGORY = "Spirits"

_INSERT_COLUMNS = (
    "id", "name", "brand", "distillery", "category", "type", "age", "proof",
    "abv", "stated_proof", "size", "country", "region", "price", "description",
    "image_url", "is_variant", "variant_detail", "source", "external_feed_id",
    "sku", "imported_at", "last_sync_at",
)


def unique_key(record: SourceRecord) -> tuple[str, str, str]:
    """``(name, brand, distillery)`` a new entry for *record* would be stored under."""
    name = (record.name or "").strip()
    brand = (
        (record.brand or "").strip()
        or (record.distillery or "").strip()
        or (name.split()[0] if name else "")
    )
    distillery = (record.distillery or "").strip() or brand
    return name, brand, distillery


def derive_entry_fields(record: SourceRecord, *, today: date | None = None) -> dict[str, Any]:
    """Fill the derivable gaps of *record* before it becomes a new entry.

    * brand falls back to the distillery, then to the first word of the name
    * distillery falls back to the brand
    * age comes from the vintage column or "<n> Year" in the name
    * ABV/proof are completed from each other or read out of the name

    Raises:
        ValidationError: If no name can be derived.
    """
    name, brand, distillery = unique_key(record)
    if not name:
        msg = f"Record {record.reference or '?'} has no product name"
        raise ValidationError(msg)

    age = record.age
    if age is None:
        age = derive_age(record.vintage, name, today=today)

    proof, abv, stated = record.proof, record.abv, record.stated_proof
    if proof is None and abv is None:
        strength = extract_strength(name)
        proof, abv = strength.proof, strength.abv
        stated = stated or strength.stated_proof
    elif proof is None:
        proof = abv * 2
    elif abv is None:
        abv = proof / 2

    return {
        "name": name,
        "brand": brand,
        "distillery": distillery,
        "category": record.category or DEFAULT_CATEGORY,
        "type": record.type,
        "age": age,
        "proof": proof,
        "abv": abv,
        "stated_proof": stated,
        "size": record.size,
        "country": record.country,
        "region": record.region,
        "price": record.price,
        "description": record.description,
        "image_url": record.image_url,
        "is_variant": record.is_variant,
        "variant_detail": record.variant_detail,
        "source": record.source,
        "external_feed_id": record.external_feed_id,
        "sku": record.sku,
    }


def create_entry(
    conn: psycopg.Connection,
    record: SourceRecord,
    *,
    now: datetime | None = None,
) -> tuple[CanonicalEntry, bool]:
    """Create a canonical entry for *record*, tolerating a concurrent duplicate.

    Returns ``(entry, created)``.  ``created`` is ``False`` when another
    writer inserted the same ``(name, distillery, is_variant)`` first; the
    returned entry is then the active winner (the entry a retired winner
    was folded into) and the caller should merge into it.

    Raises:
        ValidationError: If no name can be derived.
        ResolutionError: If the conflicting entry cannot be re-read.
    """
    now = now or datetime.now(UTC)
    fields = derive_entry_fields(record, today=now.date())
    entry_id = str(uuid.uuid4())

    row = {"id": entry_id, **fields, "imported_at": now, "last_sync_at": now}
    placeholders = ", ".join(["%s"] * len(_INSERT_COLUMNS))

    try:
        # Savepoint: a conflict must not poison the caller's transaction.
        with conn.transaction():
            execute_query(
                conn,
                f"""
                INSERT INTO canonical_entries ({", ".join(_INSERT_COLUMNS)})
                VALUES ({placeholders})
                RETURNING id::text AS id
                """,
                tuple(row[c] for c in _INSERT_COLUMNS),
            )
    except psycopg.errors.UniqueViolation:
        logger.info(
            "duplicate_key_race",
            name=fields["name"],
            distillery=fields["distillery"],
            record=record.reference,
        )
        winner = find_by_unique_key(
            conn, fields["name"], fields["distillery"], is_variant=fields["is_variant"],
        )
        if winner is None:
            msg = f"Entry {fields['name']!r} conflicted but could not be re-read"
            raise ResolutionError(msg) from None
        return winner, False

    identifiers = record_identifiers(record, now)
    add_identifiers(conn, entry_id, identifiers)
    logger.info("entry_created", entry_id=entry_id, name=fields["name"], record=record.reference)

    entry = CanonicalEntry(
        id=entry_id,
        imported_at=now,
        last_sync_at=now,
        created_at=now,
        identifiers=identifiers,
        **fields,
    )
    return entry, True
