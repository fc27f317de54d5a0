"""External product feed pipeline.

The feed is a large, read-only, schema-loose collection of retailer product
descriptors (``feed_products.payload`` JSONB).  Numeric fields arrive as
strings with units or sentinel text, UPCs as one space-separated string and
tasting notes as HTML, so every record goes through
:func:`parse_external_record` before it reaches the resolver.
"""

from __future__ import annotations

import html
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import psycopg
import structlog

from caskmatch.config import Settings
from caskmatch.db import execute_query
from caskmatch.entity_resolution.models import (
    KIND_FEED_ID,
    SOURCE_FEED,
    ResolutionResult,
    SourceRecord,
)
from caskmatch.entity_resolution.resolver import BatchSummary, resolve_record
from caskmatch.errors import InfrastructureFailure, ResolutionError, ValidationError

logger = structlog.get_logger(__name__)

NO_IMAGE_PATH = "/img/no-image.jpg"
DEFAULT_SIZE = "750 ml"
DEFAULT_COUNTRY = "United States"

_SENTINELS = frozenset({"", "n/a", "na", "none", "null", "-", "--", "unknown"})
_NUMBER = re.compile(r"-?\d+(?:\.\d+)?")
_TAG = re.compile(r"<[^>]*>")

_SIZE_MAP = {
    "750ML": "750 ml",
    "1L": "1000 ml",
    "1.75L": "1750 ml",
    "375ML": "375 ml",
    "50ML": "50 ml",
    "200ML": "200 ml",
    "1000ML": "1000 ml",
    "700ML": "700 ml",
    "500ML": "500 ml",
    "1.5L": "1500 ml",
    "3L": "3000 ml",
    "5L": "5000 ml",
}

# Checked in order; first substring hit wins.
_CATEGORY_KEYWORDS: tuple[tuple[str, str], ...] = (
    ("bourbon", "Bourbon"),
    ("rye", "Rye"),
    ("scotch", "Scotch"),
    ("irish", "Irish"),
    ("japanese", "Japanese"),
    ("canadian", "Canadian Whisky"),
    ("tennessee", "Tennessee Whiskey"),
    ("american whiskey", "American Whiskey"),
    ("vodka", "Vodka"),
    ("rum", "Rum"),
    ("gin", "Gin"),
    ("tequila", "Tequila"),
    ("mezcal", "Mezcal"),
    ("brandy", "Brandy"),
    ("cognac", "Cognac"),
    ("liqueur", "Liqueur"),
    ("wine", "Wine"),
    ("beer", "Beer"),
)


@dataclass
class ExternalRecord:
    """A parsed feed product. Only ``feed_id`` is required."""

    feed_id: str
    display_name: str = ""
    sku: str | None = None
    brand: str | None = None
    category_type: str | None = None
    marketing_category: str | None = None
    age_text: str | None = None
    proof: float | None = None
    size: str | None = None
    description: str | None = None
    region: str | None = None
    country: str | None = None
    list_price: float | None = None
    upcs: list[str] = field(default_factory=list)
    image_path: str | None = None


# ---------------------------------------------------------------------------
# Defensive field parsers
# ---------------------------------------------------------------------------

def _text(value: Any) -> str | None:
    """Strip a loosely-typed value to text, mapping sentinels to ``None``."""
    if value is None:
        return None
    text = str(value).strip()
    if text.lower() in _SENTINELS:
        return None
    return text


def parse_number(value: Any) -> float | None:
    """Parse a number that may carry units ("46%", "750ML") or be a sentinel ("N/A")."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)

    text = _text(value)
    if text is None:
        return None

    match = _NUMBER.search(text.replace(",", ""))
    return float(match.group(0)) if match else None


def parse_upcs(value: Any) -> list[str]:
    """Split a space-separated UPC string, keeping all-digit codes of 12+ digits."""
    text = _text(value)
    if text is None:
        return []

    codes: list[str] = []
    for token in text.split():
        if len(token) >= 12 and token.isdigit() and token not in codes:
            codes.append(token)
    return codes


def clean_html(value: Any) -> str | None:
    """Drop markup and decode entities from an HTML fragment."""
    text = _text(value)
    if text is None:
        return None
    cleaned = html.unescape(_TAG.sub("", text)).replace("\xa0", " ").strip()
    return cleaned or None


def normalize_size(value: Any) -> str:
    """Normalise a bottle size ("750ML", "1.75L") to "<n> ml"."""
    text = _text(value)
    if text is None:
        return DEFAULT_SIZE

    upper = text.upper().replace(" ", "")
    if upper in _SIZE_MAP:
        return _SIZE_MAP[upper]
    return re.sub(r"\s*ml$", " ml", text.lower())


def map_category(category_type: str | None, marketing_category: str | None = None) -> str:
    """Map a feed product type onto a catalog category."""
    text = (category_type or marketing_category or "").lower()
    for keyword, category in _CATEGORY_KEYWORDS:
        if keyword in text:
            return category
    return "Spirits"


def image_url(path: str | None, base_url: str) -> str | None:
    """Absolute image URL for a feed image path, or ``None`` for placeholders."""
    if not path or path == NO_IMAGE_PATH:
        return None
    if path.startswith(("http://", "https://")):
        return path
    return f"{base_url.rstrip('/')}{path}"


# ---------------------------------------------------------------------------
# Record parsing
# ---------------------------------------------------------------------------

def parse_external_record(raw: dict[str, Any]) -> ExternalRecord:
    """Parse a raw feed payload into an :class:`ExternalRecord`.

    Raises:
        ValidationError: If the payload has no ``repositoryId``.
    """
    feed_id = _text(raw.get("repositoryId"))
    if feed_id is None:
        msg = "Feed record has no repositoryId"
        raise ValidationError(msg)

    return ExternalRecord(
        feed_id=feed_id,
        display_name=_text(raw.get("displayName")) or "",
        sku=_text(raw.get("id")),
        brand=_text(raw.get("brand")),
        category_type=_text(raw.get("b2c_type")),
        marketing_category=_text(raw.get("b2c_newMarketingCategory")),
        age_text=_text(raw.get("b2c_age")),
        proof=parse_number(raw.get("b2c_proof")),
        size=_text(raw.get("b2c_size")),
        description=clean_html(raw.get("b2c_tastingNotes")),
        region=_text(raw.get("b2c_region")),
        country=_text(raw.get("b2c_country")),
        list_price=parse_number(raw.get("listPrice")),
        upcs=parse_upcs(raw.get("b2c_upc")),
        image_path=_text(raw.get("primaryLargeImageURL")),
    )


def to_source_record(record: ExternalRecord, *, image_base_url: str) -> SourceRecord:
    """Convert a parsed feed record into the resolver's :class:`SourceRecord`.

    Raises:
        ValidationError: If the record has no display name.
    """
    if not record.display_name:
        msg = f"Feed record {record.feed_id} has no display name"
        raise ValidationError(msg)

    proof = record.proof if record.proof and record.proof > 0 else None
    age = parse_number(record.age_text)

    return SourceRecord(
        name=record.display_name,
        reference=record.feed_id,
        brand=record.brand,
        distillery=record.brand,
        category=map_category(record.category_type, record.marketing_category),
        type=record.category_type or "Spirits",
        age=int(age) if age is not None and 0 < age < 100 else None,
        proof=proof,
        abv=proof / 2 if proof else None,
        stated_proof=f"{proof:g} proof" if proof else None,
        size=normalize_size(record.size),
        country=record.country or DEFAULT_COUNTRY,
        region=record.region,
        price=record.list_price,
        description=record.description,
        image_url=image_url(record.image_path, image_base_url),
        source=SOURCE_FEED,
        external_feed_id=record.feed_id,
        sku=record.sku,
        upcs=list(record.upcs),
    )


# ---------------------------------------------------------------------------
# Feed reads
# ---------------------------------------------------------------------------

def fetch_imported_feed_ids(conn: psycopg.Connection) -> list[str]:
    """Feed ids already linked to a canonical entry, by column or by identifier."""
    rows = execute_query(
        conn,
        """
        SELECT external_feed_id AS feed_id
        FROM canonical_entries
        WHERE external_feed_id IS NOT NULL
        UNION
        SELECT code AS feed_id
        FROM entry_identifiers
        WHERE kind = %s
        """,
        (KIND_FEED_ID,),
    )
    return [r["feed_id"] for r in rows]


def fetch_unimported_records(
    feed_conn: psycopg.Connection,
    imported_ids: list[str],
    limit: int,
) -> list[dict[str, Any]]:
    """Return up to *limit* raw feed payloads whose id is not in *imported_ids*.

    Ordered by feed id so repeated runs see the same records.
    """
    rows = execute_query(
        feed_conn,
        """
        SELECT payload
        FROM feed_products
        WHERE NOT (payload->>'repositoryId' = ANY(%s))
        ORDER BY payload->>'repositoryId'
        LIMIT %s
        """,
        (imported_ids, limit),
    )
    logger.debug("feed_page_fetched", requested=limit, returned=len(rows))
    return [r["payload"] for r in rows]


def fetch_feed_record(feed_conn: psycopg.Connection, feed_id: str) -> dict[str, Any] | None:
    """Return one raw feed payload by its repository id."""
    rows = execute_query(
        feed_conn,
        """
        SELECT payload
        FROM feed_products
        WHERE payload->>'repositoryId' = %s
        LIMIT 1
        """,
        (feed_id,),
    )
    if rows:
        return rows[0]["payload"]
    return None


def count_feed_records(feed_conn: psycopg.Connection) -> int:
    rows = execute_query(feed_conn, "SELECT count(*) AS n FROM feed_products")
    return int(rows[0]["n"]) if rows else 0


# ---------------------------------------------------------------------------
# Pipeline orchestrator
# ---------------------------------------------------------------------------

def _resolve_raw(
    conn: psycopg.Connection,
    raw: dict[str, Any],
    settings: Settings,
    *,
    now: datetime | None,
) -> ResolutionResult:
    record = to_source_record(
        parse_external_record(raw), image_base_url=settings.image_base_url,
    )
    return resolve_record(conn, record, settings, now=now)


def import_feed_records(
    conn: psycopg.Connection,
    raws: list[dict[str, Any]],
    settings: Settings,
    *,
    should_stop: Callable[[], bool] | None = None,
    now: datetime | None = None,
) -> BatchSummary:
    """Resolve raw feed payloads one by one, isolating per-record failures.

    Each record runs in its own savepoint, so a failed record leaves no
    partial writes.  Row-scoped errors are collected in the summary; a lost
    connection raises :class:`InfrastructureFailure`.  *should_stop* is
    checked before each record; once it returns true no further records
    are submitted.
    """
    summary = BatchSummary()

    for raw in raws:
        if should_stop is not None and should_stop():
            summary.stopped = True
            logger.info("feed_import_stopped", processed=summary.total)
            break

        reference = str(raw.get("repositoryId") or "?")
        try:
            with conn.transaction():
                result = _resolve_raw(conn, raw, settings, now=now)
        except psycopg.OperationalError as e:
            raise InfrastructureFailure(str(e)) from e
        except (ResolutionError, psycopg.Error) as e:
            logger.warning("feed_record_failed", reference=reference, error=str(e))
            summary.add_failure(reference, str(e))
            continue

        summary.add_result(result)

    return summary


def run_feed_import(
    conn: psycopg.Connection,
    feed_conn: psycopg.Connection,
    settings: Settings,
    *,
    batch_size: int | None = None,
    should_stop: Callable[[], bool] | None = None,
    now: datetime | None = None,
) -> BatchSummary:
    """Import the next page of feed records that are not linked to any entry yet.

    Args:
        conn: Canonical store connection.
        feed_conn: Read-only feed connection.
        settings: Application settings (thresholds, image host).
        batch_size: Records to fetch; defaults to ``settings.feed_batch_size``.
        should_stop: Batch-level cancellation check.
        now: Timestamp recorded as import/sync time.

    Returns:
        The batch summary, already committed.
    """
    try:
        imported = fetch_imported_feed_ids(conn)
        raws = fetch_unimported_records(
            feed_conn, imported, batch_size or settings.feed_batch_size,
        )
    except psycopg.OperationalError as e:
        raise InfrastructureFailure(str(e)) from e

    summary = import_feed_records(
        conn, raws, settings, should_stop=should_stop, now=now,
    )
    conn.commit()

    logger.info("feed_import_complete", fetched=len(raws), **summary.counts())
    return summary


def import_feed_record(
    conn: psycopg.Connection,
    feed_conn: psycopg.Connection,
    feed_id: str,
    settings: Settings,
    *,
    now: datetime | None = None,
) -> BatchSummary:
    """Import a single feed record by id (re-imports report ``existing``)."""
    raw = fetch_feed_record(feed_conn, feed_id)
    if raw is None:
        summary = BatchSummary()
        summary.add_failure(feed_id, f"Feed record {feed_id} not found")
        return summary

    summary = import_feed_records(conn, [raw], settings, now=now)
    conn.commit()
    return summary
