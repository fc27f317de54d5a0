"""In-memory types shared by the resolution stages."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

# Provenance source tags
SOURCE_MANUAL = "manual"
SOURCE_USER = "user"
SOURCE_FEED = "external-feed"

# Identifier kinds stored in entry_identifiers.kind
KIND_UPC = "upc"
KIND_SKU = "sku"
KIND_FEED_ID = "feed-id"
KIND_IMPORT_ID = "import-id"

# Resolution outcomes
OUTCOME_CREATED = "created"
OUTCOME_MERGED = "merged"
OUTCOME_AUTO_MERGED = "auto_merged"
OUTCOME_EXISTING = "existing"
OUTCOME_FAILED = "failed"

# Specification fields: optional, sparse, filled in but never overwritten.
SPEC_FIELDS: tuple[str, ...] = (
    "type",
    "age",
    "proof",
    "abv",
    "stated_proof",
    "size",
    "country",
    "region",
    "price",
    "description",
    "image_url",
)

ENTRY_COLUMNS = """
    id::text AS id, name, brand, distillery, category, type, age, proof, abv,
    stated_proof, size, country, region, price, description, image_url,
    is_variant, variant_detail, source, external_feed_id, sku, imported_at,
    last_sync_at, duplicate_of::text AS duplicate_of, no_match_marked_at,
    created_at
"""


@dataclass
class Identifier:
    """An external code (UPC, SKU, feed id) attached to a canonical entry."""

    code: str
    kind: str = KIND_UPC
    verified_count: int = 0
    is_admin_added: bool = False
    added_at: datetime | None = None


@dataclass
class CanonicalEntry:
    """The single source of truth for a distinct product."""

    id: str
    name: str
    brand: str
    distillery: str
    category: str = "Spirits"
    type: str | None = None
    age: int | None = None
    proof: float | None = None
    abv: float | None = None
    stated_proof: str | None = None
    size: str | None = None
    country: str | None = None
    region: str | None = None
    price: float | None = None
    description: str | None = None
    image_url: str | None = None
    is_variant: bool = False
    variant_detail: str | None = None
    source: str = SOURCE_MANUAL
    external_feed_id: str | None = None
    sku: str | None = None
    imported_at: datetime | None = None
    last_sync_at: datetime | None = None
    duplicate_of: str | None = None
    no_match_marked_at: datetime | None = None
    created_at: datetime | None = None
    identifiers: list[Identifier] = field(default_factory=list)

    @property
    def codes(self) -> set[str]:
        return {ident.code for ident in self.identifiers}


@dataclass
class SourceRecord:
    """An incoming product descriptor, already parsed from a feed record or import row.

    ``reference`` identifies the input unit in results and error lists
    (feed id or row index).
    """

    name: str
    reference: str = ""
    brand: str | None = None
    distillery: str | None = None
    category: str | None = None
    type: str | None = None
    age: int | None = None
    proof: float | None = None
    abv: float | None = None
    stated_proof: str | None = None
    size: str | None = None
    country: str | None = None
    region: str | None = None
    price: float | None = None
    description: str | None = None
    image_url: str | None = None
    is_variant: bool = False
    variant_detail: str | None = None
    source: str = SOURCE_USER
    external_feed_id: str | None = None
    sku: str | None = None
    upcs: list[str] = field(default_factory=list)
    import_id: str | None = None
    vintage: str | None = None


@dataclass
class Candidate:
    """A possible match between an incoming record and an existing entry.

    ``confidence`` is capped to 0-100 for display; ``raw_score`` keeps the
    uncapped value so ordering survives the cap.
    """

    entry: CanonicalEntry
    confidence: int = 0
    reasons: list[str] = field(default_factory=list)
    raw_score: int = 0
    exact: bool = False


@dataclass
class ResolutionResult:
    """Outcome for one input unit (feed record or import row)."""

    reference: str
    resolved_id: str | None
    outcome: str
    errors: list[str] = field(default_factory=list)
    confidence: int | None = None
    instance: dict[str, Any] = field(default_factory=dict)


def entry_from_row(row: dict[str, Any], identifiers: list[Identifier] | None = None) -> CanonicalEntry:
    """Build a :class:`CanonicalEntry` from a ``canonical_entries`` row dict."""
    return CanonicalEntry(
        id=row["id"],
        name=row["name"],
        brand=row.get("brand") or "",
        distillery=row.get("distillery") or "",
        category=row.get("category") or "Spirits",
        type=row.get("type"),
        age=row.get("age"),
        proof=row.get("proof"),
        abv=row.get("abv"),
        stated_proof=row.get("stated_proof"),
        size=row.get("size"),
        country=row.get("country"),
        region=row.get("region"),
        price=row.get("price"),
        description=row.get("description"),
        image_url=row.get("image_url"),
        is_variant=bool(row.get("is_variant", False)),
        variant_detail=row.get("variant_detail"),
        source=row.get("source") or SOURCE_MANUAL,
        external_feed_id=row.get("external_feed_id"),
        sku=row.get("sku"),
        imported_at=row.get("imported_at"),
        last_sync_at=row.get("last_sync_at"),
        duplicate_of=row.get("duplicate_of"),
        no_match_marked_at=row.get("no_match_marked_at"),
        created_at=row.get("created_at"),
        identifiers=identifiers or [],
    )


def entry_to_record(entry: CanonicalEntry, *, source: str | None = None) -> SourceRecord:
    """View an existing entry as an incoming record (backfill and review flows)."""
    return SourceRecord(
        name=entry.name,
        reference=entry.id,
        brand=entry.brand or None,
        distillery=entry.distillery or None,
        category=entry.category,
        type=entry.type,
        age=entry.age,
        proof=entry.proof,
        abv=entry.abv,
        stated_proof=entry.stated_proof,
        size=entry.size,
        country=entry.country,
        region=entry.region,
        price=entry.price,
        description=entry.description,
        image_url=entry.image_url,
        is_variant=entry.is_variant,
        variant_detail=entry.variant_detail,
        source=source or entry.source,
        external_feed_id=entry.external_feed_id,
        sku=entry.sku,
        upcs=[i.code for i in entry.identifiers if i.kind == KIND_UPC],
        import_id=next(
            (i.code for i in entry.identifiers if i.kind == KIND_IMPORT_ID), None,
        ),
    )
