"""Spreadsheet bulk-import pipeline.

Imports a user's collection export (CSV, e.g. a CellarTracker dump).  Rows
are grouped into unique products first; each group is resolved once by
exact key and the resolved entry id is fanned out to every row.  Per-row
physical-instance data (price, location, barcode, ...) is carried through
untouched so bottles of the same product stay distinct.

The caller supplies a mapping from logical field name to column header;
:func:`suggest_column_mapping` proposes one from the headers.  Missing or
wrong mappings only reduce match quality.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import pandas as pd
import psycopg
import structlog

from caskmatch.entity_resolution.grouping import (
    FIELD_EXTERNAL_ID,
    FIELD_NAME,
    FIELD_PRODUCER,
    FIELD_VINTAGE,
    group_key,
    group_rows,
    row_value,
)
from caskmatch.entity_resolution.models import SOURCE_USER, ResolutionResult, SourceRecord
from caskmatch.entity_resolution.resolver import BatchSummary, resolve_group
from caskmatch.errors import InfrastructureFailure, ResolutionError, UnresolvableGroupKey
from caskmatch.pipelines.feed import parse_number, parse_upcs

logger = structlog.get_logger(__name__)

DEFAULT_CATEGORY = "Bourbon"

# Header aliases per logical field, matched case-insensitively; first hit wins.
COLUMN_ALIASES: dict[str, list[str]] = {
    "wine": ["wine", "name", "bottle"],
    "producer": ["producer", "winery", "distillery", "brand"],
    "vintage": ["vintage", "year", "age"],
    "size": ["size", "bottle size", "format"],
    "price": ["price", "purchase price", "cost"],
    "quantity": ["quantity", "qty", "count", "bottles"],
    "location": ["location", "storage", "cellar", "storage location"],
    "bin": ["bin", "position", "shelf", "bin/position"],
    "notes": ["notes", "tasting notes", "comments", "tnotes"],
    "purchaseDate": ["purchase date", "purchasedate", "bought", "acquired"],
    "storeName": ["store", "store name", "storename", "vendor", "from"],
    "barcode": ["barcode", "bottle barcode"],
    "upc": ["upc", "upc code", "wine barcode"],
    "iWine": ["iwine", "cellartracker id", "ct id"],
    "value": ["value", "market value", "current value"],
    "varietal": ["varietal", "variety", "type"],
    "region": ["region", "appellation", "country"],
    "proof": ["proof"],
}

# Physical-instance fields kept per row, never merged into the catalog.
INSTANCE_FIELDS = (
    "price",
    "value",
    "quantity",
    "size",
    "location",
    "bin",
    "barcode",
    "purchaseDate",
    "storeName",
    "notes",
)

_VARIETALS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("bourbon",), "Bourbon"),
    (("rye",), "Rye"),
    (("scotch", "single malt"), "Scotch"),
    (("irish",), "Irish"),
    (("japanese",), "Japanese"),
)


# ---------------------------------------------------------------------------
# Loading and mapping
# ---------------------------------------------------------------------------

def suggest_column_mapping(headers: list[str]) -> dict[str, str]:
    """Propose a logical-field -> header mapping from known header aliases."""
    lowered = [h.strip().lower() for h in headers]
    mapping: dict[str, str] = {}
    for field_name, aliases in COLUMN_ALIASES.items():
        for alias in aliases:
            if alias in lowered:
                mapping[field_name] = headers[lowered.index(alias)]
                break
    return mapping


def load_import_rows(csv_path: Path) -> list[dict[str, str]]:
    """Read a CSV export as string-keyed rows of strings (blank cells become ``""``)."""
    df = pd.read_csv(csv_path, dtype=str, keep_default_na=False)
    rows = df.to_dict(orient="records")
    logger.info("import_rows_loaded", path=str(csv_path), rows=len(rows))
    return rows


def map_varietal(varietal: str | None) -> str:
    """Catalog category for a spreadsheet varietal (``Other`` when unrecognised)."""
    if not varietal:
        return DEFAULT_CATEGORY
    text = varietal.lower()
    for keywords, category in _VARIETALS:
        if any(k in text for k in keywords):
            return category
    return "Other"


def row_instance(row: Mapping[str, str], mapping: Mapping[str, str]) -> dict[str, str]:
    """The row's own physical-instance fields, for the output mapping."""
    instance = {}
    for field_name in INSTANCE_FIELDS:
        value = row_value(row, mapping, field_name)
        if value:
            instance[field_name] = value
    return instance


def row_to_source_record(
    row: Mapping[str, str],
    mapping: Mapping[str, str],
    *,
    reference: str = "",
    use_external_id: bool = False,
) -> SourceRecord:
    """Product-level fields of one row as a :class:`SourceRecord`."""
    producer = row_value(row, mapping, FIELD_PRODUCER) or None
    proof = parse_number(row_value(row, mapping, "proof"))
    category = (
        map_varietal(row_value(row, mapping, "varietal"))
        if mapping.get("varietal")
        else DEFAULT_CATEGORY
    )

    return SourceRecord(
        name=row_value(row, mapping, FIELD_NAME),
        reference=reference,
        brand=producer,
        distillery=producer,
        category=category,
        type=category,
        region=row_value(row, mapping, "region") or None,
        proof=proof if proof and proof > 0 else None,
        source=SOURCE_USER,
        upcs=parse_upcs(row_value(row, mapping, "upc")),
        import_id=(row_value(row, mapping, FIELD_EXTERNAL_ID) or None) if use_external_id else None,
        vintage=row_value(row, mapping, FIELD_VINTAGE) or None,
    )


# ---------------------------------------------------------------------------
# Preview
# ---------------------------------------------------------------------------

@dataclass
class ImportAnalysis:
    total_rows: int
    unique_products: int
    unresolvable_rows: int
    has_multiple_locations: bool


def analyze_rows(
    rows: list[Mapping[str, str]],
    mapping: Mapping[str, str],
    *,
    use_external_id: bool = False,
) -> ImportAnalysis:
    """Preview an import: distinct products and whether any spans several locations."""
    locations: dict[str, set[str]] = {}
    unresolvable = 0

    for row in rows:
        try:
            key = group_key(row, mapping, use_external_id=use_external_id)
        except UnresolvableGroupKey:
            unresolvable += 1
            continue
        where = f"{row_value(row, mapping, 'location')}|{row_value(row, mapping, 'bin')}"
        locations.setdefault(key, set()).add(where)

    return ImportAnalysis(
        total_rows=len(rows),
        unique_products=len(locations),
        unresolvable_rows=unresolvable,
        has_multiple_locations=any(len(v) > 1 for v in locations.values()),
    )


# ---------------------------------------------------------------------------
# Pipeline orchestrator
# ---------------------------------------------------------------------------

def _group_record(
    rows: list[Mapping[str, str]],
    indices: list[int],
    mapping: Mapping[str, str],
    *,
    key: str,
    use_external_id: bool,
) -> SourceRecord:
    """The group's first row as a record, with UPCs unioned across the group."""
    record = row_to_source_record(
        rows[indices[0]], mapping, reference=key, use_external_id=use_external_id,
    )
    for index in indices[1:]:
        for code in parse_upcs(row_value(rows[index], mapping, "upc")):
            if code not in record.upcs:
                record.upcs.append(code)
    return record


def run_bulk_import(
    conn: psycopg.Connection,
    rows: list[Mapping[str, str]],
    mapping: Mapping[str, str],
    *,
    use_external_id: bool = False,
    should_stop: Callable[[], bool] | None = None,
    now: datetime | None = None,
) -> BatchSummary:
    """Resolve every row of a spreadsheet import to a canonical entry id.

    Rows are grouped first (see
    :func:`~caskmatch.entity_resolution.grouping.group_rows`); each group is
    resolved once inside its own savepoint.  Results are per row, ordered
    by row index, and carry the row's instance fields.  Rows without a
    usable key, and every row of a failed group, are reported as errors.

    Returns:
        The batch summary, already committed.
    """
    groups, key_errors = group_rows(rows, mapping, use_external_id=use_external_id)
    summary = BatchSummary(groups=len(groups))
    for error in key_errors:
        summary.add_failure(error.reference, error.message)

    for done, (key, indices) in enumerate(groups.items()):
        if should_stop is not None and should_stop():
            summary.stopped = True
            logger.info("bulk_import_stopped", groups_done=done)
            break

        try:
            with conn.transaction():
                record = _group_record(
                    rows, indices, mapping, key=key, use_external_id=use_external_id,
                )
                resolved = resolve_group(conn, record, now=now)
        except psycopg.OperationalError as e:
            raise InfrastructureFailure(str(e)) from e
        except (ResolutionError, psycopg.Error) as e:
            logger.warning("import_group_failed", key=key, rows=len(indices), error=str(e))
            for index in indices:
                summary.add_failure(str(index), str(e))
            continue

        for index in indices:
            summary.add_result(
                ResolutionResult(
                    reference=str(index),
                    resolved_id=resolved.resolved_id,
                    outcome=resolved.outcome,
                    confidence=resolved.confidence,
                    instance=row_instance(rows[index], mapping),
                )
            )

    conn.commit()
    summary.results.sort(key=lambda r: int(r.reference))

    logger.info("bulk_import_complete", groups=summary.groups, **summary.counts())
    return summary
