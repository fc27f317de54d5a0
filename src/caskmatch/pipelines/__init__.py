"""Ingestion pipelines for the retailer product feed and spreadsheet imports."""

from __future__ import annotations

from caskmatch.pipelines.feed import (
    import_feed_record,
    parse_external_record,
    run_feed_import,
    to_source_record,
)
from caskmatch.pipelines.spreadsheet import (
    analyze_rows,
    load_import_rows,
    run_bulk_import,
    suggest_column_mapping,
)

__all__ = [
    # Retail feed
    "import_feed_record",
    "parse_external_record",
    "run_feed_import",
    "to_source_record",
    # Spreadsheet import
    "analyze_rows",
    "load_import_rows",
    "run_bulk_import",
    "suggest_column_mapping",
]
