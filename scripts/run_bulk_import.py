#!/usr/bin/env python3
"""CLI script to import a spreadsheet (CSV) collection export."""

from __future__ import annotations

import json
from pathlib import Path

import structlog
import typer

from caskmatch.config import get_settings
from caskmatch.db import get_connection, init_schema
from caskmatch.entity_resolution.validation import format_import_summary
from caskmatch.pipelines.spreadsheet import (
    analyze_rows,
    load_import_rows,
    run_bulk_import,
    suggest_column_mapping,
)

logger = structlog.get_logger(__name__)
app = typer.Typer()


@app.command()
def main(
    csv_path: Path = typer.Argument(help="CSV export to import"),
    mapping_path: Path | None = typer.Option(
        None, "--mapping", help="JSON file mapping logical fields to column headers",
    ),
    external_id: bool = typer.Option(
        False, "--external-id", help="Group rows by the iWine/external product id column",
    ),
    preview: bool = typer.Option(
        False, "--preview", help="Only print the suggested mapping and row analysis",
    ),
    output: Path | None = typer.Option(
        None, help="Write the per-row resolution mapping to this JSON file",
    ),
) -> None:
    """Group rows into unique products and resolve each one to a canonical entry."""
    rows = load_import_rows(csv_path)
    headers = list(rows[0].keys()) if rows else []

    if mapping_path is not None:
        mapping = json.loads(mapping_path.read_text())
    else:
        mapping = suggest_column_mapping(headers)
    logger.info("column_mapping", **mapping)

    analysis = analyze_rows(rows, mapping, use_external_id=external_id)
    logger.info(
        "import_analysis",
        total_rows=analysis.total_rows,
        unique_products=analysis.unique_products,
        unresolvable_rows=analysis.unresolvable_rows,
        has_multiple_locations=analysis.has_multiple_locations,
    )
    if preview:
        return

    settings = get_settings()
    conn = get_connection(settings)

    try:
        init_schema(conn)
        summary = run_bulk_import(conn, rows, mapping, use_external_id=external_id)
        typer.echo(format_import_summary(summary))

        if output is not None:
            output.write_text(json.dumps(
                [
                    {
                        "row": int(r.reference),
                        "entry_id": r.resolved_id,
                        "outcome": r.outcome,
                        "instance": r.instance,
                    }
                    for r in summary.results
                ],
                indent=2,
            ))
            logger.info("import_mapping_written", path=str(output), rows=len(summary.results))
    finally:
        conn.close()


if __name__ == "__main__":
    app()
