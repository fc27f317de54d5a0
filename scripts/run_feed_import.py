#!/usr/bin/env python3
"""CLI script to import retailer feed records into the canonical catalog."""

from __future__ import annotations

import structlog
import typer

from caskmatch.config import get_settings
from caskmatch.db import get_connection, get_feed_connection, init_schema
from caskmatch.entity_resolution.validation import format_import_summary
from caskmatch.pipelines.feed import count_feed_records, import_feed_record, run_feed_import

logger = structlog.get_logger(__name__)
app = typer.Typer()


@app.command()
def main(
    feed_id: str | None = typer.Option(
        None, "--feed-id", help="Import a single feed record by repository id",
    ),
    batch_size: int | None = typer.Option(
        None, help="Records per batch (default: CM_FEED_BATCH_SIZE)",
    ),
    batches: int = typer.Option(1, help="Number of batches to run"),
) -> None:
    """Resolve unimported feed records to canonical entries (merge or create)."""
    settings = get_settings()
    conn = get_connection(settings)
    feed_conn = get_feed_connection(settings)

    try:
        init_schema(conn)

        if feed_id:
            summary = import_feed_record(conn, feed_conn, feed_id, settings)
            logger.info("feed_record_import_complete", feed_id=feed_id, **summary.counts())
            typer.echo(format_import_summary(summary))
            return

        logger.info("feed_records_available", count=count_feed_records(feed_conn))
        for batch in range(batches):
            summary = run_feed_import(conn, feed_conn, settings, batch_size=batch_size)
            logger.info("feed_batch_complete", batch=batch + 1, **summary.counts())
            typer.echo(format_import_summary(summary))
            if summary.total == 0:
                break
    finally:
        feed_conn.close()
        conn.close()


if __name__ == "__main__":
    app()
