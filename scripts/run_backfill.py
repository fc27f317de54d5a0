#!/usr/bin/env python3
"""CLI script to scan the catalog for duplicates created before matching existed."""

from __future__ import annotations

import structlog
import typer

from caskmatch.config import get_settings
from caskmatch.db import get_connection, init_schema
from caskmatch.entity_resolution.backfill import (
    CHECKPOINT_NAME,
    backfill_stats,
    reset_checkpoint,
    run_backfill,
)

logger = structlog.get_logger(__name__)
app = typer.Typer()


@app.command()
def main(
    max_pages: int | None = typer.Option(None, help="Stop after this many pages"),
    page_size: int | None = typer.Option(
        None, help="Entries per page (default: CM_BACKFILL_PAGE_SIZE)",
    ),
    name: str = typer.Option(CHECKPOINT_NAME, help="Checkpoint name"),
    restart: bool = typer.Option(
        False, "--restart", help="Discard the checkpoint and scan from the beginning",
    ),
    stats_only: bool = typer.Option(False, "--stats", help="Only print coverage stats"),
) -> None:
    """Run (or resume) the duplicate scan, committing after every page."""
    settings = get_settings()
    conn = get_connection(settings)

    try:
        init_schema(conn)
        logger.info("catalog_stats", **backfill_stats(conn))
        if stats_only:
            return

        if restart:
            reset_checkpoint(conn, name)

        summary = run_backfill(
            conn, settings, name=name, page_size=page_size, max_pages=max_pages,
        )
        logger.info("catalog_stats", **backfill_stats(conn))
        if not summary.finished:
            typer.echo(f"Paused at {summary.last_entry_id}; run again to resume.")
    finally:
        conn.close()


if __name__ == "__main__":
    app()
