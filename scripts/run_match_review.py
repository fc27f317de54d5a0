#!/usr/bin/env python3
"""CLI script for the human-review flow: suggest, approve or reject matches."""

from __future__ import annotations

import structlog
import typer

from caskmatch.config import get_settings
from caskmatch.db import get_connection, init_schema
from caskmatch.entity_resolution.catalog import get_entry, mark_no_match, next_review_entry
from caskmatch.entity_resolution.resolver import approve_match, suggest_matches
from caskmatch.errors import ResolutionError

logger = structlog.get_logger(__name__)
app = typer.Typer()


@app.command()
def suggest(
    entry_id: str | None = typer.Argument(
        None, help="Entry to review (default: next entry in the review queue)",
    ),
) -> None:
    """Print feed-sourced candidates for one manual/user entry. Changes nothing."""
    settings = get_settings()
    conn = get_connection(settings)

    try:
        init_schema(conn)
        entry = get_entry(conn, entry_id) if entry_id else next_review_entry(conn)
        if entry is None:
            typer.echo("Nothing to review.")
            return

        candidates = suggest_matches(conn, entry, settings)
        logger.info("review_candidates", entry_id=entry.id, count=len(candidates))

        typer.echo(f"{entry.id}  {entry.name} ({entry.distillery})")
        for c in candidates:
            typer.echo(
                f"  {c.confidence:>3}  {c.entry.id}  {c.entry.name}  [{', '.join(c.reasons)}]"
            )
    finally:
        conn.close()


@app.command()
def approve(
    entry_id: str = typer.Argument(help="Reviewed entry"),
    target_id: str = typer.Argument(help="Entry it should be merged into"),
) -> None:
    """Merge a reviewed entry into the chosen candidate."""
    conn = get_connection(get_settings())

    try:
        approve_match(conn, entry_id, target_id)
        conn.commit()
    except ResolutionError as e:
        logger.warning(
            "review_approve_failed", entry_id=entry_id, target_id=target_id, error=str(e),
        )
        typer.echo(f"Not merged: {e}", err=True)
        raise typer.Exit(code=1) from e
    finally:
        conn.close()
    typer.echo(f"Merged {entry_id} into {target_id}.")


@app.command()
def reject(entry_id: str = typer.Argument(help="Reviewed entry")) -> None:
    """Record that no candidate matches, so the review queue skips the entry."""
    conn = get_connection(get_settings())

    try:
        mark_no_match(conn, entry_id)
        conn.commit()
        logger.info("review_no_match", entry_id=entry_id)
    finally:
        conn.close()


if __name__ == "__main__":
    app()
