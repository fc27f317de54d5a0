#!/usr/bin/env python3
"""CLI script to measure resolution quality against hand-labelled feed-record pairs."""

from __future__ import annotations

from pathlib import Path

import pandas as pd
import structlog
import typer

from caskmatch.config import get_settings
from caskmatch.db import get_connection
from caskmatch.entity_resolution.validation import (
    compute_resolution_metrics,
    generate_validation_report,
)

logger = structlog.get_logger(__name__)
app = typer.Typer()

_TRUE_VALUES = {"1", "true", "yes", "y"}


@app.command()
def main(
    labels_path: Path = typer.Argument(
        help="CSV with columns feed_id_a, feed_id_b, same_product",
    ),
) -> None:
    """Compute precision / recall / F1 of the current catalog resolution."""
    df = pd.read_csv(labels_path, dtype=str, keep_default_na=False)
    ground_truth = [
        {
            "feed_id_a": row["feed_id_a"].strip(),
            "feed_id_b": row["feed_id_b"].strip(),
            "same_product": row["same_product"].strip().lower() in _TRUE_VALUES,
        }
        for row in df.to_dict(orient="records")
    ]
    logger.info("ground_truth_loaded", path=str(labels_path), pairs=len(ground_truth))

    conn = get_connection(get_settings())
    try:
        metrics = compute_resolution_metrics(conn, ground_truth)
    finally:
        conn.close()

    logger.info("validation_complete", **metrics)
    typer.echo(generate_validation_report(metrics))


if __name__ == "__main__":
    app()
