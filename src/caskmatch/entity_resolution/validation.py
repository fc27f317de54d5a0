"""Precision / recall measurement for catalog resolution quality.

Compares resolution outputs against a hand-labelled set of feed-record
pairs to compute standard information-retrieval metrics, and formats
batch summaries for operators.
"""

from __future__ import annotations

import psycopg

from caskmatch.db import execute_query
from caskmatch.entity_resolution.models import KIND_FEED_ID


def entry_id_for_feed_id(conn: psycopg.Connection, feed_id: str) -> str | None:
    """Active canonical entry a feed record resolved to, following ``duplicate_of``."""
    rows = execute_query(
        conn,
        """
        SELECT COALESCE(duplicate_of, id)::text AS entry_id
        FROM canonical_entries
        WHERE external_feed_id = %s
           OR id IN (
               SELECT entry_id FROM entry_identifiers
               WHERE kind = %s AND code = %s
           )
        ORDER BY created_at, id
        LIMIT 1
        """,
        (feed_id, KIND_FEED_ID, feed_id),
    )
    if rows:
        return rows[0]["entry_id"]
    return None


def compute_resolution_metrics(
    conn: psycopg.Connection,
    ground_truth: list[dict],
) -> dict[str, float]:
    """Compute precision, recall, and F1 for catalog resolution.

    Parameters
    ----------
    conn:
        Database connection.
    ground_truth:
        List of dicts each containing:
          - ``feed_id_a``: str
          - ``feed_id_b``: str
          - ``same_product``: bool, whether both records describe the
            same product.

    Returns
    -------
    dict
        ``{"precision": float, "recall": float, "f1": float,
          "true_positives": int, "false_positives": int,
          "false_negatives": int, "total_pairs": int}``
    """
    true_positives = 0
    false_positives = 0
    false_negatives = 0

    for pair in ground_truth:
        expected_same = pair["same_product"]

        id_a = entry_id_for_feed_id(conn, pair["feed_id_a"])
        id_b = entry_id_for_feed_id(conn, pair["feed_id_b"])

        # Unresolved records cannot be judged
        if id_a is None or id_b is None:
            if expected_same:
                false_negatives += 1
            continue

        predicted_same = id_a == id_b

        if predicted_same and expected_same:
            true_positives += 1
        elif predicted_same and not expected_same:
            false_positives += 1
        elif not predicted_same and expected_same:
            false_negatives += 1

    precision = (
        true_positives / (true_positives + false_positives)
        if (true_positives + false_positives) > 0
        else 0.0
    )
    recall = (
        true_positives / (true_positives + false_negatives)
        if (true_positives + false_negatives) > 0
        else 0.0
    )
    f1 = (
        2 * precision * recall / (precision + recall)
        if (precision + recall) > 0
        else 0.0
    )

    return {
        "precision": precision,
        "recall": recall,
        "f1": f1,
        "true_positives": true_positives,
        "false_positives": false_positives,
        "false_negatives": false_negatives,
        "total_pairs": len(ground_truth),
    }


def generate_validation_report(metrics: dict[str, float]) -> str:
    """Format resolution metrics into a human-readable report."""
    lines = [
        "Catalog Resolution Validation Report",
        "=" * 40,
        "",
        f"Total pairs evaluated:  {metrics.get('total_pairs', 0):.0f}",
        f"True positives:         {metrics.get('true_positives', 0):.0f}",
        f"False positives:        {metrics.get('false_positives', 0):.0f}",
        f"False negatives:        {metrics.get('false_negatives', 0):.0f}",
        "",
        f"Precision:  {metrics.get('precision', 0.0):.4f}",
        f"Recall:     {metrics.get('recall', 0.0):.4f}",
        f"F1 Score:   {metrics.get('f1', 0.0):.4f}",
    ]

    # EXCELLENT also requires high precision
    f1 = metrics.get("f1", 0.0)
    precision = metrics.get("precision", 0.0)
    if f1 >= 0.95 and precision >= 0.98:
        lines.append("\nAssessment: EXCELLENT, thresholds look right")
    elif f1 >= 0.85:
        lines.append("\nAssessment: GOOD, review borderline merges")
    elif f1 >= 0.70:
        lines.append("\nAssessment: FAIR, consider tuning the merge threshold")
    else:
        lines.append("\nAssessment: POOR, significant resolution errors")

    return "\n".join(lines)


def format_import_summary(summary) -> str:
    """Format a :class:`~caskmatch.entity_resolution.resolver.BatchSummary` for operators."""
    lines = [
        f"Created:   {summary.created}",
        f"Merged:    {summary.merged}",
        f"Existing:  {summary.existing}",
        f"Failed:    {summary.failed}",
    ]
    if summary.groups:
        lines.insert(0, f"Unique products: {summary.groups}")
    if summary.stopped:
        lines.append("Stopped before the batch was exhausted.")

    if summary.errors:
        lines.append("")
        lines.append("Errors:")
        lines.extend(f"  {e.reference}: {e.message}" for e in summary.errors)
        hidden = summary.failed - len(summary.errors)
        if hidden > 0:
            lines.append(f"  ... and {hidden} more")

    return "\n".join(lines)
