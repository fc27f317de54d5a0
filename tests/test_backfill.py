"""Tests for the resumable duplicate scan.

All database interactions are mocked, no real PostgreSQL needed.
"""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import MagicMock, patch

import psycopg
import pytest

from caskmatch.entity_resolution.backfill import (
    backfill_stats,
    fetch_page,
    find_duplicate,
    fold_duplicate,
    load_checkpoint,
    run_backfill,
    save_checkpoint,
)
from caskmatch.entity_resolution.models import Candidate
from caskmatch.errors import InfrastructureFailure

B = "caskmatch.entity_resolution.backfill"
OLD = datetime(2023, 1, 1, tzinfo=UTC)
NEW = datetime(2024, 1, 1, tzinfo=UTC)


# =========================================================================
# Checkpoints and paging
# =========================================================================


class TestCheckpoints:
    def test_load_missing_checkpoint(self):
        with patch(f"{B}.execute_query", return_value=[]):
            assert load_checkpoint(MagicMock()) is None

    def test_load_existing_checkpoint(self):
        with patch(f"{B}.execute_query", return_value=[{"last_entry_id": "abc"}]):
            assert load_checkpoint(MagicMock(), "scan") == "abc"

    def test_save_accumulates_merged(self):
        with patch(f"{B}.execute_query") as mock_eq:
            save_checkpoint(MagicMock(), "abc", 3, "scan")
        sql, params = mock_eq.call_args[0][1], mock_eq.call_args[0][2]
        assert "backfill_checkpoints.merged + EXCLUDED.merged" in sql
        assert params == ("scan", "abc", 3)


class TestFetchPage:
    def test_first_page_has_no_lower_bound(self):
        with patch(f"{B}.execute_query", return_value=[]) as mock_eq:
            fetch_page(MagicMock(), None, 50)
        sql, params = mock_eq.call_args[0][1], mock_eq.call_args[0][2]
        assert "id >" not in sql
        assert "duplicate_of IS NULL" in sql
        assert params == (50,)

    def test_keyset_after_checkpoint(self):
        with patch(
            f"{B}.execute_query", return_value=[{"id": "b", "name": "Weller"}],
        ) as mock_eq:
            page = fetch_page(MagicMock(), "a", 50)
        sql, params = mock_eq.call_args[0][1], mock_eq.call_args[0][2]
        assert "id > %s::uuid" in sql
        assert "ORDER BY id" in sql
        assert params == ("a", 50)
        assert [e.id for e in page] == ["b"]


# =========================================================================
# Duplicate detection and folding
# =========================================================================


class TestFindDuplicate:
    def test_returns_candidate_at_merge_threshold(self, make_entry, settings):
        entry = make_entry("a", name="Eagle Rare 10", brand="Eagle Rare", proof=90.0)
        twin = make_entry("b", name="Eagle Rare 10", brand="Eagle Rare", proof=90.0)
        with patch(f"{B}.generate_fuzzy_candidates", return_value=[twin]) as mock_fuzzy:
            match = find_duplicate(MagicMock(), entry, settings)
        assert match.entry.id == "b"
        assert mock_fuzzy.call_args.kwargs["exclude_ids"] == ["a"]

    def test_variant_never_folds_into_base(self, make_entry, settings):
        entry = make_entry("a", name="Eagle Rare 10", brand="Eagle Rare", proof=90.0)
        variant = make_entry(
            "b", name="Eagle Rare 10", brand="Eagle Rare", proof=90.0, is_variant=True,
        )
        with patch(f"{B}.generate_fuzzy_candidates", return_value=[variant]):
            assert find_duplicate(MagicMock(), entry, settings) is None

    def test_below_threshold(self, make_entry, settings):
        entry = make_entry("a", name="Eagle Rare 10", brand="Eagle Rare")
        other = make_entry("b", name="Weller Special Reserve", brand="Weller")
        with patch(f"{B}.generate_fuzzy_candidates", return_value=[other]):
            assert find_duplicate(MagicMock(), entry, settings) is None


class TestFoldDuplicate:
    def test_keeps_older_entry(self, make_entry):
        conn = MagicMock()
        newer = make_entry("a", created_at=NEW, size="750ml")
        older = make_entry("b", created_at=OLD, source="external-feed")
        with (
            patch(f"{B}.get_entry", return_value=newer) as mock_get,
            patch(f"{B}.merge_into_entry") as mock_merge,
            patch(f"{B}.mark_duplicate") as mock_mark,
        ):
            kept, retired = fold_duplicate(conn, newer, older)

        assert (kept, retired) == ("b", "a")
        mock_get.assert_called_once_with(conn, "a")
        record = mock_merge.call_args[0][2]
        assert mock_merge.call_args[0][1] == "b"
        assert record.size == "750ml"
        assert record.source == "external-feed"
        mock_mark.assert_called_once_with(conn, "a", "b")

    def test_same_age_breaks_tie_by_id(self, make_entry):
        with (
            patch(f"{B}.get_entry", return_value=None),
            patch(f"{B}.merge_into_entry"),
            patch(f"{B}.mark_duplicate"),
        ):
            kept, retired = fold_duplicate(
                MagicMock(), make_entry("z", created_at=OLD), make_entry("m", created_at=OLD),
            )
        assert (kept, retired) == ("m", "z")


# =========================================================================
# run_backfill
# =========================================================================


class TestRunBackfill:
    """Tests for paging, checkpointing and resumption."""

    def test_resumes_and_finishes(self, mock_conn, make_entry, settings):
        pages = [[make_entry("c"), make_entry("d")], []]
        with (
            patch(f"{B}.load_checkpoint", return_value="b"),
            patch(f"{B}.fetch_page", side_effect=pages) as mock_fetch,
            patch(f"{B}.find_duplicate", return_value=None),
            patch(f"{B}.save_checkpoint") as mock_save,
        ):
            summary = run_backfill(mock_conn, settings, page_size=2)

        assert mock_fetch.call_args_list[0][0][1:] == ("b", 2)
        assert mock_fetch.call_args_list[1][0][1:] == ("d", 2)
        assert summary.finished is True
        assert summary.pages == 1
        assert summary.scanned == 2
        mock_save.assert_called_once_with(mock_conn, "d", 0, "duplicate_scan")
        mock_conn.commit.assert_called_once()

    def test_folds_and_skips_retired_entries(self, mock_conn, make_entry, settings):
        a, b = make_entry("a", created_at=OLD), make_entry("b", created_at=NEW)
        with (
            patch(f"{B}.load_checkpoint", return_value=None),
            patch(f"{B}.fetch_page", side_effect=[[a, b], []]),
            patch(f"{B}.find_duplicate", return_value=Candidate(entry=b, confidence=90)),
            patch(f"{B}.fold_duplicate", return_value=("a", "b")) as mock_fold,
            patch(f"{B}.save_checkpoint"),
        ):
            summary = run_backfill(mock_conn, settings)

        mock_fold.assert_called_once()
        assert summary.merged == 1
        assert summary.scanned == 1

    def test_max_pages_leaves_scan_unfinished(self, mock_conn, make_entry, settings):
        with (
            patch(f"{B}.load_checkpoint", return_value=None),
            patch(f"{B}.fetch_page", return_value=[make_entry("a")]) as mock_fetch,
            patch(f"{B}.find_duplicate", return_value=None),
            patch(f"{B}.save_checkpoint"),
        ):
            summary = run_backfill(mock_conn, settings, max_pages=2)

        assert mock_fetch.call_count == 2
        assert summary.pages == 2
        assert summary.finished is False

    def test_should_stop_between_pages(self, mock_conn, settings):
        with (
            patch(f"{B}.load_checkpoint", return_value="x"),
            patch(f"{B}.fetch_page") as mock_fetch,
        ):
            summary = run_backfill(mock_conn, settings, should_stop=lambda: True)
        mock_fetch.assert_not_called()
        assert summary.last_entry_id == "x"

    def test_entry_error_is_counted_not_fatal(self, mock_conn, make_entry, settings):
        with (
            patch(f"{B}.load_checkpoint", return_value=None),
            patch(f"{B}.fetch_page", side_effect=[[make_entry("a"), make_entry("b")], []]),
            patch(
                f"{B}.find_duplicate",
                side_effect=[psycopg.errors.InvalidTextRepresentation("bad"), None],
            ),
            patch(f"{B}.save_checkpoint"),
        ):
            summary = run_backfill(mock_conn, settings)
        assert summary.failed == 1
        assert summary.scanned == 2
        assert summary.finished is True

    def test_lost_connection_aborts(self, mock_conn, settings):
        with (
            patch(f"{B}.load_checkpoint", return_value=None),
            patch(f"{B}.fetch_page", side_effect=psycopg.OperationalError("gone")),
            pytest.raises(InfrastructureFailure),
        ):
            run_backfill(mock_conn, settings)


class TestBackfillStats:
    def test_coverage(self):
        row = {"total": 200, "with_identifiers": 150, "duplicates": 7}
        with patch(f"{B}.execute_query", return_value=[row]):
            stats = backfill_stats(MagicMock())
        assert stats == {
            "total": 200,
            "with_identifiers": 150,
            "without_identifiers": 50,
            "percent_complete": 75.0,
            "duplicates": 7,
        }

    def test_empty_catalog(self):
        with patch(f"{B}.execute_query", return_value=[{}]):
            assert backfill_stats(MagicMock())["percent_complete"] == 0.0
