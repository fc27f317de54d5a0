"""Tests for the spreadsheet bulk-import pipeline.

Group resolution is mocked; grouping, mapping and fan-out run for real.
"""

from __future__ import annotations

from unittest.mock import patch

import psycopg
import pytest

from caskmatch.entity_resolution.models import (
    OUTCOME_AUTO_MERGED,
    OUTCOME_CREATED,
    SOURCE_USER,
    ResolutionResult,
)
from caskmatch.errors import InfrastructureFailure, ValidationError
from caskmatch.pipelines.spreadsheet import (
    analyze_rows,
    load_import_rows,
    map_varietal,
    row_instance,
    row_to_source_record,
    run_bulk_import,
    suggest_column_mapping,
)

HEADERS = [
    "iWine", "Wine", "Producer", "Vintage", "Varietal", "Size", "Price",
    "Location", "Bin", "UPC", "Barcode",
]
MAPPING = suggest_column_mapping(HEADERS)


def _row(**kwargs) -> dict[str, str]:
    row = dict.fromkeys(HEADERS, "")
    row.update({"Wine": "Eagle Rare 10", "Producer": "Buffalo Trace", "Varietal": "Bourbon"})
    row.update(kwargs)
    return row


def _resolved(entry_id: str = "e-1", outcome: str = OUTCOME_CREATED) -> ResolutionResult:
    return ResolutionResult(reference="k", resolved_id=entry_id, outcome=outcome)


# =========================================================================
# Loading and mapping
# =========================================================================


class TestSuggestColumnMapping:
    def test_known_headers(self):
        assert MAPPING["wine"] == "Wine"
        assert MAPPING["producer"] == "Producer"
        assert MAPPING["iWine"] == "iWine"
        assert MAPPING["upc"] == "UPC"
        assert MAPPING["barcode"] == "Barcode"

    def test_case_insensitive_aliases(self):
        mapping = suggest_column_mapping(["PRODUCT NAME", "Distillery", "Qty"])
        assert mapping == {"producer": "Distillery", "quantity": "Qty"}

    def test_first_alias_wins(self):
        mapping = suggest_column_mapping(["Name", "Wine"])
        assert mapping["wine"] == "Wine"


class TestLoadImportRows:
    def test_reads_everything_as_strings(self, tmp_path):
        path = tmp_path / "cellar.csv"
        path.write_text(
            "iWine,Wine,Vintage,Price\n"
            "12345,Eagle Rare 10,,39.99\n"
            "00042,Weller 12,2012,\n"
        )
        rows = load_import_rows(path)
        assert rows == [
            {"iWine": "12345", "Wine": "Eagle Rare 10", "Vintage": "", "Price": "39.99"},
            {"iWine": "00042", "Wine": "Weller 12", "Vintage": "2012", "Price": ""},
        ]


class TestMapVarietal:
    @pytest.mark.parametrize(
        ("varietal", "category"),
        [
            ("Bourbon", "Bourbon"),
            ("Straight Rye Whiskey", "Rye"),
            ("Single Malt", "Scotch"),
            ("Irish Whiskey", "Irish"),
            ("Japanese Whisky", "Japanese"),
            ("Cabernet Sauvignon", "Other"),
            ("", "Bourbon"),
            (None, "Bourbon"),
        ],
    )
    def test_mapping(self, varietal, category):
        assert map_varietal(varietal) == category


class TestRowToSourceRecord:
    def test_product_fields(self):
        row = _row(Vintage="2014", UPC="080244009236 123", iWine="12345")
        record = row_to_source_record(row, MAPPING, reference="k", use_external_id=True)
        assert record.name == "Eagle Rare 10"
        assert record.brand == "Buffalo Trace"
        assert record.distillery == "Buffalo Trace"
        assert record.category == "Bourbon"
        assert record.vintage == "2014"
        assert record.upcs == ["080244009236"]
        assert record.import_id == "12345"
        assert record.source == SOURCE_USER

    def test_import_id_only_when_requested(self):
        record = row_to_source_record(_row(iWine="12345"), MAPPING)
        assert record.import_id is None

    def test_bottle_barcode_is_not_a_product_code(self):
        record = row_to_source_record(_row(Barcode="0000123456789"), MAPPING)
        assert record.upcs == []


class TestRowInstance:
    def test_only_populated_instance_fields(self):
        row = _row(Price="39.99", Location="Cellar", Bin="A1", Barcode="0000123456789")
        assert row_instance(row, MAPPING) == {
            "price": "39.99",
            "location": "Cellar",
            "bin": "A1",
            "barcode": "0000123456789",
        }


# =========================================================================
# Preview
# =========================================================================


class TestAnalyzeRows:
    def test_counts_products_and_locations(self):
        rows = [
            _row(Location="Cellar"),
            _row(Location="Office"),
            _row(Wine="Weller 12"),
            _row(Wine=""),
        ]
        analysis = analyze_rows(rows, MAPPING)
        assert analysis.total_rows == 4
        assert analysis.unique_products == 2
        assert analysis.unresolvable_rows == 1
        assert analysis.has_multiple_locations is True

    def test_single_location(self):
        analysis = analyze_rows([_row(), _row(Wine="Weller 12")], MAPPING)
        assert analysis.has_multiple_locations is False


# =========================================================================
# run_bulk_import
# =========================================================================


class TestRunBulkImport:
    """Tests for grouped resolution and per-row fan-out."""

    def test_same_external_id_resolves_once(self, mock_conn):
        rows = [
            _row(iWine="12345", Price="39.99", Location="Cellar"),
            _row(iWine="12345", Price="44.99", Location="Office"),
        ]
        with patch(
            "caskmatch.pipelines.spreadsheet.resolve_group", return_value=_resolved("e-12345"),
        ) as mock_resolve:
            summary = run_bulk_import(mock_conn, rows, MAPPING, use_external_id=True)

        mock_resolve.assert_called_once()
        record = mock_resolve.call_args[0][1]
        assert record.import_id == "12345"

        assert summary.groups == 1
        assert summary.created == 2
        assert [r.resolved_id for r in summary.results] == ["e-12345", "e-12345"]
        assert [r.instance["price"] for r in summary.results] == ["39.99", "44.99"]
        assert [r.instance["location"] for r in summary.results] == ["Cellar", "Office"]
        mock_conn.commit.assert_called_once()

    def test_results_ordered_by_row_index(self, mock_conn):
        rows = [_row(), _row(Wine="Weller 12"), _row()]
        with patch(
            "caskmatch.pipelines.spreadsheet.resolve_group",
            side_effect=[_resolved("e-er"), _resolved("e-w", OUTCOME_AUTO_MERGED)],
        ):
            summary = run_bulk_import(mock_conn, rows, MAPPING)

        assert [r.reference for r in summary.results] == ["0", "1", "2"]
        assert [r.resolved_id for r in summary.results] == ["e-er", "e-w", "e-er"]
        assert summary.created == 2
        assert summary.merged == 1

    def test_upcs_unioned_across_group(self, mock_conn):
        rows = [_row(UPC="080244009236"), _row(UPC="080244009250")]
        with patch(
            "caskmatch.pipelines.spreadsheet.resolve_group", return_value=_resolved(),
        ) as mock_resolve:
            run_bulk_import(mock_conn, rows, MAPPING)
        assert mock_resolve.call_args[0][1].upcs == ["080244009236", "080244009250"]

    def test_unresolvable_rows_reported(self, mock_conn):
        rows = [_row(), _row(Wine="")]
        with patch(
            "caskmatch.pipelines.spreadsheet.resolve_group", return_value=_resolved(),
        ):
            summary = run_bulk_import(mock_conn, rows, MAPPING)
        assert summary.created == 1
        assert summary.failed == 1
        assert summary.errors[0].reference == "1"

    def test_failed_group_fails_all_its_rows(self, mock_conn):
        rows = [_row(), _row(Wine="Weller 12"), _row()]
        with patch(
            "caskmatch.pipelines.spreadsheet.resolve_group",
            side_effect=[ValidationError("bad group"), _resolved("e-w")],
        ):
            summary = run_bulk_import(mock_conn, rows, MAPPING)

        assert summary.failed == 2
        assert {e.reference for e in summary.errors} == {"0", "2"}
        assert [r.reference for r in summary.results] == ["1"]

    def test_database_error_is_row_scoped(self, mock_conn):
        with patch(
            "caskmatch.pipelines.spreadsheet.resolve_group",
            side_effect=psycopg.errors.CheckViolation("bad proof"),
        ):
            summary = run_bulk_import(mock_conn, [_row()], MAPPING)
        assert summary.failed == 1

    def test_lost_connection_aborts(self, mock_conn):
        with (
            patch(
                "caskmatch.pipelines.spreadsheet.resolve_group",
                side_effect=psycopg.OperationalError("server closed the connection"),
            ),
            pytest.raises(InfrastructureFailure),
        ):
            run_bulk_import(mock_conn, [_row()], MAPPING)

    def test_stop_between_groups(self, mock_conn):
        rows = [_row(), _row(Wine="Weller 12")]
        calls = iter([False, True])
        with patch(
            "caskmatch.pipelines.spreadsheet.resolve_group", return_value=_resolved(),
        ) as mock_resolve:
            summary = run_bulk_import(
                mock_conn, rows, MAPPING, should_stop=lambda: next(calls),
            )
        assert mock_resolve.call_count == 1
        assert summary.stopped is True
        assert summary.created == 1
        mock_conn.commit.assert_called_once()
