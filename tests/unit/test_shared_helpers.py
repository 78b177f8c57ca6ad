"""Unit tests for cslb_etl.shared helpers (no database)."""

from __future__ import annotations

import csv
import json
from pathlib import Path

import psycopg

from cslb_etl.shared import (
    ErrorKind,
    ImportStats,
    RejectWriter,
    StepResult,
    is_connection_error,
    normalize_headers,
    read_csv_header,
    read_csv_rows,
    write_run_report,
)


def _write_csv(path: Path, headers: list[str], rows: list[list[str]]) -> Path:
    with path.open("w", newline="", encoding="utf-8") as fh:
        writer = csv.writer(fh)
        writer.writerow(headers)
        writer.writerows(rows)
    return path


# ---------------------------------------------------------------------------
# normalize_headers
# ---------------------------------------------------------------------------

class TestNormalizeHeaders:
    def test_strips_keys(self):
        assert normalize_headers({" LICENSE_NUMBER ": "1"}) == {"LICENSE_NUMBER": "1"}

    def test_short_row_none_becomes_empty(self):
        assert normalize_headers({"CITY": None}) == {"CITY": ""}

    def test_overflow_cells_dropped(self):
        assert normalize_headers({"A": "1", None: ["extra"]}) == {"A": "1"}


# ---------------------------------------------------------------------------
# CSV reading
# ---------------------------------------------------------------------------

class TestReadCsv:
    def test_header_with_bom(self, tmp_path):
        path = tmp_path / "lm.csv"
        path.write_text("\ufeffLICENSE_NUMBER, BUSINESS_NAME\n1,ACME\n", encoding="utf-8")
        assert read_csv_header(path) == {"LICENSE_NUMBER", "BUSINESS_NAME"}

    def test_rows_streamed_and_blank_rows_skipped(self, tmp_path):
        path = _write_csv(
            tmp_path / "lm.csv",
            ["LICENSE_NUMBER", "BUSINESS_NAME"],
            [["1", "ACME"], ["", " "], ["2", "BETA"]],
        )
        rows = list(read_csv_rows(path))
        assert [r["LICENSE_NUMBER"] for r in rows] == ["1", "2"]

    def test_short_row_padded_with_empty(self, tmp_path):
        path = tmp_path / "lm.csv"
        path.write_text("LICENSE_NUMBER,BUSINESS_NAME,CITY\n1,ACME\n", encoding="utf-8")
        rows = list(read_csv_rows(path))
        assert rows == [{"LICENSE_NUMBER": "1", "BUSINESS_NAME": "ACME", "CITY": ""}]

    def test_latin1_byte_replaced_not_raised(self, tmp_path):
        path = tmp_path / "lm.csv"
        path.write_bytes(
            b"LICENSE_NUMBER,BUSINESS_NAME\n"
            b"1,ACME\n"
            b"2,PE\xd1A BUILDERS\n"
            b"3,BETA\n"
        )
        rows = list(read_csv_rows(path))
        assert [r["LICENSE_NUMBER"] for r in rows] == ["1", "2", "3"]
        assert rows[1]["BUSINESS_NAME"] == "PE\ufffdA BUILDERS"

    def test_latin1_byte_in_header(self, tmp_path):
        path = tmp_path / "lm.csv"
        path.write_bytes(b"LICENSE_NUMBER,NOT\xc9\n1,x\n")
        assert "LICENSE_NUMBER" in read_csv_header(path)


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class TestRejectWriter:
    def test_no_file_until_first_reject(self, tmp_path):
        path = tmp_path / "out" / "rejects.csv"
        writer = RejectWriter(path)
        writer.close()
        assert not path.exists()
        assert writer.count == 0

    def test_writes_reason_column(self, tmp_path):
        path = tmp_path / "out" / "rejects.csv"
        writer = RejectWriter(path)
        writer.write({"LICENSE_NUMBER": "1", "BUSINESS_NAME": ""}, "missing_business_name")
        writer.close()
        with path.open(newline="", encoding="utf-8") as fh:
            rows = list(csv.DictReader(fh))
        assert rows == [{
            "LICENSE_NUMBER": "1",
            "BUSINESS_NAME": "",
            "_reject_reason": "missing_business_name",
        }]
        assert writer.count == 1


# ---------------------------------------------------------------------------
# StepResult / ImportStats
# ---------------------------------------------------------------------------

class TestStepResult:
    def test_success(self):
        res = StepResult.success((37.7, -122.4))
        assert res.ok is True
        assert res.value == (37.7, -122.4)
        assert res.error_kind is None

    def test_failure(self):
        res = StepResult.failure(ErrorKind.CONSTRAINT_VIOLATION, "fk", value="C-99")
        assert res.ok is False
        assert res.error_kind is ErrorKind.CONSTRAINT_VIOLATION
        assert res.value == "C-99"
        assert res.message == "fk"


class TestImportStats:
    def test_record_error_counts_and_keeps_message(self):
        stats = ImportStats()
        stats.record_error("License 1: boom")
        assert stats.error_records == 1
        assert stats.errors == ["License 1: boom"]

    def test_to_dict_caps_error_list(self):
        stats = ImportStats()
        for i in range(150):
            stats.record_error(f"License {i}: bad")
        d = stats.to_dict()
        assert d["error_records"] == 150
        assert len(d["errors"]) == 100


class TestIsConnectionError:
    def test_operational_error(self):
        assert is_connection_error(psycopg.OperationalError("gone")) is True

    def test_data_error(self):
        assert is_connection_error(psycopg.DataError("bad")) is False

    def test_plain_exception(self):
        assert is_connection_error(ValueError("x")) is False


# ---------------------------------------------------------------------------
# write_run_report
# ---------------------------------------------------------------------------

class TestWriteRunReport:
    def test_report_contents(self, tmp_path):
        stats = ImportStats(total_records=3, new_records=2, updated_records=1)
        path = write_run_report(
            "run-1", "BATCH_20260101_000000", "2026-01-01T00:00:00+00:00",
            "COMPLETED", False, {"license_master": "lm.csv"}, stats,
            report_dir=tmp_path,
        )
        assert path == tmp_path / "run-1.json"
        report = json.loads(path.read_text())
        assert report["batch_id"] == "BATCH_20260101_000000"
        assert report["status"] == "COMPLETED"
        assert report["license_master"] == "lm.csv"
        assert report["stats"]["new_records"] == 2
