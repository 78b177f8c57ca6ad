"""Unit tests for cslb_etl.transform."""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from cslb_etl.shared import RowValidationError
from cslb_etl.transform import (
    MUTABLE_COLUMNS,
    has_valid_address,
    has_valid_phone,
    transform_license_row,
)

SYNCED_AT = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def _make_row(**overrides: str) -> dict[str, str]:
    row = {
        "LICENSE_NUMBER": "1000001",
        "BUSINESS_NAME": "BAYVIEW  BUILDERS, INC.",
        "DBA_NAME": "",
        "ADDRESS1": "123 MARKET ST",
        "ADDRESS2": "",
        "CITY": "SAN FRANCISCO",
        "STATE": "CA",
        "ZIP": "941031234",
        "COUNTY": "",
        "PHONE": "4155551234",
        "LICENSE_STATUS": "Active",
        "LICENSE_STATUS_DATE": "01/02/2024",
        "LICENSE_TYPE": "CORPORATION",
        "ISSUE_DATE": "2010-05-01",
        "ORIGINAL_ISSUE_DATE": "2010-05-01",
        "EXPIRE_DATE": "2026-05-31",
        "ENTITY_TYPE": "Corporation",
        "BOND_AMOUNT": "$25,000.00",
        "BOND_COMPANY": "ACME SURETY",
        "BOND_NUMBER": "B-123",
        "CLASSIFICATIONS": "B, C-10",
    }
    row.update(overrides)
    return row


# ---------------------------------------------------------------------------
# has_valid_address
# ---------------------------------------------------------------------------

class TestHasValidAddress:
    def test_complete_address(self):
        assert has_valid_address("123 MARKET ST", "SAN FRANCISCO", "CA", "94103") is True

    def test_short_street_line(self):
        # '12 ' trims to length 2
        assert has_valid_address("12 ", "SAN FRANCISCO", "CA", "94103") is False

    def test_street_line_exactly_five_is_invalid(self):
        assert has_valid_address("1 Elm", "SAN FRANCISCO", "CA", "94103") is False

    def test_short_city(self):
        assert has_valid_address("123 MARKET ST", "LA", "CA", "90001") is False

    @pytest.mark.parametrize("missing", ["address1", "city", "state", "zip"])
    def test_any_part_missing(self, missing):
        parts = {"address1": "123 MARKET ST", "city": "OAKLAND", "state": "CA", "zip": "94607"}
        parts[missing] = ""
        assert has_valid_address(parts["address1"], parts["city"], parts["state"], parts["zip"]) is False


class TestHasValidPhone:
    def test_ten_digits(self):
        assert has_valid_phone("(415) 555-1234") is True

    def test_seven_digits(self):
        assert has_valid_phone("555-1234") is False

    def test_none(self):
        assert has_valid_phone(None) is False


# ---------------------------------------------------------------------------
# transform_license_row
# ---------------------------------------------------------------------------

class TestTransformLicenseRow:
    def test_full_row(self):
        rec = transform_license_row(_make_row(), "BATCH_20260101_120000", SYNCED_AT)
        assert rec.license_number == "1000001"
        assert rec.business_name == "BAYVIEW BUILDERS, INC."
        assert rec.dba_name is None
        assert rec.city == "San Francisco"
        assert rec.state == "CA"
        assert rec.zip_code == "94103-1234"
        assert rec.county == "SAN FRANCISCO"
        assert rec.phone == "(415) 555-1234"
        assert rec.license_status == "ACTIVE"
        assert rec.license_status_date == date(2024, 1, 2)
        assert rec.expire_date == date(2026, 5, 31)
        assert rec.bond_amount == Decimal("25000.00")
        assert rec.import_batch_id == "BATCH_20260101_120000"
        assert rec.last_cslb_sync == SYNCED_AT
        assert rec.has_valid_address is True
        assert rec.has_valid_phone is True
        assert rec.classifications == "B, C-10"

    def test_missing_optional_columns_tolerated(self):
        row = {
            "LICENSE_NUMBER": "1000002",
            "BUSINESS_NAME": "SOLO ELECTRIC",
            "LICENSE_STATUS": "ACTIVE",
        }
        rec = transform_license_row(row, "B1", SYNCED_AT)
        assert rec.state == "CA"
        assert rec.city is None
        assert rec.phone is None
        assert rec.bond_amount is None
        assert rec.classifications is None
        assert rec.has_valid_address is False
        assert rec.has_valid_phone is False

    def test_unparseable_date_becomes_none(self):
        rec = transform_license_row(_make_row(ISSUE_DATE="sometime"), "B1", SYNCED_AT)
        assert rec.issue_date is None
        assert rec.original_issue_date == date(2010, 5, 1)

    def test_short_address_flags_invalid(self):
        rec = transform_license_row(_make_row(ADDRESS1="12 "), "B1", SYNCED_AT)
        assert rec.has_valid_address is False

    def test_seven_digit_phone_kept_verbatim(self):
        rec = transform_license_row(_make_row(PHONE="555-1234"), "B1", SYNCED_AT)
        assert rec.phone == "555-1234"
        assert rec.has_valid_phone is False

    def test_explicit_county_wins(self):
        rec = transform_license_row(_make_row(COUNTY="San Mateo"), "B1", SYNCED_AT)
        assert rec.county == "SAN MATEO"

    def test_missing_license_number_raises(self):
        with pytest.raises(RowValidationError, match="missing_license_number"):
            transform_license_row(_make_row(LICENSE_NUMBER="  "), "B1", SYNCED_AT)

    def test_missing_business_name_raises(self):
        with pytest.raises(RowValidationError, match="missing_business_name"):
            transform_license_row(_make_row(BUSINESS_NAME=""), "B1", SYNCED_AT)

    def test_missing_status_raises(self):
        with pytest.raises(RowValidationError, match="missing_license_status"):
            transform_license_row(_make_row(LICENSE_STATUS=""), "B1", SYNCED_AT)

    def test_mutable_values_follow_column_order(self):
        rec = transform_license_row(_make_row(), "B1", SYNCED_AT)
        values = rec.mutable_values()
        assert len(values) == len(MUTABLE_COLUMNS)
        assert values[MUTABLE_COLUMNS.index("zip_code")] == "94103-1234"
        assert values[MUTABLE_COLUMNS.index("has_valid_phone")] is True
