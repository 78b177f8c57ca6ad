"""cslb_etl.transform

Map one raw CSLB license-master row to a ContractorRecord ready for storage.
Pure: no database access, no I/O.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from cslb_etl.normalize import (
    clean_business_name,
    normalize_city,
    normalize_phone,
    normalize_space,
    normalize_zip,
    parse_date,
    parse_decimal,
    phone_digits,
    resolve_county,
    trim,
)
from cslb_etl.shared import RowValidationError

DEFAULT_STATE = "CA"

# Columns written on both insert and update, in SQL parameter order.
MUTABLE_COLUMNS: tuple[str, ...] = (
    "business_name",
    "dba_name",
    "address_line1",
    "address_line2",
    "city",
    "state",
    "zip_code",
    "county",
    "phone",
    "license_status",
    "license_status_date",
    "license_type",
    "issue_date",
    "original_issue_date",
    "expire_date",
    "business_entity_type",
    "bond_amount",
    "bond_company",
    "bond_number",
    "import_batch_id",
    "last_cslb_sync",
    "has_valid_address",
    "has_valid_phone",
)


@dataclass
class ContractorRecord:
    license_number: str
    business_name: str
    dba_name: str | None
    address_line1: str | None
    address_line2: str | None
    city: str | None
    state: str
    zip_code: str | None
    county: str | None
    phone: str | None
    license_status: str
    license_status_date: date | None
    license_type: str | None
    issue_date: date | None
    original_issue_date: date | None
    expire_date: date | None
    business_entity_type: str | None
    bond_amount: Decimal | None
    bond_company: str | None
    bond_number: str | None
    import_batch_id: str
    last_cslb_sync: datetime
    has_valid_address: bool
    has_valid_phone: bool
    classifications: str | None = None

    def mutable_values(self) -> tuple[Any, ...]:
        d = asdict(self)
        return tuple(d[col] for col in MUTABLE_COLUMNS)


# ---------------------------------------------------------------------------
# Derived flags
# ---------------------------------------------------------------------------

def has_valid_address(
    address1: str | None,
    city: str | None,
    state: str | None,
    zip_code: str | None,
) -> bool:
    """All four parts present, street line longer than 5, city longer than 2."""
    a1 = trim(address1)
    c = trim(city)
    if not (a1 and c and trim(state) and trim(zip_code)):
        return False
    return len(a1) > 5 and len(c) > 2


def has_valid_phone(phone: str | None) -> bool:
    return len(phone_digits(phone)) == 10


# ---------------------------------------------------------------------------
# Row transform
# ---------------------------------------------------------------------------

def transform_license_row(
    row: dict[str, str],
    batch_id: str,
    synced_at: datetime | None = None,
) -> ContractorRecord:
    """Build a ContractorRecord from a license-master row.

    Absent optional columns read as empty.  Malformed dates, amounts and
    phones degrade to None or pass through; only a missing license number,
    business name or license status fails the row.
    """
    license_number = trim(row.get("LICENSE_NUMBER"))
    if license_number is None:
        raise RowValidationError("missing_license_number")

    business_name = clean_business_name(row.get("BUSINESS_NAME"))
    if business_name is None:
        raise RowValidationError(f"missing_business_name: license={license_number}")

    license_status = normalize_space(row.get("LICENSE_STATUS"))
    if license_status is None:
        raise RowValidationError(f"missing_license_status: license={license_number}")

    address1 = normalize_space(row.get("ADDRESS1"))
    raw_city = row.get("CITY")
    state = (trim(row.get("STATE")) or DEFAULT_STATE).upper()
    zip_code = normalize_zip(row.get("ZIP"))
    raw_phone = trim(row.get("PHONE"))

    return ContractorRecord(
        license_number=license_number,
        business_name=business_name,
        dba_name=normalize_space(row.get("DBA_NAME")),
        address_line1=address1,
        address_line2=normalize_space(row.get("ADDRESS2")),
        city=normalize_city(raw_city),
        state=state,
        zip_code=zip_code,
        county=resolve_county(row.get("COUNTY"), raw_city),
        phone=normalize_phone(raw_phone),
        license_status=license_status.upper(),
        license_status_date=parse_date(row.get("LICENSE_STATUS_DATE")),
        license_type=trim(row.get("LICENSE_TYPE")),
        issue_date=parse_date(row.get("ISSUE_DATE")),
        original_issue_date=parse_date(row.get("ORIGINAL_ISSUE_DATE")),
        expire_date=parse_date(row.get("EXPIRE_DATE")),
        business_entity_type=trim(row.get("ENTITY_TYPE")),
        bond_amount=parse_decimal(row.get("BOND_AMOUNT")),
        bond_company=normalize_space(row.get("BOND_COMPANY")),
        bond_number=trim(row.get("BOND_NUMBER")),
        import_batch_id=batch_id,
        last_cslb_sync=synced_at or datetime.now(timezone.utc),
        has_valid_address=has_valid_address(address1, raw_city, trim(row.get("STATE")), zip_code),
        has_valid_phone=has_valid_phone(raw_phone),
        classifications=trim(row.get("CLASSIFICATIONS")),
    )
