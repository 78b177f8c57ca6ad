"""Integration test fixtures.

Applies the california_contractors migration against an ephemeral
PostgreSQL database provided by pytest-postgresql.
"""

from __future__ import annotations

import csv
from pathlib import Path

import psycopg
import pytest
from pytest_postgresql import factories

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent.parent
MIGRATIONS = [
    PROJECT_ROOT / "migrations" / "0001_california_contractors.sql",
]

LICENSE_MASTER_HEADERS = [
    "LICENSE_NUMBER", "BUSINESS_NAME", "DBA_NAME", "ADDRESS1", "ADDRESS2",
    "CITY", "STATE", "ZIP", "COUNTY", "PHONE", "LICENSE_STATUS",
    "LICENSE_STATUS_DATE", "LICENSE_TYPE", "ISSUE_DATE", "ORIGINAL_ISSUE_DATE",
    "EXPIRE_DATE", "ENTITY_TYPE", "BOND_AMOUNT", "BOND_COMPANY", "BOND_NUMBER",
    "CLASSIFICATIONS",
]

PERSONNEL_HEADERS = [
    "LICENSE_NUMBER", "PERSON_NAME", "TITLE", "ASSOCIATION_DATE",
    "DISASSOCIATION_DATE",
]

WORKERS_COMP_HEADERS = [
    "LICENSE_NUMBER", "CARRIER_NAME", "POLICY_NUMBER", "EFFECTIVE_DATE",
    "EXPIRATION_DATE", "EXEMPT", "EXEMPTION_TYPE",
]

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


@pytest.fixture(scope="function")
def db_conn(postgresql):
    """Return (connection, dsn) with the schema applied.

    Function scope gives each test a fresh database.
    """
    dsn = (
        f"host={postgresql.info.host} "
        f"port={postgresql.info.port} "
        f"dbname={postgresql.info.dbname} "
        f"user={postgresql.info.user} "
        f"password={postgresql.info.password or ''}"
    )
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        for migration in MIGRATIONS:
            conn.execute(migration.read_text(encoding="utf-8"))
        conn.autocommit = False
        yield conn, dsn
    finally:
        conn.close()


@pytest.fixture
def ledger_conn(db_conn):
    """Separate autocommit connection for ledger writes."""
    _, dsn = db_conn
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        yield conn
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# CSV fixture helpers
# ---------------------------------------------------------------------------

def write_csv(path: Path, headers: list[str], rows: list[dict[str, str]]) -> Path:
    with path.open("w", newline="", encoding="utf-8") as fh:
        writer = csv.DictWriter(fh, fieldnames=headers, extrasaction="ignore")
        writer.writeheader()
        for row in rows:
            writer.writerow({h: row.get(h, "") for h in headers})
    return path


def make_license_row(license_number: str = "1000001", **kwargs: str) -> dict[str, str]:
    row = {
        "LICENSE_NUMBER": license_number,
        "BUSINESS_NAME": f"CONTRACTOR {license_number} INC",
        "ADDRESS1": "123 MARKET ST",
        "CITY": "SAN FRANCISCO",
        "STATE": "CA",
        "ZIP": "94103",
        "PHONE": "4155551234",
        "LICENSE_STATUS": "ACTIVE",
        "ISSUE_DATE": "01/15/2015",
        "EXPIRE_DATE": "01/31/2027",
        "ENTITY_TYPE": "Corporation",
        "BOND_AMOUNT": "$25,000",
        "CLASSIFICATIONS": "B",
    }
    row.update(kwargs)
    return row


@pytest.fixture
def cslb_files(tmp_path):
    """Return a factory that writes the three CSLB files and returns their paths."""

    def _make(
        license_rows: list[dict[str, str]],
        personnel_rows: list[dict[str, str]] | None = None,
        workers_comp_rows: list[dict[str, str]] | None = None,
    ) -> dict[str, Path]:
        return {
            "license_master": write_csv(
                tmp_path / "LicenseMaster.csv", LICENSE_MASTER_HEADERS, license_rows,
            ),
            "personnel": write_csv(
                tmp_path / "Personnel.csv", PERSONNEL_HEADERS, personnel_rows or [],
            ),
            "workers_comp": write_csv(
                tmp_path / "WorkersComp.csv", WORKERS_COMP_HEADERS, workers_comp_rows or [],
            ),
        }

    return _make


@pytest.fixture
def license_row():
    """Expose make_license_row to tests as a fixture."""
    return make_license_row
