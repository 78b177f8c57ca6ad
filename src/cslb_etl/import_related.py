"""cslb_etl.import_related

Loaders for the two CSLB files that hang off the license master:

  - personnel     → california_contractors.personnel
  - workers' comp → california_contractors.workers_comp (+ contractor status)

Both resolve the parent contractor by license number; rows whose license is
not (yet) in the contractors table are counted as unmatched, not errors.
Caller manages the file transaction; these functions only run per-row SQL.
"""

from __future__ import annotations

from datetime import date, timedelta

import psycopg

from cslb_etl.normalize import normalize_space, parse_date, trim
from cslb_etl.shared import ImportStats, RowValidationError

WC_STATUS_ACTIVE = "ACTIVE"
WC_STATUS_EXEMPT = "EXEMPT"
WC_STATUS_EXPIRED = "EXPIRED"
WC_STATUS_EXPIRING_SOON = "EXPIRING_SOON"
WC_STATUS_UNKNOWN = "UNKNOWN"

EXPIRING_SOON_WINDOW = timedelta(days=30)

_EXEMPT_VALUES = {"Y", "YES"}


# ---------------------------------------------------------------------------
# Shared lookup
# ---------------------------------------------------------------------------

def resolve_contractor_id(
    conn: psycopg.Connection,
    license_number: str,
) -> str | None:
    row = conn.execute(
        "SELECT id FROM california_contractors.contractors WHERE license_number = %s",
        (license_number,),
    ).fetchone()
    return str(row[0]) if row else None


# ---------------------------------------------------------------------------
# Workers' comp helpers
# ---------------------------------------------------------------------------

def is_wc_exempt(value: str | None) -> bool:
    v = trim(value)
    return v is not None and v.upper() in _EXEMPT_VALUES


def determine_wc_status(
    exempt: bool,
    expiration: date | None,
    today: date | None = None,
) -> str:
    if exempt:
        return WC_STATUS_EXEMPT
    if expiration is None:
        return WC_STATUS_UNKNOWN
    today = today or date.today()
    if expiration < today:
        return WC_STATUS_EXPIRED
    if expiration < today + EXPIRING_SOON_WINDOW:
        return WC_STATUS_EXPIRING_SOON
    return WC_STATUS_ACTIVE


# ---------------------------------------------------------------------------
# Per-row processing
# ---------------------------------------------------------------------------

def process_personnel_row(
    conn: psycopg.Connection,
    row: dict[str, str],
    stats: ImportStats,
) -> None:
    """Attach one person to a contractor.  Caller manages savepoint."""
    stats.personnel_read += 1
    license_number = trim(row.get("LICENSE_NUMBER"))
    if license_number is None:
        raise RowValidationError("missing_license_number")
    person_name = normalize_space(row.get("PERSON_NAME"))
    if person_name is None:
        raise RowValidationError(f"missing_person_name: license={license_number}")

    contractor_id = resolve_contractor_id(conn, license_number)
    if contractor_id is None:
        stats.personnel_unmatched += 1
        return

    title = normalize_space(row.get("TITLE"))
    disassociation_date = parse_date(row.get("DISASSOCIATION_DATE"))

    existing = conn.execute(
        """
        SELECT id FROM california_contractors.personnel
        WHERE contractor_id = %s
          AND person_name = %s
          AND title IS NOT DISTINCT FROM %s
        """,
        (contractor_id, person_name, title),
    ).fetchone()
    if existing:
        conn.execute(
            """
            UPDATE california_contractors.personnel
            SET association_date = COALESCE(%s, association_date),
                disassociation_date = %s,
                is_active = %s,
                updated_at = now()
            WHERE id = %s
            """,
            (
                parse_date(row.get("ASSOCIATION_DATE")),
                disassociation_date,
                disassociation_date is None,
                existing[0],
            ),
        )
        return

    conn.execute(
        """
        INSERT INTO california_contractors.personnel
          (contractor_id, person_name, title, association_date,
           disassociation_date, is_active)
        VALUES (%s, %s, %s, %s, %s, %s)
        """,
        (
            contractor_id,
            person_name,
            title,
            parse_date(row.get("ASSOCIATION_DATE")),
            disassociation_date,
            disassociation_date is None,
        ),
    )
    stats.personnel_inserted += 1


def process_workers_comp_row(
    conn: psycopg.Connection,
    row: dict[str, str],
    stats: ImportStats,
    today: date | None = None,
) -> None:
    """Upsert one policy and refresh the contractor's WC status.  Caller manages savepoint."""
    stats.workers_comp_read += 1
    license_number = trim(row.get("LICENSE_NUMBER"))
    if license_number is None:
        raise RowValidationError("missing_license_number")

    contractor_id = resolve_contractor_id(conn, license_number)
    if contractor_id is None:
        stats.workers_comp_unmatched += 1
        return

    exempt = is_wc_exempt(row.get("EXEMPT"))
    expiration = parse_date(row.get("EXPIRATION_DATE"))
    status = determine_wc_status(exempt, expiration, today)

    policy_number = trim(row.get("POLICY_NUMBER"))
    effective_date = parse_date(row.get("EFFECTIVE_DATE"))
    carrier_name = normalize_space(row.get("CARRIER_NAME"))
    exemption_type = trim(row.get("EXEMPTION_TYPE")) if exempt else None

    # Exempt rows carry no policy number, so NULL-safe matching instead of
    # ON CONFLICT (NULLs never conflict under a plain UNIQUE constraint).
    existing = conn.execute(
        """
        SELECT id FROM california_contractors.workers_comp
        WHERE contractor_id = %s
          AND policy_number IS NOT DISTINCT FROM %s
          AND effective_date IS NOT DISTINCT FROM %s
        """,
        (contractor_id, policy_number, effective_date),
    ).fetchone()
    if existing:
        conn.execute(
            """
            UPDATE california_contractors.workers_comp
            SET carrier_name = %s,
                expiration_date = %s,
                is_exempt = %s,
                exemption_type = %s,
                status = %s,
                updated_at = now()
            WHERE id = %s
            """,
            (carrier_name, expiration, exempt, exemption_type, status, existing[0]),
        )
    else:
        conn.execute(
            """
            INSERT INTO california_contractors.workers_comp
              (contractor_id, carrier_name, policy_number, effective_date,
               expiration_date, is_exempt, exemption_type, status)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                contractor_id, carrier_name, policy_number, effective_date,
                expiration, exempt, exemption_type, status,
            ),
        )
    conn.execute(
        """
        UPDATE california_contractors.contractors
        SET workers_comp_status = %s, workers_comp_exempt = %s
        WHERE id = %s
        """,
        (status, exempt, contractor_id),
    )
    stats.workers_comp_upserted += 1
