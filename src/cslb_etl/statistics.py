"""cslb_etl.statistics

Post-import aggregates: per-classification active license counts and a
market_analytics snapshot row.  Runs inside the caller's transaction.
"""

from __future__ import annotations

from dataclasses import dataclass

import psycopg


@dataclass
class MarketSnapshot:
    total_contractors: int
    active_contractors: int
    valid_address_contractors: int
    valid_phone_contractors: int


def refresh_classification_counts(conn: psycopg.Connection) -> int:
    """Recount active licenses per classification; returns rows touched."""
    return conn.execute(
        """
        UPDATE california_contractors.classifications c
        SET active_licenses_count = (
              SELECT COUNT(DISTINCT cc.contractor_id)
              FROM california_contractors.contractor_classifications cc
              JOIN california_contractors.contractors con
                ON cc.contractor_id = con.id
              WHERE cc.classification_code = c.code
                AND cc.is_active
                AND con.license_status = 'ACTIVE'
            ),
            updated_at = now()
        """
    ).rowcount


def snapshot_market_analytics(
    conn: psycopg.Connection,
    batch_id: str | None = None,
) -> MarketSnapshot:
    row = conn.execute(
        """
        INSERT INTO california_contractors.market_analytics
          (snapshot_date, import_batch_id, total_contractors, active_contractors,
           valid_address_contractors, valid_phone_contractors)
        SELECT
          CURRENT_DATE,
          %s,
          COUNT(*),
          COUNT(*) FILTER (WHERE license_status = 'ACTIVE'),
          COUNT(*) FILTER (WHERE has_valid_address),
          COUNT(*) FILTER (WHERE has_valid_phone)
        FROM california_contractors.contractors
        RETURNING total_contractors, active_contractors,
                  valid_address_contractors, valid_phone_contractors
        """,
        (batch_id,),
    ).fetchone()
    return MarketSnapshot(*row)


def update_statistics(
    conn: psycopg.Connection,
    batch_id: str | None = None,
) -> MarketSnapshot:
    refresh_classification_counts(conn)
    return snapshot_market_analytics(conn, batch_id)
