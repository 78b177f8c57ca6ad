"""cslb_etl.classifications

Expand a contractor's comma-delimited CSLB classification list into
contractor_classifications rows.

Two modes:
  insert-only   : only contractors inserted in this run get associations;
                   re-imported contractors keep whatever they already have.
  always-resync : every imported contractor's associations are brought in
                   line with the current list; codes no longer listed are
                   deactivated, never deleted.

Each token is written under its own savepoint so an unknown code (FK
violation against the classifications vocabulary) fails only that token.
"""

from __future__ import annotations

import enum
import logging

import psycopg

from cslb_etl.normalize import trim
from cslb_etl.shared import ErrorKind, StepResult

log = logging.getLogger(__name__)


class ClassificationMode(str, enum.Enum):
    INSERT_ONLY = "insert-only"
    ALWAYS_RESYNC = "always-resync"


def split_classification_codes(raw: str | None) -> list[str]:
    """Split 'B, C-10,,c-10 ' → ['B', 'C-10'] (trimmed, upper-cased, deduped)."""
    v = trim(raw)
    if v is None:
        return []
    codes: list[str] = []
    for token in v.split(","):
        code = token.strip().upper()
        if code and code not in codes:
            codes.append(code)
    return codes


def _token_failure(code: str, exc: Exception) -> StepResult:
    kind = (
        ErrorKind.CONSTRAINT_VIOLATION
        if isinstance(exc, psycopg.IntegrityError)
        else ErrorKind.DATABASE_ERROR
    )
    return StepResult.failure(kind, f"classification {code}: {type(exc).__name__}: {exc}", value=code)


def _write_code(
    conn: psycopg.Connection,
    contractor_id: str,
    code: str,
    is_primary: bool,
    sql: str,
) -> StepResult:
    sp_name = "cls_token"
    conn.execute(f"SAVEPOINT {sp_name}")
    try:
        result = conn.execute(sql, (contractor_id, code, is_primary)).fetchone()
        conn.execute(f"RELEASE SAVEPOINT {sp_name}")
    except (psycopg.OperationalError, psycopg.InterfaceError):
        raise
    except psycopg.Error as exc:
        conn.execute(f"ROLLBACK TO SAVEPOINT {sp_name}")
        conn.execute(f"RELEASE SAVEPOINT {sp_name}")
        failure = _token_failure(code, exc)
        log.warning("contractor %s: %s", contractor_id, failure.message)
        return failure
    # value is True when a new association row was written
    return StepResult.success(value=bool(result[0]) if result else False)


_INSERT_SQL = """
    INSERT INTO california_contractors.contractor_classifications
      (contractor_id, classification_code, is_primary, is_active, date_added)
    VALUES (%s, %s, %s, true, CURRENT_DATE)
    ON CONFLICT (contractor_id, classification_code) DO NOTHING
    RETURNING id
"""

_RESYNC_SQL = """
    INSERT INTO california_contractors.contractor_classifications
      (contractor_id, classification_code, is_primary, is_active, date_added)
    VALUES (%s, %s, %s, true, CURRENT_DATE)
    ON CONFLICT (contractor_id, classification_code) DO UPDATE SET
      is_primary = EXCLUDED.is_primary,
      is_active = true,
      date_removed = NULL
    RETURNING (xmax = 0)
"""


def expand_classifications(
    conn: psycopg.Connection,
    contractor_id: str,
    raw: str | None,
) -> list[StepResult]:
    """Insert one association per code; existing pairs are left untouched.

    Returns one StepResult per code, in list order.  Caller manages the
    enclosing transaction.
    """
    codes = split_classification_codes(raw)
    return [
        _write_code(conn, contractor_id, code, idx == 0, _INSERT_SQL)
        for idx, code in enumerate(codes)
    ]


def resync_classifications(
    conn: psycopg.Connection,
    contractor_id: str,
    raw: str | None,
) -> tuple[list[StepResult], int]:
    """Upsert the listed codes and deactivate the ones no longer listed.

    Returns (per-code results, number of associations deactivated).  An
    empty list is treated as missing data: nothing is written or deactivated.
    """
    codes = split_classification_codes(raw)
    if not codes:
        return [], 0
    # RETURNING (xmax = 0) is true only when the upsert inserted a fresh row
    results = [
        _write_code(conn, contractor_id, code, idx == 0, _RESYNC_SQL)
        for idx, code in enumerate(codes)
    ]
    deactivated = conn.execute(
        """
        UPDATE california_contractors.contractor_classifications
        SET is_active = false,
            is_primary = false,
            date_removed = CURRENT_DATE
        WHERE contractor_id = %s
          AND is_active
          AND NOT (classification_code = ANY(%s::text[]))
        """,
        (contractor_id, codes),
    ).rowcount
    return results, deactivated
