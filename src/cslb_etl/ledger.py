"""cslb_etl.ledger

Batch ledger: one california_contractors.import_batches row per import run.

Lifecycle:
  PROCESSING : written by start_batch before any data is touched
  COMPLETED  : complete_batch, after every file transaction committed
  FAILED     : fail_batch, after a propagated failure; or sweep_stale_batches
                for runs whose process died between start and finish

Transitions are only ever made out of PROCESSING; a terminal row is never
rewritten.  The ledger is meant to be written on its own autocommit
connection so a rolled-back data transaction does not take it along.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING

import psycopg

from cslb_etl.shared import LedgerStateError

if TYPE_CHECKING:
    from cslb_etl.shared import ImportStats

STATUS_PROCESSING = "PROCESSING"
STATUS_COMPLETED = "COMPLETED"
STATUS_FAILED = "FAILED"

IMPORT_TYPES = ("FULL", "INCREMENTAL", "MANUAL")

_BATCH_ID_FORMAT = "BATCH_%Y%m%d_%H%M%S"
STALE_SWEEP_MESSAGE = "stale PROCESSING batch swept: no finish recorded (process exited mid-run)"


@dataclass
class BatchRecord:
    id: str
    batch_date: date
    import_type: str
    status: str
    started_at: datetime | None
    completed_at: datetime | None
    total_records: int
    new_records: int
    updated_records: int
    error_records: int
    error_log: str | None


def generate_batch_id(now: datetime | None = None) -> str:
    return (now or datetime.now()).strftime(_BATCH_ID_FORMAT)


def start_batch(
    conn: psycopg.Connection,
    batch_id: str,
    import_type: str = "FULL",
    source_files: dict[str, str] | None = None,
) -> None:
    """Insert the ledger row directly in PROCESSING with started_at = now()."""
    files = source_files or {}
    conn.execute(
        """
        INSERT INTO california_contractors.import_batches
          (id, batch_date, import_type, status, started_at,
           license_master_file, personnel_file, workers_comp_file)
        VALUES (%s, CURRENT_DATE, %s, %s, now(), %s, %s, %s)
        """,
        (
            batch_id, import_type, STATUS_PROCESSING,
            files.get("license_master_file"),
            files.get("personnel_file"),
            files.get("workers_comp_file"),
        ),
    )
    _commit_unless_autocommit(conn)


def complete_batch(
    conn: psycopg.Connection,
    batch_id: str,
    stats: ImportStats,
) -> None:
    cur = conn.execute(
        """
        UPDATE california_contractors.import_batches
        SET status = %s,
            completed_at = now(),
            total_records = %s,
            new_records = %s,
            updated_records = %s,
            error_records = %s,
            error_log = %s
        WHERE id = %s AND status = %s
        """,
        (
            STATUS_COMPLETED,
            stats.total_records,
            stats.new_records,
            stats.updated_records,
            stats.error_records,
            "\n".join(stats.errors) or None,
            batch_id,
            STATUS_PROCESSING,
        ),
    )
    _require_transition(conn, cur.rowcount, batch_id, STATUS_COMPLETED)


def fail_batch(
    conn: psycopg.Connection,
    batch_id: str,
    message: str,
    stats: ImportStats | None = None,
) -> None:
    """Mark the batch FAILED with the exception message as error_log."""
    cur = conn.execute(
        """
        UPDATE california_contractors.import_batches
        SET status = %s,
            completed_at = now(),
            error_log = %s,
            total_records = COALESCE(%s, total_records),
            error_records = COALESCE(%s, error_records)
        WHERE id = %s AND status = %s
        """,
        (
            STATUS_FAILED,
            message,
            stats.total_records if stats else None,
            stats.error_records if stats else None,
            batch_id,
            STATUS_PROCESSING,
        ),
    )
    _require_transition(conn, cur.rowcount, batch_id, STATUS_FAILED)


def get_batch(conn: psycopg.Connection, batch_id: str) -> BatchRecord | None:
    row = conn.execute(
        """
        SELECT id, batch_date, import_type, status, started_at, completed_at,
               total_records, new_records, updated_records, error_records,
               error_log
        FROM california_contractors.import_batches
        WHERE id = %s
        """,
        (batch_id,),
    ).fetchone()
    return BatchRecord(*row) if row else None


def sweep_stale_batches(
    conn: psycopg.Connection,
    older_than: timedelta,
) -> list[str]:
    """Mark PROCESSING batches started before now() - older_than as FAILED.

    Returns the swept batch ids, oldest first.
    """
    rows = conn.execute(
        """
        UPDATE california_contractors.import_batches
        SET status = %s,
            completed_at = now(),
            error_log = %s
        WHERE status = %s
          AND started_at < now() - %s
        RETURNING id, started_at
        """,
        (STATUS_FAILED, STALE_SWEEP_MESSAGE, STATUS_PROCESSING, older_than),
    ).fetchall()
    _commit_unless_autocommit(conn)
    return [r[0] for r in sorted(rows, key=lambda r: r[1])]


# ---------------------------------------------------------------------------
# Internals
# ---------------------------------------------------------------------------

def _require_transition(
    conn: psycopg.Connection,
    rowcount: int,
    batch_id: str,
    target: str,
) -> None:
    if rowcount == 1:
        _commit_unless_autocommit(conn)
        return
    if not conn.autocommit:
        conn.rollback()
    current = get_batch(conn, batch_id)
    state = current.status if current else "missing"
    raise LedgerStateError(
        f"batch {batch_id}: cannot transition {state} -> {target}"
    )


def _commit_unless_autocommit(conn: psycopg.Connection) -> None:
    if not conn.autocommit:
        conn.commit()
