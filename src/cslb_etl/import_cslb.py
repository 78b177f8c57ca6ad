"""cslb_etl.import_cslb

CSLB public-data ingestion pipeline and CLI entrypoint.

Consumes three CSLB export CSV files, in this order:
  - license master   → contractors (+ contractor_classifications)
  - personnel        → personnel
  - workers' comp    → workers_comp (+ contractors.workers_comp_status)

Each file is loaded inside its own transaction with one savepoint per row:
a bad row is rolled back to its savepoint, counted and written to the rejects
CSV, and the file keeps going.  Connection-level failures abort the file and
roll the whole file back.  Every run is recorded in import_batches.

Usage:
    cslb-import \\
        --db-dsn "$DATABASE_URL" \\
        data/cslb/LicenseMaster.csv \\
        data/cslb/Personnel.csv \\
        data/cslb/WorkersComp.csv
"""

from __future__ import annotations

import logging
import sys
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path

import click
import psycopg

from cslb_etl import ledger
from cslb_etl.classifications import (
    ClassificationMode,
    expand_classifications,
    resync_classifications,
)
from cslb_etl.geocode import DEFAULT_DELAY_SECONDS, Geocoder, NullGeocoder, geocode_contractors
from cslb_etl.import_related import process_personnel_row, process_workers_comp_row
from cslb_etl.normalize import trim
from cslb_etl.shared import (
    ImportStats,
    LedgerStateError,
    RejectWriter,
    StepResult,
    is_connection_error,
    open_connection,
    read_csv_header,
    read_csv_rows,
    write_run_report,
)
from cslb_etl.statistics import update_statistics
from cslb_etl.transform import MUTABLE_COLUMNS, ContractorRecord, transform_license_row

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

REQUIRED_HEADERS: dict[str, set[str]] = {
    "license_master": {"LICENSE_NUMBER", "BUSINESS_NAME", "LICENSE_STATUS"},
    "personnel":      {"LICENSE_NUMBER", "PERSON_NAME"},
    "workers_comp":   {"LICENSE_NUMBER"},
}

PROGRESS_EVERY = 1000

_INSERT_CONTRACTOR_SQL = (
    "INSERT INTO california_contractors.contractors (license_number, "
    + ", ".join(MUTABLE_COLUMNS)
    + ") VALUES (%s, "
    + ", ".join(["%s"] * len(MUTABLE_COLUMNS))
    + ") RETURNING id"
)

_UPDATE_CONTRACTOR_SQL = (
    "UPDATE california_contractors.contractors SET "
    + ", ".join(f"{col} = %s" for col in MUTABLE_COLUMNS)
    + ", updated_at = now() WHERE id = %s"
)


# ---------------------------------------------------------------------------
# Contractor upsert
# ---------------------------------------------------------------------------

def _find_contractor_id(conn: psycopg.Connection, license_number: str) -> str | None:
    row = conn.execute(
        "SELECT id FROM california_contractors.contractors WHERE license_number = %s",
        (license_number,),
    ).fetchone()
    return str(row[0]) if row else None


def _insert_contractor(conn: psycopg.Connection, record: ContractorRecord) -> str:
    row = conn.execute(
        _INSERT_CONTRACTOR_SQL,
        (record.license_number, *record.mutable_values()),
    ).fetchone()
    return str(row[0])


def _update_contractor(
    conn: psycopg.Connection,
    contractor_id: str,
    record: ContractorRecord,
) -> None:
    conn.execute(_UPDATE_CONTRACTOR_SQL, (*record.mutable_values(), contractor_id))


def _tally_classifications(
    results: list[StepResult],
    license_number: str,
    stats: ImportStats,
) -> None:
    for res in results:
        if res.ok:
            if res.value:
                stats.classifications_inserted += 1
            continue
        stats.classification_errors += 1
        stats.warnings.append(f"License {license_number}: {res.message}")


# ---------------------------------------------------------------------------
# Per-row processing
# ---------------------------------------------------------------------------

def _process_license_row(
    conn: psycopg.Connection,
    row: dict[str, str],
    batch_id: str,
    synced_at: datetime,
    classification_mode: ClassificationMode,
    stats: ImportStats,
) -> None:
    """Transform and upsert one license-master row.  Caller manages savepoint.

    Existence is decided by license number; the row is updated in place when
    present, inserted otherwise.  Classifications are expanded for inserts,
    and for updates only in always-resync mode.
    """
    record = transform_license_row(row, batch_id, synced_at)

    contractor_id = _find_contractor_id(conn, record.license_number)
    if contractor_id is not None:
        _update_contractor(conn, contractor_id, record)
        # an absent or blank list leaves existing associations untouched
        if (
            classification_mode is ClassificationMode.ALWAYS_RESYNC
            and record.classifications is not None
        ):
            results, deactivated = resync_classifications(
                conn, contractor_id, record.classifications,
            )
            stats.classifications_deactivated += deactivated
            _tally_classifications(results, record.license_number, stats)
        stats.updated_records += 1
        return

    contractor_id = _insert_contractor(conn, record)
    stats.new_records += 1
    if record.classifications:
        results = expand_classifications(conn, contractor_id, record.classifications)
        _tally_classifications(results, record.license_number, stats)


# ---------------------------------------------------------------------------
# Header-only pre-scan (no row loading)
# ---------------------------------------------------------------------------

def _validate_file_headers(files: dict[str, Path], run_id: str) -> None:
    """Open each file just far enough to read the header row and validate it."""
    for kind, csv_path in files.items():
        missing = REQUIRED_HEADERS[kind] - read_csv_header(csv_path)
        if missing:
            click.echo(
                f"[{run_id}] FATAL: {csv_path.name} missing required headers: "
                f"{sorted(missing)}",
                err=True,
            )
            sys.exit(1)


# ---------------------------------------------------------------------------
# Streaming DB processing for one file
# ---------------------------------------------------------------------------

def _stream_rows(
    conn: psycopg.Connection,
    csv_path: Path,
    kind: str,
    run_id: str,
    rejects: RejectWriter,
    process: Callable[[dict[str, str]], None],
    on_row_error: Callable[[dict[str, str], Exception], None],
) -> int:
    """Stream rows through `process`, one savepoint per row.

    Row-level exceptions roll back to the row's savepoint and are handed to
    `on_row_error`; connection-level exceptions propagate.  Returns the
    number of data rows read.
    """
    rows_read = 0
    for idx, row in enumerate(read_csv_rows(csv_path)):
        rows_read += 1
        sp_name = f"{kind}_{idx}"
        conn.execute(f"SAVEPOINT {sp_name}")
        try:
            process(row)
            conn.execute(f"RELEASE SAVEPOINT {sp_name}")
        except Exception as exc:
            if is_connection_error(exc):
                raise
            conn.execute(f"ROLLBACK TO SAVEPOINT {sp_name}")
            conn.execute(f"RELEASE SAVEPOINT {sp_name}")
            rejects.write({**row, "_source_file": csv_path.name}, f"{type(exc).__name__}: {exc}")
            on_row_error(row, exc)
        if rows_read % PROGRESS_EVERY == 0:
            click.echo(f"[{run_id}] {kind}: {rows_read} rows processed")
    return rows_read


def _stream_license_master(
    conn: psycopg.Connection,
    csv_path: Path,
    batch_id: str,
    run_id: str,
    classification_mode: ClassificationMode,
    stats: ImportStats,
    rejects: RejectWriter,
) -> None:
    synced_at = datetime.now(timezone.utc)

    def process(row: dict[str, str]) -> None:
        stats.total_records += 1
        _process_license_row(conn, row, batch_id, synced_at, classification_mode, stats)

    def on_row_error(row: dict[str, str], exc: Exception) -> None:
        license_number = trim(row.get("LICENSE_NUMBER")) or "<blank>"
        stats.record_error(f"License {license_number}: {exc}")

    _stream_rows(conn, csv_path, "license_master", run_id, rejects, process, on_row_error)


def _stream_related_file(
    conn: psycopg.Connection,
    csv_path: Path,
    kind: str,
    run_id: str,
    stats: ImportStats,
    rejects: RejectWriter,
) -> None:
    if kind == "personnel":
        process_row = process_personnel_row
        error_attr = "personnel_errors"
    else:
        process_row = process_workers_comp_row
        error_attr = "workers_comp_errors"

    def process(row: dict[str, str]) -> None:
        process_row(conn, row, stats)

    def on_row_error(row: dict[str, str], exc: Exception) -> None:
        setattr(stats, error_attr, getattr(stats, error_attr) + 1)
        license_number = trim(row.get("LICENSE_NUMBER")) or "<blank>"
        stats.warnings.append(f"[{run_id}] {kind} license {license_number}: {exc}")

    _stream_rows(conn, csv_path, kind, run_id, rejects, process, on_row_error)


def _finish_file_transaction(conn: psycopg.Connection, dry_run: bool) -> None:
    # Dry runs keep one open transaction across files so later files still
    # resolve contractors loaded earlier; run_import rolls it back at the end.
    if not dry_run:
        conn.commit()


def _abort_file_transaction(conn: psycopg.Connection) -> None:
    # A dropped connection has already lost its transaction server-side.
    if not conn.closed and not conn.broken:
        conn.rollback()


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

def run_import(
    conn: psycopg.Connection,
    ledger_conn: psycopg.Connection | None,
    files: dict[str, Path],
    batch_id: str,
    run_id: str,
    stats: ImportStats,
    rejects: RejectWriter,
    import_type: str = "FULL",
    classification_mode: ClassificationMode = ClassificationMode.INSERT_ONLY,
    dry_run: bool = False,
    geocoder: Geocoder | None = None,
    geocode_limit: int = 0,
    geocode_delay_seconds: float = DEFAULT_DELAY_SECONDS,
) -> str:
    """Run one batch end to end and return its terminal ledger status.

    `conn` carries the data transactions (autocommit off); `ledger_conn`
    carries the ledger writes and must be a separate connection so a rolled
    back file does not roll back the ledger.  In dry-run mode every file is
    rolled back and no ledger row is written (`ledger_conn` may be None).

    Any propagated failure marks the ledger FAILED and is re-raised.
    """
    record_ledger = not dry_run and ledger_conn is not None
    if record_ledger:
        ledger.start_batch(
            ledger_conn, batch_id, import_type,
            {
                "license_master_file": files["license_master"].name,
                "personnel_file": files["personnel"].name,
                "workers_comp_file": files["workers_comp"].name,
            },
        )
        click.echo(f"[{run_id}] Batch {batch_id} started ({import_type})")

    try:
        click.echo(f"[{run_id}] Importing license master: {files['license_master'].name}")
        try:
            _stream_license_master(
                conn, files["license_master"], batch_id, run_id,
                classification_mode, stats, rejects,
            )
            _finish_file_transaction(conn, dry_run)
        except Exception:
            _abort_file_transaction(conn)
            raise

        for kind in ("personnel", "workers_comp"):
            click.echo(f"[{run_id}] Importing {kind}: {files[kind].name}")
            try:
                _stream_related_file(conn, files[kind], kind, run_id, stats, rejects)
                _finish_file_transaction(conn, dry_run)
            except Exception:
                _abort_file_transaction(conn)
                raise

        try:
            snapshot = update_statistics(conn, batch_id)
            if geocode_limit > 0:
                summary = geocode_contractors(
                    conn, geocoder or NullGeocoder(), geocode_limit, geocode_delay_seconds,
                )
                stats.geocode_attempted += summary.attempted
                stats.geocode_updated += summary.updated
                stats.geocode_failed += summary.failed
            _finish_file_transaction(conn, dry_run)
            if dry_run:
                conn.rollback()
        except Exception:
            _abort_file_transaction(conn)
            raise
        click.echo(
            f"[{run_id}] Statistics: {snapshot.total_contractors} contractors, "
            f"{snapshot.active_contractors} active"
        )
    except Exception as exc:
        if record_ledger:
            try:
                ledger.fail_batch(ledger_conn, batch_id, f"{type(exc).__name__}: {exc}", stats)
            except (psycopg.Error, LedgerStateError) as ledger_exc:
                click.echo(
                    f"[{run_id}] could not mark batch {batch_id} FAILED: {ledger_exc}",
                    err=True,
                )
        raise

    if record_ledger:
        ledger.complete_batch(ledger_conn, batch_id, stats)
    return ledger.STATUS_COMPLETED


def _run_cslb_import(
    run_id: str,
    started_at: str,
    db_dsn: str,
    batch_id: str,
    stats: ImportStats,
    rejects: RejectWriter,
    license_master_path: str,
    personnel_path: str,
    workers_comp_path: str,
    import_type: str,
    classification_mode: ClassificationMode,
    sweep_stale_minutes: int | None,
    geocode_limit: int,
    geocode_delay_seconds: float,
    dry_run: bool,
    write_report: bool,
) -> None:
    files = {
        "license_master": Path(license_master_path),
        "personnel": Path(personnel_path),
        "workers_comp": Path(workers_comp_path),
    }
    _validate_file_headers(files, run_id)
    click.echo(f"[{run_id}] Header validation passed for all 3 files, starting DB phase")

    status = ledger.STATUS_FAILED
    try:
        with open_connection(db_dsn, autocommit=True) as ledger_conn, \
                open_connection(db_dsn, autocommit=False) as conn:
            if sweep_stale_minutes is not None and not dry_run:
                swept = ledger.sweep_stale_batches(
                    ledger_conn, timedelta(minutes=sweep_stale_minutes),
                )
                if swept:
                    click.echo(f"[{run_id}] Marked {len(swept)} stale batch(es) FAILED: {', '.join(swept)}")
            status = run_import(
                conn, ledger_conn, files, batch_id, run_id, stats, rejects,
                import_type=import_type,
                classification_mode=classification_mode,
                dry_run=dry_run,
                geocode_limit=geocode_limit,
                geocode_delay_seconds=geocode_delay_seconds,
            )
    except Exception as exc:
        click.echo(f"[{run_id}] FATAL: import failed: {type(exc).__name__}: {exc}", err=True)
        sys.exit(1)
    finally:
        rejects.close()
        if write_report:
            report_path = write_run_report(
                run_id, batch_id, started_at, status, dry_run,
                {k: str(v) for k, v in files.items()}, stats,
            )
            click.echo(f"[{run_id}] Report written to {report_path}")

    if dry_run:
        click.echo(f"[{run_id}] [dry-run] All changes rolled back.")
    click.echo(
        f"[{run_id}] Done: {stats.total_records} license rows read, "
        f"{stats.new_records} new, {stats.updated_records} updated, "
        f"{stats.error_records} errors; "
        f"{stats.classifications_inserted} classifications added, "
        f"{stats.personnel_inserted} personnel added, "
        f"{stats.workers_comp_upserted} workers' comp policies upserted"
    )
    for message in stats.errors[:20]:
        click.echo(f"[{run_id}]   {message}", err=True)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

@click.command()
@click.argument("license_master", type=click.Path(exists=True, dir_okay=False))
@click.argument("personnel", type=click.Path(exists=True, dir_okay=False))
@click.argument("workers_comp", type=click.Path(exists=True, dir_okay=False))
@click.option("--db-dsn", required=True, envvar="DATABASE_URL", help="PostgreSQL DSN (or $DATABASE_URL)")
@click.option(
    "--import-type",
    default="FULL",
    type=click.Choice(list(ledger.IMPORT_TYPES)),
    show_default=True,
    help="Import type recorded on the batch ledger row",
)
@click.option(
    "--classification-mode",
    default=ClassificationMode.INSERT_ONLY.value,
    type=click.Choice([m.value for m in ClassificationMode]),
    show_default=True,
    help="insert-only: classifications only for new contractors; "
         "always-resync: also bring existing contractors' classifications up to date",
)
@click.option(
    "--sweep-stale-minutes",
    default=None,
    type=click.IntRange(min=1),
    help="Before importing, mark PROCESSING batches older than this many minutes FAILED",
)
@click.option("--geocode-limit", default=0, type=click.IntRange(min=0), show_default=True,
              help="Geocode up to N active contractors lacking coordinates (0 disables)")
@click.option("--geocode-delay-seconds", default=DEFAULT_DELAY_SECONDS, type=float, show_default=True,
              help="Pause between geocoding calls")
@click.option("--batch-id", default=None, help="Override the timestamp-derived batch id")
@click.option("--dry-run", is_flag=True, default=False)
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/cslb_rejects.csv",
    show_default=True,
)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--report/--no-report", default=True, show_default=True, help="Write a JSON run report")
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    show_default=True,
)
def main(
    license_master: str,
    personnel: str,
    workers_comp: str,
    db_dsn: str,
    import_type: str,
    classification_mode: str,
    sweep_stale_minutes: int | None,
    geocode_limit: int,
    geocode_delay_seconds: float,
    batch_id: str | None,
    dry_run: bool,
    rejects_path: str,
    run_id: str | None,
    report: bool,
    log_level: str,
) -> None:
    """Import CSLB license master, personnel and workers' comp CSV files."""
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    batch_id = batch_id or ledger.generate_batch_id()
    started_at = datetime.now(timezone.utc).isoformat()
    stats = ImportStats()
    rejects = RejectWriter(Path(rejects_path))

    click.echo(f"[{run_id}] Starting CSLB import (batch={batch_id}, dry_run={dry_run})")

    _run_cslb_import(
        run_id=run_id,
        started_at=started_at,
        db_dsn=db_dsn,
        batch_id=batch_id,
        stats=stats,
        rejects=rejects,
        license_master_path=license_master,
        personnel_path=personnel,
        workers_comp_path=workers_comp,
        import_type=import_type,
        classification_mode=ClassificationMode(classification_mode),
        sweep_stale_minutes=sweep_stale_minutes,
        geocode_limit=geocode_limit,
        geocode_delay_seconds=geocode_delay_seconds,
        dry_run=dry_run,
        write_report=report,
    )


if __name__ == "__main__":
    main()
