"""cslb_etl.shared

Shared utilities used by the license-master, personnel and workers'-comp
loaders.  Includes RejectWriter, ImportStats, the StepResult type returned by
tolerated sub-steps, CSV streaming, connection scoping and report-writing
support.
"""

from __future__ import annotations

import csv
import enum
import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import psycopg


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class RowValidationError(Exception):
    """Raised when a source row lacks a field the contractor record requires."""


class LedgerStateError(Exception):
    """Raised when a ledger transition is attempted from a non-PROCESSING state."""


# ---------------------------------------------------------------------------
# StepResult
# ---------------------------------------------------------------------------

class ErrorKind(str, enum.Enum):
    CONSTRAINT_VIOLATION = "constraint_violation"
    DATABASE_ERROR = "database_error"
    GEOCODER_DISABLED = "geocoder_disabled"
    GEOCODER_NO_MATCH = "geocoder_no_match"


@dataclass(frozen=True)
class StepResult:
    """Outcome of a sub-step whose failure the caller is expected to tolerate.

    Classification inserts and geocoding calls return these instead of
    raising, so the caller's continue-on-error policy is explicit.
    """

    ok: bool
    value: Any = None
    error_kind: ErrorKind | None = None
    message: str | None = None

    @classmethod
    def success(cls, value: Any = None) -> StepResult:
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error_kind: ErrorKind, message: str, value: Any = None) -> StepResult:
        return cls(ok=False, value=value, error_kind=error_kind, message=message)


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected rows."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self.count = 0

    def write(self, row: dict[str, str], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = list(row.keys()) + ["_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = dict(row)
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()
        self.count += 1

    def close(self) -> None:
        if self._fh:
            self._fh.close()
            self._fh = None


# ---------------------------------------------------------------------------
# ImportStats
# ---------------------------------------------------------------------------

@dataclass
class ImportStats:
    # License master (these four feed the batch ledger)
    total_records: int = 0
    new_records: int = 0
    updated_records: int = 0
    error_records: int = 0
    errors: list[str] = field(default_factory=list)
    # Classification expansion
    classifications_inserted: int = 0
    classifications_deactivated: int = 0
    classification_errors: int = 0
    # Personnel
    personnel_read: int = 0
    personnel_inserted: int = 0
    personnel_unmatched: int = 0
    personnel_errors: int = 0
    # Workers' comp
    workers_comp_read: int = 0
    workers_comp_upserted: int = 0
    workers_comp_unmatched: int = 0
    workers_comp_errors: int = 0
    # Geocoding
    geocode_attempted: int = 0
    geocode_updated: int = 0
    geocode_failed: int = 0
    warnings: list[str] = field(default_factory=list)

    def record_error(self, message: str) -> None:
        self.error_records += 1
        self.errors.append(message)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k not in ("errors", "warnings")}
        d["errors"] = self.errors[:100]
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# CSV streaming
# ---------------------------------------------------------------------------

def normalize_headers(raw: dict[str | None, Any]) -> dict[str, str]:
    """Return a new dict with header keys stripped and missing values as ''.

    DictReader yields None for short rows and collects overflow cells under a
    None key; both are folded away so downstream code sees plain strings.
    """
    return {
        k.strip(): (v if isinstance(v, str) else "")
        for k, v in raw.items()
        if k is not None
    }


def read_csv_header(csv_path: Path) -> set[str]:
    """Read only the header line and return the stripped column names."""
    with csv_path.open(encoding="utf-8-sig", errors="replace", newline="") as fh:
        reader = csv.DictReader(fh)
        return {k.strip() for k in (reader.fieldnames or [])}


def read_csv_rows(csv_path: Path) -> Iterator[dict[str, str]]:
    """Stream rows from a CSV file one at a time, skipping blank lines.

    Bytes that are not valid UTF-8 (Latin-1 names in older exports) decode
    to U+FFFD instead of aborting the file.
    """
    with csv_path.open(encoding="utf-8-sig", errors="replace", newline="") as fh:
        reader = csv.DictReader(fh)
        for raw_row in reader:
            row = normalize_headers(raw_row)
            if not any(v.strip() for v in row.values()):
                continue
            yield row


# ---------------------------------------------------------------------------
# Connection scoping
# ---------------------------------------------------------------------------

@contextmanager
def open_connection(dsn: str, autocommit: bool = False) -> Iterator[psycopg.Connection]:
    """Open a psycopg connection and close it on every exit path.

    Unlike ``with psycopg.connect(...)`` this never commits on exit; the
    caller owns the transaction outcome.
    """
    conn = psycopg.connect(dsn, autocommit=autocommit)
    try:
        yield conn
    finally:
        conn.close()


def is_connection_error(exc: BaseException) -> bool:
    """True for errors that invalidate the whole transaction scope."""
    return isinstance(exc, (psycopg.OperationalError, psycopg.InterfaceError))


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    batch_id: str,
    started_at: str,
    status: str,
    dry_run: bool,
    source_paths: dict[str, str],
    stats: ImportStats,
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "batch_id": batch_id,
        "status": status,
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "dry_run": dry_run,
        **source_paths,
        "stats": stats.to_dict(),
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
