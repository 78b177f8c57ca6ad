"""cslb_etl.geocode

Fill contractors.latitude / longitude for active licenses with a usable
address.  The provider is pluggable; the shipped NullGeocoder never calls
out and reports every lookup as disabled.

Calls are made strictly one at a time with a fixed pause between them to stay
under third-party rate limits.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

import psycopg

from cslb_etl.shared import ErrorKind, StepResult

log = logging.getLogger(__name__)

DEFAULT_DELAY_SECONDS = 0.1


class Geocoder(Protocol):
    def geocode(self, address: str) -> StepResult:
        """Return StepResult.success((lat, lng)) or a failure."""
        ...


class NullGeocoder:
    """Geocoder used when no provider is configured."""

    def geocode(self, address: str) -> StepResult:
        return StepResult.failure(
            ErrorKind.GEOCODER_DISABLED, "no geocoding provider configured"
        )


@dataclass
class GeocodeSummary:
    attempted: int = 0
    updated: int = 0
    failed: int = 0


def format_address(address_line1: str, city: str, state: str, zip_code: str) -> str:
    return f"{address_line1}, {city}, {state} {zip_code}"


def geocode_contractors(
    conn: psycopg.Connection,
    geocoder: Geocoder,
    limit: int,
    delay_seconds: float = DEFAULT_DELAY_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> GeocodeSummary:
    """Geocode up to `limit` active contractors lacking coordinates.

    A failed lookup is logged and counted; it never stops the loop.
    Caller manages the transaction.
    """
    summary = GeocodeSummary()
    if limit <= 0:
        return summary

    candidates = conn.execute(
        """
        SELECT id, address_line1, city, state, zip_code
        FROM california_contractors.contractors
        WHERE latitude IS NULL
          AND has_valid_address
          AND license_status = 'ACTIVE'
        ORDER BY license_number
        LIMIT %s
        """,
        (limit,),
    ).fetchall()

    for idx, (contractor_id, address1, city, state, zip_code) in enumerate(candidates):
        if idx > 0 and delay_seconds > 0:
            sleep(delay_seconds)
        summary.attempted += 1
        result = geocoder.geocode(format_address(address1, city, state, zip_code))
        if not result.ok:
            summary.failed += 1
            log.warning(
                "geocode skipped for contractor %s (%s): %s",
                contractor_id, result.error_kind.value if result.error_kind else "error",
                result.message,
            )
            continue
        lat, lng = result.value
        conn.execute(
            """
            UPDATE california_contractors.contractors
            SET latitude = %s, longitude = %s
            WHERE id = %s
            """,
            (lat, lng, contractor_id),
        )
        summary.updated += 1

    return summary
