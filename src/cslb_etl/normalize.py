"""Normalization functions for CSLB license-file ingestion.

All functions accept str | None and return the appropriate type or None.
None of them raise: malformed input degrades to None or is passed through.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

_DATE_FORMATS = (
    "%Y-%m-%d",
    "%m/%d/%Y",
    "%m/%d/%y",
    "%m-%d-%Y",
    "%Y/%m/%d",
    "%b %d, %Y",
    "%B %d, %Y",
)

_BUSINESS_NAME_STRIP_RE = re.compile(r"[^A-Za-z0-9 \-&.,']")
_NON_DIGIT_RE = re.compile(r"\D")
_NON_DECIMAL_RE = re.compile(r"[^0-9.\-]")

# Major cities whose county can be inferred when the source omits it.
CITY_TO_COUNTY: dict[str, str] = {
    "SAN FRANCISCO": "SAN FRANCISCO",
    "OAKLAND": "ALAMEDA",
    "BERKELEY": "ALAMEDA",
    "FREMONT": "ALAMEDA",
    "HAYWARD": "ALAMEDA",
    "RICHMOND": "CONTRA COSTA",
    "CONCORD": "CONTRA COSTA",
    "SAN JOSE": "SANTA CLARA",
    "SANTA CLARA": "SANTA CLARA",
    "SUNNYVALE": "SANTA CLARA",
    "SAN MATEO": "SAN MATEO",
    "SACRAMENTO": "SACRAMENTO",
    "STOCKTON": "SAN JOAQUIN",
    "FRESNO": "FRESNO",
    "BAKERSFIELD": "KERN",
    "SAN DIEGO": "SAN DIEGO",
    "LOS ANGELES": "LOS ANGELES",
    "LONG BEACH": "LOS ANGELES",
    "ANAHEIM": "ORANGE",
    "SANTA ANA": "ORANGE",
    "RIVERSIDE": "RIVERSIDE",
    "SAN BERNARDINO": "SAN BERNARDINO",
}


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: clean_business_name
# ---------------------------------------------------------------------------

def clean_business_name(value: str | None) -> str | None:
    """Collapse whitespace and drop characters outside [A-Za-z0-9 -&.,']."""
    v = normalize_space(value)
    if v is None:
        return None
    v = _BUSINESS_NAME_STRIP_RE.sub("", v)
    return trim(v)


# ---------------------------------------------------------------------------
# Rule 4: normalize_city
# ---------------------------------------------------------------------------

def normalize_city(value: str | None) -> str | None:
    """Title-case each whitespace-separated token ('SAN JOSE' → 'San Jose')."""
    v = normalize_space(value)
    if v is None:
        return None
    return " ".join(tok[:1].upper() + tok[1:].lower() for tok in v.split(" "))


# ---------------------------------------------------------------------------
# Rule 5: normalize_zip
# ---------------------------------------------------------------------------

def normalize_zip(value: str | None) -> str | None:
    """Digits only; more than 5 digits → ZIP+4 ('941031234' → '94103-1234').

    Five or fewer digits are returned as-is, no padding attempted.
    """
    if value is None:
        return None
    digits = _NON_DIGIT_RE.sub("", value)
    if not digits:
        return None
    if len(digits) > 5:
        return f"{digits[:5]}-{digits[5:9]}"
    return digits


# ---------------------------------------------------------------------------
# Rule 6: normalize_phone
# ---------------------------------------------------------------------------

def phone_digits(value: str | None) -> str:
    """Return only the digits of a phone value ('' for None)."""
    if value is None:
        return ""
    return _NON_DIGIT_RE.sub("", value)


def normalize_phone(value: str | None) -> str | None:
    """Format a 10-digit phone as '(DDD) DDD-DDDD'.

    Any other digit count returns the original input unchanged; CSLB
    occasionally carries 7-digit or extension-suffixed numbers and those
    are kept verbatim rather than rejected.
    """
    if trim(value) is None:
        return None
    digits = phone_digits(value)
    if len(digits) == 10:
        return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"
    return value


# ---------------------------------------------------------------------------
# Rule 7: parse_date
# ---------------------------------------------------------------------------

def parse_date(value: str | None) -> date | None:
    """Parse the date layouts seen in CSLB exports, returning None on failure."""
    v = normalize_space(value)
    if v is None:
        return None
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(v, fmt).date()
        except ValueError:
            continue
    # ISO timestamps ('2024-01-05T00:00:00', '2024-01-05 00:00:00')
    try:
        return datetime.fromisoformat(v).date()
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Rule 8: parse_decimal
# ---------------------------------------------------------------------------

def parse_decimal(value: str | None) -> Decimal | None:
    """Strip everything but digits, '.', '-' and parse ('$12,500.00' → 12500.00)."""
    if value is None:
        return None
    cleaned = _NON_DECIMAL_RE.sub("", value)
    if not cleaned:
        return None
    try:
        result = Decimal(cleaned)
    except InvalidOperation:
        return None
    if not result.is_finite():
        return None
    return result


# ---------------------------------------------------------------------------
# Rule 9: resolve_county
# ---------------------------------------------------------------------------

def resolve_county(county: str | None, city: str | None) -> str | None:
    """Explicit county wins (upper-cased); else infer from CITY_TO_COUNTY."""
    explicit = normalize_space(county)
    if explicit:
        return explicit.upper()
    city_norm = normalize_space(city)
    if city_norm is None:
        return None
    return CITY_TO_COUNTY.get(city_norm.upper())
