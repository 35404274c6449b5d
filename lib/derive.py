"""
Derived attributes: day counts, status buckets and unit conversions.

Every function here is pure. "now" is always passed in (or defaulted once
per call) so a collector can pin one collection instant for a whole run.
"""
import math
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Optional, Tuple

from .constants import (
    CREDENTIAL_CRITICAL,
    CREDENTIAL_EXPIRED,
    CREDENTIAL_HEALTHY,
    CREDENTIAL_UNKNOWN,
    CREDENTIAL_WARNING,
    DEFAULT_CREDENTIAL_CRITICAL_DAYS,
    DEFAULT_CREDENTIAL_WARNING_DAYS,
    DEFAULT_URGENCY_CRITICAL_DAYS,
    DEFAULT_URGENCY_HIGH_DAYS,
    DEFAULT_URGENCY_MEDIUM_DAYS,
    ISO_FORMAT,
    SECONDS_PER_DAY,
    SEVERITY_RANK,
    URGENCY_CRITICAL,
    URGENCY_EXPIRED,
    URGENCY_HIGH,
    URGENCY_MEDIUM,
    URGENCY_NORMAL,
    URGENCY_UNKNOWN,
    WINDOWS_BUILDS,
)
from .utils import utc_now

BYTES_PER_GB = 1024 ** 3

_FRACTION = re.compile(r'\.(\d+)')

# Formats seen in usage report CSV/JSON columns
_FALLBACK_FORMATS = (
    '%Y-%m-%d %H:%M:%S',
    '%m/%d/%Y %H:%M:%S',
    '%m/%d/%Y',
)


# =============================================================================
# Timestamps
# =============================================================================

def parse_datetime(value: Any) -> Optional[datetime]:
    """
    Parse an API timestamp into an aware UTC datetime.

    Accepts ISO-8601 strings (Z or offset, any number of fractional digits),
    date-only strings, and date/datetime objects. Graph's "never" sentinel
    (0001-01-01) and anything unparsable return None.
    """
    if value is None:
        return None

    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text[-1] in 'Zz':
            text = text[:-1] + '+00:00'
        # fromisoformat wants exactly six fractional digits on older interpreters
        text = _FRACTION.sub(lambda m: '.' + m.group(1)[:6].ljust(6, '0'), text, count=1)
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            for fmt in _FALLBACK_FORMATS:
                try:
                    dt = datetime.strptime(value.strip(), fmt)
                    break
                except ValueError:
                    continue
            else:
                return None
    else:
        return None

    if dt.year <= 1:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_iso(dt: datetime) -> str:
    """Render a datetime in the fixed YYYY-MM-DDTHH:MM:SSZ format."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.strftime(ISO_FORMAT)


def iso_or_none(value: Any) -> Optional[str]:
    """Normalise a raw API timestamp to the fixed ISO format, or None."""
    dt = parse_datetime(value)
    return format_iso(dt) if dt else None


def days_since(value: Any, now: Optional[datetime] = None) -> Optional[int]:
    """
    Whole days elapsed since a timestamp, never negative.

    Returns None when the timestamp is absent or unparsable.
    """
    dt = parse_datetime(value)
    if dt is None:
        return None
    now = now or utc_now()
    elapsed = (now - dt).total_seconds()
    return max(math.floor(elapsed / SECONDS_PER_DAY), 0)


def days_until(value: Any, now: Optional[datetime] = None) -> Optional[int]:
    """
    Signed whole days until a timestamp.

    Any future instant gives a positive count (partial days round up), any
    past instant a negative one (partial days round down), and None when the
    timestamp is absent or unparsable.
    """
    dt = parse_datetime(value)
    if dt is None:
        return None
    now = now or utc_now()
    remaining = (dt - now).total_seconds() / SECONDS_PER_DAY
    if remaining > 0:
        return math.ceil(remaining)
    if remaining < 0:
        return math.floor(remaining)
    return 0


# =============================================================================
# Status buckets
# =============================================================================

def classify_urgency(days: Optional[int],
                     critical: int = DEFAULT_URGENCY_CRITICAL_DAYS,
                     high: int = DEFAULT_URGENCY_HIGH_DAYS,
                     medium: int = DEFAULT_URGENCY_MEDIUM_DAYS) -> str:
    """
    Bucket days remaining into an urgency level.

    Boundaries are inclusive: with the defaults 3 is critical, 7 is high,
    14 is medium. Negative days are expired.
    """
    if days is None:
        return URGENCY_UNKNOWN
    if days < 0:
        return URGENCY_EXPIRED
    if days <= critical:
        return URGENCY_CRITICAL
    if days <= high:
        return URGENCY_HIGH
    if days <= medium:
        return URGENCY_MEDIUM
    return URGENCY_NORMAL


@dataclass(frozen=True)
class ActivityStatus:
    is_inactive: bool
    days_since_activity: Optional[int]


def classify_activity(days: Optional[int], threshold: int) -> ActivityStatus:
    """
    Classify activity against an inactivity threshold.

    No recorded activity at all counts as inactive.
    """
    if days is None:
        return ActivityStatus(is_inactive=True, days_since_activity=None)
    return ActivityStatus(is_inactive=days >= threshold, days_since_activity=days)


def classify_credential(days: Optional[int],
                        critical_days: int = DEFAULT_CREDENTIAL_CRITICAL_DAYS,
                        warning_days: int = DEFAULT_CREDENTIAL_WARNING_DAYS) -> str:
    """Status of a secret or certificate from its days until expiry."""
    if days is None:
        return CREDENTIAL_UNKNOWN
    if days < 0:
        return CREDENTIAL_EXPIRED
    if days <= critical_days:
        return CREDENTIAL_CRITICAL
    if days <= warning_days:
        return CREDENTIAL_WARNING
    return CREDENTIAL_HEALTHY


# =============================================================================
# Units
# =============================================================================

def bytes_to_gb(value: Any) -> Optional[float]:
    """Convert bytes to GB (2 dp). None stays None."""
    if value is None or value == '':
        return None
    try:
        return round(float(value) / BYTES_PER_GB, 2)
    except (TypeError, ValueError):
        return None


def percentage(part: Optional[float], total: Optional[float]) -> Optional[float]:
    """part/total as a percentage (2 dp); None if either side is missing."""
    if part is None or total is None:
        return None
    if not total:
        return 0.0
    return round(part / total * 100, 2)


# =============================================================================
# Windows lifecycle
# =============================================================================

def windows_release(os_version: Optional[str]) -> Tuple[Optional[str], Optional[str], Optional[bool]]:
    """
    Map a Windows OS version ("10.0.22631.3007") to (product, release, supported).

    Unknown builds return (None, None, None).
    """
    if not os_version or not isinstance(os_version, str):
        return None, None, None
    parts = os_version.split('.')
    if len(parts) < 3 or parts[0] != '10':
        return None, None, None
    build = parts[2]
    if build in WINDOWS_BUILDS:
        return WINDOWS_BUILDS[build]
    if build.isdigit() and int(build) >= 22000:
        return "Windows 11", None, None
    if build.isdigit():
        return "Windows 10", None, None
    return None, None, None


def severity_rank(value: Any) -> int:
    """Sort rank for severity-like strings; higher is more severe."""
    if not isinstance(value, str):
        return 0
    return SEVERITY_RANK.get(value.lower(), 0)


# =============================================================================
# Addresses
# =============================================================================

def email_domain(address: Optional[str]) -> Optional[str]:
    """Lower-cased domain part of an email address or UPN."""
    if not address or '@' not in address:
        return None
    return address.rsplit('@', 1)[1].lower()


def guest_source_domain(mail: Optional[str], upn: Optional[str]) -> Optional[str]:
    """
    Home domain of a B2B guest.

    Prefers the mail address; falls back to the external UPN form
    alice_contoso.com#EXT#@tenant.onmicrosoft.com.
    """
    domain = email_domain(mail)
    if domain:
        return domain
    if upn and '#EXT#' in upn:
        local = upn.split('#EXT#', 1)[0]
        if '_' in local:
            return local.rsplit('_', 1)[1].lower()
    return None
