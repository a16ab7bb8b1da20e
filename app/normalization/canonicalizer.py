"""
Canonicalizer: reduces arbitrarily-shaped JSON events to canonical fields.

Each canonical field is resolved from an ordered list of candidate keys,
first at the top level of the payload and then once inside a nested
``payload`` object. ``client_id`` and ``amount`` are required; ``metric``
and ``timestamp`` fall back to defaults.

The identity hash is a SHA-256 digest over the rendered canonical fields,
so two payloads that normalize to the same values are the same event
regardless of their raw shape.
"""
import hashlib
import math
import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable

from ..errors import NormalizationError
from ..event_models import CanonicalFields, utcnow

CLIENT_ID_FIELDS = ("source", "client_id", "clientId", "client", "origin")
METRIC_FIELDS = ("metric", "event_type", "type", "eventType", "name")
AMOUNT_FIELDS = ("amount", "value", "count", "quantity", "total", "price")
TIMESTAMP_FIELDS = ("timestamp", "time", "date", "created_at", "createdAt", "ts")

DEFAULT_METRIC = "unknown"

# Unix values below this are seconds, otherwise milliseconds
UNIX_SECONDS_CUTOFF = 10_000_000_000

_NON_NUMERIC = re.compile(r"[^\d.\-]")
_NUMERIC_PREFIX = re.compile(r"-?(?:\d+(?:\.\d*)?|\.\d+)")

# (pattern, year/month/day group indexes)
_DATE_PATTERNS = (
    (re.compile(r"(\d{4})/(\d{1,2})/(\d{1,2})"), (1, 2, 3)),
    (re.compile(r"(\d{4})-(\d{1,2})-(\d{1,2})"), (1, 2, 3)),
    (re.compile(r"(\d{1,2})/(\d{1,2})/(\d{4})"), (3, 1, 2)),
)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _candidates(raw: dict, fields: tuple[str, ...]):
    """Yield present values for ``fields``: top level first, then ``payload``."""
    for field in fields:
        value = raw.get(field)
        if value is not None:
            yield value
    nested = raw.get("payload")
    if isinstance(nested, dict):
        for field in fields:
            value = nested.get(field)
            if value is not None:
                yield value


def _resolve(raw: dict, fields: tuple[str, ...], coerce: Callable[[Any], Any]) -> Any:
    for value in _candidates(raw, fields):
        coerced = coerce(value)
        if coerced is not None:
            return coerced
    return None


def format_amount(amount: float) -> str:
    if amount.is_integer():
        return str(int(amount))
    return repr(amount)


def format_timestamp(ts: datetime) -> str:
    ts = ts.astimezone(timezone.utc)
    return ts.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ts.microsecond // 1000:03d}Z"


def coerce_text(value: Any) -> str | None:
    """Coerce a scalar to a trimmed, non-empty string."""
    if isinstance(value, bool):
        text = "true" if value else "false"
    elif isinstance(value, float):
        if not math.isfinite(value):
            return None
        text = format_amount(value)
    elif isinstance(value, (str, int)):
        text = str(value)
    else:
        return None
    text = text.strip()
    return text or None


def coerce_amount(value: Any) -> float | None:
    """Coerce a number or a loosely formatted numeric string to a finite float."""
    if _is_number(value):
        amount = float(value)
    elif isinstance(value, str):
        match = _NUMERIC_PREFIX.match(_NON_NUMERIC.sub("", value))
        if match is None:
            return None
        amount = float(match.group(0))
    else:
        return None
    if not math.isfinite(amount):
        return None
    return amount


def _from_unix(value: float) -> datetime | None:
    if not math.isfinite(value):
        return None
    seconds = value if value < UNIX_SECONDS_CUTOFF else value / 1000
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def _from_string(value: str) -> datetime | None:
    text = value.strip()
    if not text:
        return None

    try:
        return datetime.fromisoformat(text)
    except ValueError:
        pass

    try:
        return parsedate_to_datetime(text)
    except (TypeError, ValueError, IndexError):
        pass

    for pattern, (y, m, d) in _DATE_PATTERNS:
        match = pattern.search(text)
        if match is None:
            continue
        try:
            return datetime(
                int(match.group(y)), int(match.group(m)), int(match.group(d)),
                tzinfo=timezone.utc,
            )
        except ValueError:
            continue
    return None


def parse_timestamp(value: Any) -> datetime | None:
    """
    Parse a timestamp value into an aware UTC datetime.

    Accepts datetimes, Unix seconds or milliseconds, ISO 8601 and RFC 2822
    strings, and the loose forms YYYY/M/D, YYYY-M-D and M/D/YYYY.
    Returns None when the value is not recognized.
    """
    if isinstance(value, datetime):
        parsed = value
    elif _is_number(value):
        parsed = _from_unix(float(value))
    elif isinstance(value, str):
        parsed = _from_string(value)
    else:
        parsed = None

    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def compute_identity_hash(client_id: str, metric: str, amount: float, timestamp: datetime) -> str:
    rendered = "|".join(
        (client_id, metric, format_amount(amount), format_timestamp(timestamp))
    )
    return hashlib.sha256(rendered.encode("utf-8")).hexdigest()


def normalize(raw: Any, now: datetime | None = None) -> CanonicalFields:
    """
    Normalize a raw JSON value into canonical fields.

    Args:
        raw: Decoded JSON value as received from a producer
        now: Fallback timestamp (defaults to the current UTC time)

    Returns:
        CanonicalFields including the identity hash

    Raises:
        NormalizationError: client_id or amount could not be resolved
    """
    if not isinstance(raw, dict):
        raise NormalizationError("client_id not found")

    partial: dict[str, Any] = {}

    client_id = _resolve(raw, CLIENT_ID_FIELDS, coerce_text)
    if client_id is None:
        raise NormalizationError("client_id not found", partial)
    partial["client_id"] = client_id

    metric = _resolve(raw, METRIC_FIELDS, coerce_text) or DEFAULT_METRIC
    partial["metric"] = metric

    amount = _resolve(raw, AMOUNT_FIELDS, coerce_amount)
    if amount is None:
        raise NormalizationError("amount not found or invalid", partial)

    timestamp = _resolve(raw, TIMESTAMP_FIELDS, parse_timestamp)
    if timestamp is None:
        timestamp = (now or utcnow()).astimezone(timezone.utc)

    return CanonicalFields(
        client_id=client_id,
        metric=metric,
        amount=amount,
        timestamp=timestamp,
        identity_hash=compute_identity_hash(client_id, metric, amount, timestamp),
    )
