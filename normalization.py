"""
Normalization helpers shared by the reconciler, the validator and the sync writer.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from errors import ValidationFailedError

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def normalize_key(key: Any) -> str:
    """Trim and uppercase a license key. ``None`` normalizes to an empty string."""
    if key is None:
        return ""
    return str(key).strip().upper()


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp into an aware UTC datetime.

    Accepts date-only values, a trailing ``Z`` and explicit offsets. Naive
    values are taken as UTC. Integers and floats are milliseconds since the
    epoch. Returns ``None`` for anything that does not parse.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    try:
        return parsed.astimezone(timezone.utc)
    except (OverflowError, ValueError):
        # Offsets that push the instant past datetime.min or datetime.max
        return None


def recency(record: Mapping[str, Any]) -> datetime:
    """The ``updated`` instant of a record, or the epoch when missing or unparseable."""
    return parse_timestamp(record.get("updated")) or EPOCH


def isoformat(moment: datetime) -> str:
    """Render an instant the way clients expect it: UTC, millisecond precision, ``Z``."""
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def normalize_batch(licenses: List[Any], now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """
    Validate and normalize a submitted batch before it is persisted.

    Records without a non-empty string ``key`` or with an unparseable
    ``expiry`` are dropped. Duplicates are resolved by keeping the first
    occurrence of each normalized key in submission order.

    Raises:
        ValidationFailedError: the batch was non-empty but nothing survived.
    """
    now = now or datetime.now(timezone.utc)
    stamp = isoformat(now)
    accepted: Dict[str, Dict[str, Any]] = {}

    for raw in licenses:
        if not isinstance(raw, Mapping):
            continue
        key = raw.get("key")
        if not isinstance(key, str) or not key.strip():
            continue
        if parse_timestamp(raw.get("expiry")) is None:
            continue

        normalized = normalize_key(key)
        if normalized in accepted:
            continue

        record = dict(raw)
        record["key"] = normalized
        record["note"] = raw.get("note") or ""
        record["created"] = raw.get("created") or stamp
        record["updated"] = raw.get("updated") or stamp
        accepted[normalized] = record

    if licenses and not accepted:
        raise ValidationFailedError(
            f"None of the {len(licenses)} submitted licenses has a key and a valid expiry",
            rejected=len(licenses),
        )

    return list(accepted.values())
