"""
Validator: derives the temporal status of a license key from the canonical mapping.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, Mapping

from normalization import isoformat, normalize_key, parse_timestamp

STATUS_VALID = "valid"
STATUS_EXPIRING = "expiring"
STATUS_EXPIRED = "expired"
STATUS_NOT_FOUND = "not_found"

# Status reported to clients; "expiring" only shows up in the message.
REPORTED_ACTIVE = "active"

MESSAGES = {
    "en": {
        STATUS_VALID: "License is valid",
        STATUS_EXPIRING: "License is expiring soon",
        STATUS_EXPIRED: "License has expired",
        STATUS_NOT_FOUND: "License not found",
    },
    "vi": {
        STATUS_VALID: "License hợp lệ",
        STATUS_EXPIRING: "License sắp hết hạn",
        STATUS_EXPIRED: "License đã hết hạn",
        STATUS_NOT_FOUND: "License không tồn tại",
    },
}

ONE_DAY = timedelta(days=1)


def message_for(status: str, locale: str = "en") -> str:
    return MESSAGES.get(locale, MESSAGES["en"])[status]


def classify(expiry: datetime, now: datetime, expiring_days: int = 7):
    """Return ``(status, valid, days_remaining)`` for an expiry instant."""
    remaining = expiry - now
    days_remaining = remaining // ONE_DAY

    if remaining <= timedelta(0):
        return STATUS_EXPIRED, False, days_remaining
    if days_remaining <= expiring_days:
        return STATUS_EXPIRING, True, days_remaining
    return STATUS_VALID, True, days_remaining


def evaluate(
    canonical: Mapping[str, Mapping[str, Any]],
    query_key: Any,
    now: datetime,
    expiring_days: int = 7,
    locale: str = "en",
) -> Dict[str, Any]:
    """
    Evaluate ``query_key`` against the canonical mapping at instant ``now``.

    Unknown keys are reported as expired with zero days remaining. A record
    whose expiry does not parse is treated as expired.
    """
    key = normalize_key(query_key)
    timestamp = isoformat(now)
    record = canonical.get(key)

    if record is None:
        return {
            "valid": False,
            "key": key,
            "expiry": None,
            "status": STATUS_EXPIRED,
            "message": message_for(STATUS_NOT_FOUND, locale),
            "days_remaining": 0,
            "note": "",
            "timestamp": timestamp,
        }

    expiry = parse_timestamp(record.get("expiry"))
    if expiry is None:
        status, valid, days_remaining = STATUS_EXPIRED, False, 0
    else:
        status, valid, days_remaining = classify(expiry, now, expiring_days)

    return {
        "valid": valid,
        "key": record.get("key"),
        "expiry": record.get("expiry"),
        "status": REPORTED_ACTIVE if valid else status,
        "message": message_for(status, locale),
        "days_remaining": days_remaining,
        "note": record.get("note") or "",
        "timestamp": timestamp,
    }
