"""
Utility functions shared by the opt-out service.
"""

import re
import threading
import time
from datetime import datetime, timezone
from typing import Optional

_NON_DIGITS = re.compile(r"[^0-9]")


def normalize_number(raw: Optional[str]) -> str:
    """
    Canonicalize a phone number for identity comparison.

    Every character that is not a decimal digit is dropped, so
    "+44 7700-900000" and "447700900000" are the same identity.
    No country-code or leading-zero handling is attempted.

    Args:
        raw: Phone number as received (may be None)

    Returns:
        Digits-only string, empty when there were no digits
    """
    if not raw:
        return ""
    return _NON_DIGITS.sub("", str(raw))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    """Format a datetime as an ISO-8601 UTC instant with millisecond precision and Z suffix."""
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def now_iso() -> str:
    return to_iso(utc_now())


def parse_iso(value: str) -> datetime:
    """
    Parse an ISO-8601 timestamp. Naive values are taken as UTC.

    Raises:
        ValueError: If the value is not a valid timestamp
    """
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


_last_id = 0
_id_lock = threading.Lock()


def new_id() -> str:
    """
    Generate a record id from the current time in milliseconds.

    Ids are strictly increasing within a process, so records created in
    the same millisecond still get distinct ids.
    """
    global _last_id
    with _id_lock:
        _last_id = max(int(time.time() * 1000), _last_id + 1)
        return str(_last_id)
