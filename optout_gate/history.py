"""
History Log: append-only record of opt-in/opt-out events.

Entries are kept in append order (chronological). Queries filter by UTC
day range and action and return newest first.
"""

import logging
import threading
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Iterable, Optional, Union

from optout_gate.errors import ValidationError
from optout_gate.schemas import HistoryEntry
from optout_gate.storage import RecordStore
from optout_gate.utils import parse_iso, utc_now

logger = logging.getLogger(__name__)

RECORD_KEY = "history"

ACTIONS = ("optin", "optout")


def _to_day(value: Union[str, date, datetime, None], field: str) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).date()
    if isinstance(value, date):
        return value
    try:
        if len(value) == 10:
            return date.fromisoformat(value)
        return parse_iso(value).astimezone(timezone.utc).date()
    except ValueError:
        raise ValidationError(f"Invalid {field}: {value}")


class HistoryLog:

    def __init__(self, records: RecordStore, clock: Callable[[], datetime] = utc_now):
        self._records = records
        self._clock = clock
        self._lock = threading.RLock()
        raw = self._records.read(RECORD_KEY) or []
        self._entries: list[HistoryEntry] = [HistoryEntry.model_validate(item) for item in raw]

    def _persist(self) -> bool:
        return self._records.write(
            RECORD_KEY,
            [e.model_dump(by_alias=True, exclude_none=True) for e in self._entries],
        )

    def append(self, entry: HistoryEntry) -> None:
        with self._lock:
            self._entries.append(entry)
            self._persist()
        logger.debug(f"History: {entry.action} {entry.number} via {entry.received_on}")

    def extend(self, entries: Iterable[HistoryEntry]) -> None:
        entries = list(entries)
        if not entries:
            return
        with self._lock:
            self._entries.extend(entries)
            self._persist()

    def query(
        self,
        start_date: Union[str, date, None] = None,
        end_date: Union[str, date, None] = None,
        action: Optional[str] = None,
    ) -> list[HistoryEntry]:
        """
        Filter history by day range and action.

        Args:
            start_date: Inclusive first day (floored to 00:00:00.000 UTC)
            end_date: Inclusive last day (ceilinged to 23:59:59.999 UTC)
            action: "optin" / "optout"; None or "all" means any

        Returns:
            Matching entries sorted by timestamp, newest first

        Raises:
            ValidationError: If a date or the action is not recognised
        """
        start_day = _to_day(start_date, "startDate")
        end_day = _to_day(end_date, "endDate")
        if action in ("", "all"):
            action = None
        if action is not None and action not in ACTIONS:
            raise ValidationError(f"Invalid action: {action}")

        start = datetime.combine(start_day, time.min, tzinfo=timezone.utc) if start_day else None
        end = datetime.combine(end_day, time(23, 59, 59, 999000), tzinfo=timezone.utc) if end_day else None

        with self._lock:
            entries = list(self._entries)

        results = []
        for entry in entries:
            moment = parse_iso(entry.timestamp)
            if start is not None and moment < start:
                continue
            if end is not None and moment > end:
                continue
            if action is not None and entry.action != action:
                continue
            results.append((moment, entry))

        results.sort(key=lambda pair: pair[0], reverse=True)
        return [entry for _, entry in results]

    def stats(self, window_hours: int = 24, now: Optional[datetime] = None) -> dict:
        """
        Count opt-ins and opt-outs whose timestamp lies in [now - window, now].
        """
        now = now or self._clock()
        since = now - timedelta(hours=window_hours)

        with self._lock:
            entries = list(self._entries)

        counts = {"optins": 0, "optouts": 0}
        for entry in entries:
            moment = parse_iso(entry.timestamp)
            if since <= moment <= now:
                counts[entry.action + "s"] += 1
        return counts

    def clear(self) -> None:
        with self._lock:
            self._entries = []
            self._persist()
        logger.warning("History cleared")

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
