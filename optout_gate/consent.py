"""
Consent Store: the set of numbers that opted out.

Entries are keyed by normalized number. Every mutation runs under a lock
and is written through the record store before the lock is released, so a
later read in the same process always sees it.
"""

import logging
import threading
from typing import Iterable, Optional

from optout_gate.schemas import OptOutEntry
from optout_gate.storage import RecordStore
from optout_gate.utils import normalize_number

logger = logging.getLogger(__name__)

RECORD_KEY = "optouts"

# configId sentinels for entries that did not come from an inbound phrase
MANUAL = "manual"
API = "api"
LEGACY = "legacy"


class ConsentStore:

    def __init__(self, records: RecordStore):
        self._records = records
        self._lock = threading.RLock()
        self._entries: list[OptOutEntry] = self._load()

    def _load(self) -> list[OptOutEntry]:
        """
        Read the opt-out list, migrating bare-string entries once.

        Older data files stored plain numbers instead of objects; those are
        rewritten as structured entries tagged with the legacy sentinel.
        """
        raw = self._records.read(RECORD_KEY) or []
        entries = []
        migrated = 0
        for item in raw:
            if isinstance(item, str):
                entries.append(OptOutEntry(
                    number=normalize_number(item),
                    config_id=LEGACY,
                    original_number=item,
                ))
                migrated += 1
            else:
                entry = OptOutEntry.model_validate(item)
                entry.number = normalize_number(entry.number)
                entries.append(entry)

        if migrated:
            logger.info(f"Migrated {migrated} legacy opt-out entries")
            self._records.write(RECORD_KEY, [e.model_dump(by_alias=True, exclude_none=True) for e in entries])
        return entries

    def _persist(self) -> bool:
        return self._records.write(
            RECORD_KEY,
            [e.model_dump(by_alias=True, exclude_none=True) for e in self._entries],
        )

    def _index_of(self, number: str) -> int:
        for i, entry in enumerate(self._entries):
            if entry.number == number:
                return i
        return -1

    def is_blocked(self, number: Optional[str]) -> bool:
        normalized = normalize_number(number)
        if not normalized:
            return False
        with self._lock:
            return self._index_of(normalized) > -1

    def add(self, entry: OptOutEntry) -> bool:
        """
        Block a number. Idempotent.

        Returns:
            True if the number was added, False if it was already blocked
        """
        number = normalize_number(entry.number)
        if not number:
            return False
        with self._lock:
            if self._index_of(number) > -1:
                logger.info(f"{number} already in opt-out list")
                return False
            self._entries.append(entry.model_copy(update={"number": number}))
            self._persist()
        logger.info(f"Added {number} to opt-out list (config {entry.config_id})")
        return True

    def add_many(self, entries: Iterable[OptOutEntry]) -> tuple[list[str], list[str]]:
        """
        Block several numbers with a single durable write.

        Entries whose number normalizes to empty are skipped.

        Returns:
            Tuple of (added numbers, already blocked numbers)
        """
        added, already = [], []
        with self._lock:
            for entry in entries:
                number = normalize_number(entry.number)
                if not number:
                    continue
                if self._index_of(number) > -1:
                    already.append(number)
                    continue
                self._entries.append(entry.model_copy(update={"number": number}))
                added.append(number)
            if added:
                self._persist()
        return added, already

    def remove(self, number: Optional[str]) -> bool:
        """
        Unblock a number.

        Returns:
            True if an entry was removed, False if the number was not blocked
        """
        normalized = normalize_number(number)
        if not normalized:
            return False
        with self._lock:
            index = self._index_of(normalized)
            if index == -1:
                return False
            del self._entries[index]
            self._persist()
        logger.info(f"Removed {normalized} from opt-out list")
        return True

    def remove_many(self, numbers: Iterable[Optional[str]]) -> tuple[list[str], list[str]]:
        """
        Unblock several numbers with a single durable write.

        Returns:
            Tuple of (removed numbers, numbers that were not blocked)
        """
        removed, not_found = [], []
        with self._lock:
            for number in numbers:
                normalized = normalize_number(number)
                if not normalized:
                    continue
                index = self._index_of(normalized)
                if index == -1:
                    not_found.append(normalized)
                    continue
                del self._entries[index]
                removed.append(normalized)
            if removed:
                self._persist()
        return removed, not_found

    def entries(self) -> list[OptOutEntry]:
        with self._lock:
            return [e.model_copy() for e in self._entries]

    def numbers(self) -> list[str]:
        """Normalized numbers only."""
        with self._lock:
            return [e.number for e in self._entries]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
