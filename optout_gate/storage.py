import copy
import json
import logging
import os
import threading
import time
from datetime import datetime, timezone
from typing import Any, NamedTuple, Optional

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base

from optout_gate.metrics import record_write_failure
from optout_gate.utils import parse_iso, utc_now

logger = logging.getLogger(__name__)

# Base class for SQLAlchemy models
Base = declarative_base()

RECORD_KEYS = ("config", "credentials", "optouts", "history")


def default_record(key: str) -> Any:
    """Value returned for a record that no backend holds yet."""
    defaults = {
        "config": {"optoutConfigs": [], "customSenders": []},
        "credentials": {"apiKey": "", "apiSecret": "", "isLocked": False},
        "optouts": [],
        "history": [],
    }
    return copy.deepcopy(defaults[key])


def create_db_engine(database_url: str) -> Engine:
    """
    Create the SQLAlchemy engine.
    check_same_thread=False is required for SQLite to work with FastAPI's async
    """
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    return create_engine(database_url, connect_args=connect_args, echo=False)


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine: Engine) -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {engine.url}")
    try:
        # Import models to register them with Base.metadata
        from optout_gate.models import Record  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def check_db_health(session_factory: sessionmaker) -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and the records table exists, False otherwise.
    """
    try:
        with session_factory() as db:
            db.execute(text("SELECT 1"))
            if not inspect(db.get_bind()).has_table("records"):
                logger.error("Database schema not applied: 'records' table not found")
                return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Backends
# =============================================================================

class StoredValue(NamedTuple):
    """A record as held by one backend, with the time it was written."""
    value: Any
    updated_at: datetime


class SqlRecordBackend:
    """Durable backend storing each record as JSON text in the records table."""

    name = "database"

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def load(self, key: str) -> Optional[StoredValue]:
        from optout_gate.models import Record

        with self._session_factory() as db:
            row = db.get(Record, key)
            if row is None:
                return None
            return StoredValue(json.loads(row.value), parse_iso(row.updated_at))

    def get(self, key: str) -> Optional[Any]:
        stored = self.load(key)
        return None if stored is None else stored.value

    def set(self, key: str, value: Any) -> None:
        from optout_gate.models import Record

        payload = json.dumps(value)
        with self._session_factory() as db:
            try:
                # Microsecond precision, compared with file mtimes on load
                db.merge(Record(key=key, value=payload, updated_at=utc_now().isoformat()))
                db.commit()
            except Exception:
                db.rollback()
                raise


class FileRecordBackend:
    """
    Backend keeping one pretty-printed JSON file per record in a directory.

    The file's modification time is the record's write time, so the files
    stay plain JSON documents.
    """

    name = "files"

    FILE_NAMES = {
        "config": "config.json",
        "credentials": "credentials.json",
        "optouts": "optouts.json",
        "history": "history.json",
    }

    def __init__(self, data_dir: str):
        self.data_dir = data_dir
        os.makedirs(data_dir, exist_ok=True)

    def _path(self, key: str) -> str:
        return os.path.join(self.data_dir, self.FILE_NAMES[key])

    def load(self, key: str) -> Optional[StoredValue]:
        path = self._path(key)
        if not os.path.exists(path):
            return None
        with open(path, "r", encoding="utf-8") as fh:
            value = json.load(fh)
        return StoredValue(value, datetime.fromtimestamp(os.path.getmtime(path), timezone.utc))

    def get(self, key: str) -> Optional[Any]:
        stored = self.load(key)
        return None if stored is None else stored.value

    def set(self, key: str, value: Any) -> None:
        path = self._path(key)
        tmp_path = path + ".tmp"
        with open(tmp_path, "w", encoding="utf-8") as fh:
            json.dump(value, fh, indent=2)
        # Filesystem timestamps are coarse; stamp the exact write time
        written_ns = time.time_ns()
        os.utime(tmp_path, ns=(written_ns, written_ns))
        os.replace(tmp_path, path)


# =============================================================================
# Record Store
# =============================================================================

class RecordStore:
    """
    Cached access to the four named records.

    Writes update the cache first and then go to every backend. A write
    counts as persisted when at least one backend accepted it; when none
    did the store keeps serving the cached value for the rest of the
    process lifetime and reports itself degraded.

    Reads go to the cache, then to the freshest copy held by any backend,
    then to the default. A backend that missed writes while it was failing
    therefore never shadows newer data held by another backend; on equal
    write times the primary wins.
    """

    def __init__(self, primary, secondary=None):
        self.primary = primary
        self.secondary = secondary
        self.degraded = False
        self._cache: dict[str, Any] = {}
        self._lock = threading.RLock()

    @property
    def backends(self) -> list:
        return [b for b in (self.primary, self.secondary) if b is not None]

    def read(self, key: str) -> Any:
        """Return a private copy of the record, or its default."""
        with self._lock:
            if key not in self._cache:
                self._cache[key] = self._load(key)
            return copy.deepcopy(self._cache[key])

    def _load(self, key: str) -> Any:
        freshest, source = None, None
        for backend in self.backends:
            try:
                stored = backend.load(key)
            except Exception as e:
                logger.error(f"Error reading {key} from {backend.name}: {e}")
                continue
            if stored is not None and (freshest is None or stored.updated_at > freshest.updated_at):
                freshest, source = stored, backend

        if freshest is None:
            return default_record(key)
        logger.debug(f"Loaded {key} from {source.name}")
        return freshest.value

    def write(self, key: str, value: Any) -> bool:
        """
        Store a record.

        Returns:
            True if some backend persisted the value, False if it only
            lives in the in-memory cache
        """
        with self._lock:
            self._cache[key] = copy.deepcopy(value)
            persisted = False
            for backend in self.backends:
                try:
                    backend.set(key, value)
                    logger.debug(f"Saved {key} to {backend.name}")
                    persisted = True
                except Exception as e:
                    logger.error(f"Error writing {key} to {backend.name}: {e}")

            if not persisted:
                self.degraded = True
                record_write_failure(key)
                logger.error(f"Record {key} not persisted; serving in-memory copy only")
            return persisted

    def exists(self, key: str) -> bool:
        with self._lock:
            if key in self._cache:
                return True
            for backend in self.backends:
                try:
                    if backend.load(key) is not None:
                        return True
                except Exception as e:
                    logger.error(f"Error reading {key} from {backend.name}: {e}")
            return False

    def initialize(self) -> None:
        """Write defaults for records that no backend holds yet."""
        for key in RECORD_KEYS:
            if not self.exists(key):
                self.write(key, default_record(key))

        config = self.read("config")
        if not isinstance(config, dict) or not isinstance(config.get("optoutConfigs"), list):
            config = config if isinstance(config, dict) else {}
            config["optoutConfigs"] = []
            config.setdefault("customSenders", [])
            self.write("config", config)

        logger.info(
            f"Storage initialized ({', '.join(b.name for b in self.backends)})"
        )

    def describe(self) -> dict:
        return {
            "backends": [b.name for b in self.backends],
            "persistent": not self.degraded,
            "degraded": self.degraded,
        }

    def invalidate(self) -> None:
        """Drop the cache so the next read goes to the backends."""
        with self._lock:
            self._cache.clear()
