"""JSON document stores with atomic replace-on-write."""

import json
import logging
import os
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from filelock import FileLock

logger = logging.getLogger(__name__)

# Seconds to wait for another process holding the store's file lock
LOCK_TIMEOUT = 30

MAX_TASKS = 1000
MAX_AGENTS = 200
MAX_NOTIFICATIONS = 1000
MAX_HEARTBEATS = 50


class JsonStore:
    """One JSON file holding a list of records.

    Every write is read-entire-state, mutate, atomically replace-entire-state
    under the store lock, so a check made inside ``transaction()`` holds when
    the write lands. The lock is a thread lock plus a ``FileLock`` on a
    sibling ``.lock`` file, so the server, the CLI and ``--local`` workers
    can share one data directory.
    """

    def __init__(
        self,
        path: Path,
        key: str = "id",
        max_records: int | None = None,
        evictable: Callable[[dict], bool] | None = None,
    ):
        self.path = Path(path)
        self.key = key
        self.max_records = max_records
        self.evictable = evictable or (lambda record: True)
        self._lock = threading.Lock()
        self._file_lock = FileLock(str(self.path.with_name(f".{self.path.name}.lock")), timeout=LOCK_TIMEOUT)

    def load(self) -> list[dict]:
        """Read all records. Missing file is empty; a corrupt file is set aside and treated as empty."""
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        if not raw.strip():
            return []
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            self._quarantine(e)
            return []
        if isinstance(data, dict):
            # {"tasks": [...]} style documents
            data = next((v for v in data.values() if isinstance(v, list)), [])
        if not isinstance(data, list):
            logger.warning("Ignoring non-list document in %s", self.path)
            return []
        return [r for r in data if isinstance(r, dict)]

    @contextmanager
    def transaction(self) -> Iterator[list[dict]]:
        """Yield the mutable record list; persist it atomically if the block exits cleanly."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock, self._file_lock:
            records = self.load()
            yield records
            self._write(records)

    def _write(self, records: list[dict]):
        records = self._cap(records)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(f".{self.path.name}.tmp.{os.getpid()}")
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(records, f, indent=2)
                f.write("\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except OSError:
            tmp.unlink(missing_ok=True)
            raise

    def _cap(self, records: list[dict]) -> list[dict]:
        if self.max_records is None or len(records) <= self.max_records:
            return records
        overflow = len(records) - self.max_records

        def rank(item):
            idx, record = item
            return (0 if self.evictable(record) else 1, record.get("created_at") or "", idx)

        victims = {idx for idx, _ in sorted(enumerate(records), key=rank)[:overflow]}
        logger.warning("Evicting %d oldest records from %s", overflow, self.path.name)
        kept = [r for i, r in enumerate(records) if i not in victims]
        records[:] = kept
        return records

    def _quarantine(self, error: Exception):
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        target = self.path.with_name(f"{self.path.name}.corrupt-{stamp}")
        logger.warning(
            "Corrupt store %s (%s); moving it to %s and starting empty",
            self.path, error, target.name,
        )
        try:
            os.replace(self.path, target)
        except OSError:
            logger.exception("Could not move corrupt store %s aside", self.path)

    def find(self, records: list[dict], record_id: str) -> dict | None:
        return next((r for r in records if r.get(self.key) == record_id), None)


class Database:
    """The four stores of one hub instance, created once and passed around."""

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)
        self.tasks = JsonStore(
            self.data_dir / "tasks.json",
            max_records=MAX_TASKS,
            evictable=lambda r: r.get("lane") == "done",
        )
        self.agents = JsonStore(
            self.data_dir / "agents.json",
            max_records=MAX_AGENTS,
            evictable=lambda r: r.get("status") == "offline",
        )
        self.notifications = JsonStore(
            self.data_dir / "notifications.json",
            max_records=MAX_NOTIFICATIONS,
            evictable=lambda r: bool(r.get("delivered")),
        )
        self.heartbeats = JsonStore(
            self.data_dir / "worker-heartbeats.json",
            key="slot",
            max_records=MAX_HEARTBEATS,
            evictable=lambda r: r.get("status") == "stopped",
        )


def init_db(data_dir: Path) -> Database:
    """Create the data directory and return the store bundle."""
    data_dir = Path(data_dir)
    data_dir.mkdir(parents=True, exist_ok=True)
    return Database(data_dir)


@contextmanager
def get_db(data_dir: Path):
    """Context manager for a store bundle, mirroring connection-style usage."""
    db = init_db(data_dir)
    yield db
