"""
Document store for ArchivedV.

The orchestrator only ever sees two operations: load() returns a fresh
Snapshot, save(snapshot) replaces the whole document.  Callers compute a
new snapshot from a freshly loaded one and save it in one step.
"""

import copy
import json
import logging
import os
import tempfile
import threading
from pathlib import Path

from archivedv.core.constants import DEFAULT_DATA_DIR, DB_FILENAME
from archivedv.core.models import Snapshot

logger = logging.getLogger(__name__)


class Store:
    """Interface: load() -> Snapshot, save(Snapshot) -> None."""

    def load(self) -> Snapshot:
        raise NotImplementedError

    def save(self, snapshot: Snapshot) -> None:
        raise NotImplementedError


class JsonStore(Store):
    """Flat JSON document on disk (db.json). Thread-safe via explicit locking."""

    def __init__(self, db_path: Path | None = None):
        self.db_path = db_path or (DEFAULT_DATA_DIR / DB_FILENAME)
        self._lock = threading.Lock()
        self._ensure_dirs()
        if not self.db_path.exists():
            self.save(Snapshot())

    def _ensure_dirs(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> Snapshot:
        with self._lock:
            try:
                with open(self.db_path, 'r', encoding='utf-8') as f:
                    raw = json.load(f)
            except FileNotFoundError:
                return Snapshot()
            except (OSError, ValueError) as e:
                logger.error("Unreadable store %s (%s); starting from an empty document",
                             self.db_path, e)
                snapshot = Snapshot()
                self._write(snapshot)
                return snapshot
        return Snapshot.from_dict(raw)

    def save(self, snapshot: Snapshot) -> None:
        with self._lock:
            self._write(snapshot)

    def _write(self, snapshot: Snapshot):
        payload = json.dumps(snapshot.to_dict(), indent=2, ensure_ascii=False)
        fd, tmp_name = tempfile.mkstemp(prefix=".db-", suffix=".json",
                                        dir=str(self.db_path.parent))
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(payload)
            os.replace(tmp_name, self.db_path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise


class MemoryStore(Store):
    """In-memory document; every load() hands out an independent copy."""

    def __init__(self, snapshot: Snapshot | None = None):
        self._lock = threading.Lock()
        self._snapshot = copy.deepcopy(snapshot) if snapshot else Snapshot()
        self.saves = 0

    def load(self) -> Snapshot:
        with self._lock:
            return copy.deepcopy(self._snapshot)

    def save(self, snapshot: Snapshot) -> None:
        with self._lock:
            self._snapshot = copy.deepcopy(snapshot)
            self.saves += 1
