"""
Table store module for persisting records, grants, shared files and bindings.

Rows are plain JSON-compatible dictionaries grouped into named tables. Unique
indexes map a unique key to the primary key of the row holding it and back
the single-active-grant and one-wallet-per-profile constraints.
"""

import os
import copy
import json
import time
import logging
import threading
from contextlib import contextmanager
from typing import Callable, Dict, List, Optional

from recordshare.errors import Conflict, NotFound, StoreUnavailable

logger = logging.getLogger(__name__)


class MemoryTableStore:
    """Thread-safe in-memory table store. Every read returns a copy."""

    def __init__(self):
        self._lock = threading.RLock()
        self._tables: Dict[str, Dict[str, Dict]] = {}
        self._unique: Dict[str, Dict[str, str]] = {}

    def _snapshot(self):
        return None

    def _restore(self, snapshot) -> None:
        pass

    def _persist(self) -> None:
        pass

    @contextmanager
    def _write(self):
        # A failed persist rolls the in-memory state back to the snapshot
        with self._lock:
            snapshot = self._snapshot()
            yield
            try:
                self._persist()
            except StoreUnavailable:
                self._restore(snapshot)
                raise

    def insert(self, table: str, key: str, row: Dict) -> Dict:
        """
        Insert a new row

        Raises:
            Conflict: If a row with the same key already exists
        """
        with self._write():
            rows = self._tables.setdefault(table, {})
            if key in rows:
                raise Conflict(f"{table} row {key} already exists")
            rows[key] = copy.deepcopy(row)
        return copy.deepcopy(row)

    def get(self, table: str, key: str) -> Optional[Dict]:
        with self._lock:
            row = self._tables.get(table, {}).get(key)
            return copy.deepcopy(row) if row is not None else None

    def update(self, table: str, key: str, changes: Dict) -> Dict:
        """
        Apply changes to an existing row and return the updated row

        Raises:
            NotFound: If the row does not exist
        """
        with self._write():
            rows = self._tables.get(table, {})
            if key not in rows:
                raise NotFound(f"{table} row {key} not found")
            rows[key].update(copy.deepcopy(changes))
            updated = copy.deepcopy(rows[key])
        return updated

    def upsert(self, table: str, key: str, row: Dict) -> Dict:
        with self._write():
            self._tables.setdefault(table, {})[key] = copy.deepcopy(row)
        return copy.deepcopy(row)

    def delete(self, table: str, key: str) -> bool:
        """Remove a row; returns False if it did not exist"""
        with self._write():
            rows = self._tables.get(table, {})
            if key not in rows:
                return False
            del rows[key]
        return True

    def scan(self, table: str, predicate: Optional[Callable[[Dict], bool]] = None) -> List[Dict]:
        with self._lock:
            rows = list(self._tables.get(table, {}).values())
            return [copy.deepcopy(r) for r in rows if predicate is None or predicate(r)]

    def claim_unique(self, index: str, unique_key: str, owner_key: str) -> bool:
        """
        Atomically bind unique_key to owner_key

        Returns:
            True if the key was free or already held by owner_key, False otherwise
        """
        with self._lock:
            holder = self._unique.get(index, {}).get(unique_key)
            if holder is not None and holder != owner_key:
                return False
            with self._write():
                self._unique.setdefault(index, {})[unique_key] = owner_key
            return True

    def lookup_unique(self, index: str, unique_key: str) -> Optional[str]:
        with self._lock:
            return self._unique.get(index, {}).get(unique_key)

    def release_unique(self, index: str, unique_key: str, owner_key: str) -> bool:
        """Free unique_key if owner_key still holds it"""
        with self._lock:
            if self._unique.get(index, {}).get(unique_key) != owner_key:
                return False
            with self._write():
                del self._unique[index][unique_key]
            return True


class JSONTableStore(MemoryTableStore):
    """Table store persisted to a single JSON file after every write"""

    def __init__(self, path: str):
        super().__init__()
        self.path = path
        self._load()

    def _load(self) -> None:
        if not os.path.exists(self.path):
            return
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise StoreUnavailable(f"Error loading table store {self.path}: {e}") from e
        self._tables = data.get("tables", {})
        self._unique = data.get("unique", {})
        logger.info(f"Loaded {sum(len(t) for t in self._tables.values())} rows from {self.path}")

    def _snapshot(self):
        return copy.deepcopy(self._tables), copy.deepcopy(self._unique)

    def _restore(self, snapshot) -> None:
        self._tables, self._unique = snapshot

    def _persist(self) -> None:
        data = {
            "tables": self._tables,
            "unique": self._unique,
            "metadata": {"last_updated": time.time()},
        }
        directory = os.path.dirname(self.path)
        tmp_path = f"{self.path}.tmp"
        try:
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(tmp_path, "w") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.error(f"Error saving table store {self.path}: {e}")
            raise StoreUnavailable(f"Error saving table store: {e}") from e
