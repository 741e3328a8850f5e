import json
import logging
import os
import tempfile
import time
from typing import Callable, Dict, Optional

from vulntree.core.issues import CacheEntry
from vulntree.core.model import short_component_id

CACHE_VERSION = 1
ONE_WEEK_SECONDS = 7 * 24 * 60 * 60


class ScanCache:
    """
    Per-component scan results kept between runs, stored as a single JSON document.
    Entries are keyed by the short component id ('name:version').
    """

    def __init__(self, path: Optional[str] = None, ttl_seconds: float = ONE_WEEK_SECONDS,
                 clock: Callable[[], float] = time.time):
        self.path = path
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._dirty = False
        self.load()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, component_id: str) -> bool:
        return short_component_id(component_id) in self._entries

    def load(self) -> None:
        if not self.path or not os.path.exists(self.path):
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logging.warning(f"Ignoring unreadable scan cache {self.path}: {e}")
            return

        if data.get("version") != CACHE_VERSION:
            logging.info(f"Scan cache version {data.get('version')} is outdated. Starting fresh.")
            return

        for component_id, raw in (data.get("components") or {}).items():
            try:
                self._entries[component_id] = CacheEntry.from_dict(raw)
            except (KeyError, TypeError, ValueError) as e:
                logging.debug(f"Dropping malformed cache entry {component_id}: {e}")
        logging.debug(f"Loaded {len(self._entries)} cached components from {self.path}")

    def is_valid(self, component_id: str) -> bool:
        entry = self._entries.get(short_component_id(component_id))
        if entry is None:
            return False
        return self._clock() - entry.timestamp < self.ttl_seconds

    def get(self, component_id: str) -> Optional[CacheEntry]:
        return self._entries.get(short_component_id(component_id))

    def put(self, component_id: str, entry: CacheEntry) -> None:
        entry.timestamp = self._clock()
        self._entries[short_component_id(component_id)] = entry
        self._dirty = True

    def save(self) -> None:
        if not self.path or not self._dirty:
            return
        directory = os.path.dirname(self.path) or "."
        payload = {
            "version": CACHE_VERSION,
            "components": {cid: entry.to_dict() for cid, entry in self._entries.items()},
        }
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".scan-cache-", suffix=".json")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f)
            os.replace(tmp_path, self.path)
        except OSError as e:
            logging.error(f"Could not write scan cache {self.path}: {e}")
            return
        self._dirty = False
        logging.debug(f"Scan cache saved ({len(self._entries)} components)")
