"""JSON snapshots of cache entries on local disk.

Snapshots live in one directory, one <name>.json file per cache key, so a
restarted server doesn't have to refetch the whole issue history from Jira.
"""

import json
import logging
import os
from datetime import datetime
from typing import Optional

logger = logging.getLogger(__name__)

DATETIME_TAG = "$datetime"


def _encode(value):
    if isinstance(value, datetime):
        return {DATETIME_TAG: value.isoformat()}
    if isinstance(value, set):
        return sorted(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _decode(obj: dict):
    if len(obj) == 1 and DATETIME_TAG in obj:
        return datetime.fromisoformat(obj[DATETIME_TAG])
    return obj


class SnapshotStore:
    """Reads and writes cache snapshots as JSON files."""

    def __init__(self, cache_dir: str):
        self.cache_dir = cache_dir

    def _path(self, name: str) -> str:
        safe_name = name.replace(os.sep, "_").replace(":", "_")
        return os.path.join(self.cache_dir, f"{safe_name}.json")

    def _ensure_cache_dir(self):
        if not os.path.exists(self.cache_dir):
            os.makedirs(self.cache_dir)

    def save(self, name: str, snapshot: dict):
        """Write a snapshot, replacing the previous one atomically.

        Raises:
            OSError, TypeError: if the snapshot can't be written
        """
        self._ensure_cache_dir()
        path = self._path(name)
        temp_path = f"{path}.tmp"
        with open(temp_path, "w") as f:
            json.dump(snapshot, f, default=_encode)
        os.replace(temp_path, path)
        logger.info(f"Wrote cache snapshot '{name}' to {path}")

    def load(self, name: str) -> Optional[dict]:
        """Read a snapshot.

        Returns:
            The snapshot, or None if there isn't one (cold start) or it can't
            be read.
        """
        path = self._path(name)
        if not os.path.exists(path):
            logger.info(f"No cache snapshot for '{name}' at {path}, starting cold")
            return None
        try:
            with open(path, "r") as f:
                return json.load(f, object_hook=_decode)
        except (json.JSONDecodeError, IOError, ValueError) as e:
            logger.error(f"Could not read cache snapshot '{name}' from {path}: {e}")
            return None
