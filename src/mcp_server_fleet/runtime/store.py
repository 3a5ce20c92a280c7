"""
Key-value storage for archived agent state.

The fleet manager only needs ``store(key, value, metadata)`` from its
archival collaborator; reads are used by tooling and revival. Two
backends ship here: an in-memory one (tests, ephemeral fleets) and a
JSON-file one rooted in the fleet data directory.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from pydantic import BaseModel, Field

from .locking import get_lock
from .models import now_ms

logger = logging.getLogger("fleet.store")


class StoredEntry(BaseModel):
    key: str
    value: Dict[str, Any]
    metadata: Dict[str, Any] = Field(default_factory=dict)
    stored_at: int = Field(default_factory=now_ms)

    @property
    def tags(self) -> List[str]:
        return list(self.metadata.get("tags", []))


class KeyExistsError(KeyError):
    """Raised by write-once stores when a key is already present."""


class KeyValueStore(ABC):
    """Abstract interface for the archival store."""

    @abstractmethod
    def store(self, key: str, value: Dict[str, Any], metadata: Optional[Dict[str, Any]] = None) -> str:
        """Persist a value. Write-once: raises KeyExistsError for a known key."""

    @abstractmethod
    def get(self, key: str) -> Optional[StoredEntry]:
        """Fetch an entry or None."""

    @abstractmethod
    def keys(self, tag: Optional[str] = None) -> List[str]:
        """List keys, optionally only those tagged with ``tag``."""


class InMemoryKeyValueStore(KeyValueStore):
    def __init__(self):
        self._entries: Dict[str, StoredEntry] = {}
        self._lock = threading.Lock()

    def store(self, key, value, metadata=None):
        with self._lock:
            if key in self._entries:
                raise KeyExistsError(key)
            self._entries[key] = StoredEntry(key=key, value=value, metadata=metadata or {})
        return key

    def get(self, key):
        with self._lock:
            entry = self._entries.get(key)
            return entry.model_copy(deep=True) if entry else None

    def keys(self, tag=None):
        with self._lock:
            return [k for k, e in self._entries.items() if tag is None or tag in e.tags]


class JSONFileStore(KeyValueStore):
    """One JSON document per key under ``root``, guarded by a file lock."""

    def __init__(self, root: Path, lock_dir: Optional[Path] = None):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = get_lock("archive", lock_dir or self.root / ".locks")

    def _path(self, key: str) -> Path:
        return self.root / f"{quote(key, safe='')}.json"

    def store(self, key, value, metadata=None):
        entry = StoredEntry(key=key, value=value, metadata=metadata or {})
        path = self._path(key)
        with self._lock.section():
            if path.exists():
                raise KeyExistsError(key)
            tmp = path.with_suffix(".json.tmp")
            tmp.write_text(entry.model_dump_json(indent=2))
            tmp.replace(path)
        logger.debug(f"Stored {key} -> {path}")
        return key

    def get(self, key):
        path = self._path(key)
        with self._lock.section():
            if not path.exists():
                return None
            return StoredEntry.model_validate_json(path.read_text())

    def keys(self, tag=None):
        result = []
        with self._lock.section():
            for path in sorted(self.root.glob("*.json")):
                try:
                    entry = StoredEntry.model_validate(json.loads(path.read_text()))
                except (OSError, ValueError) as e:
                    logger.error(f"Skipping unreadable archive entry {path}: {e}")
                    continue
                if tag is None or tag in entry.tags:
                    result.append(entry.key)
        return result
