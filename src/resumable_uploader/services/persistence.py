"""
Client-side upload state

The server stays authoritative for what it holds. What is kept here is
only what the client needs to pick an interrupted upload back up: the
session snapshot for the session protocol, and the per-chunk storage
paths the legacy merge call has to send back.
"""
import json
import logging
import os
from pathlib import Path
from typing import Dict, Optional, Protocol

logger = logging.getLogger(__name__)


class SessionStore(Protocol):
    """
    Key/value port; keys are content fingerprints.

    Methods may block. The orchestrator calls them in the default executor,
    one call at a time, at every chunk completion.
    """

    def save(self, key: str, record: dict) -> None:
        ...

    def load(self, key: str) -> Optional[dict]:
        ...

    def delete(self, key: str) -> None:
        ...


class InMemorySessionStore:
    """Process-local store (the default)."""

    def __init__(self):
        self._records: Dict[str, dict] = {}

    def save(self, key: str, record: dict) -> None:
        self._records[key] = json.loads(json.dumps(record))

    def load(self, key: str) -> Optional[dict]:
        record = self._records.get(key)
        return json.loads(json.dumps(record)) if record is not None else None

    def delete(self, key: str) -> None:
        self._records.pop(key, None)

    def __len__(self) -> int:
        return len(self._records)


class JsonFileSessionStore:
    """
    One JSON file per fingerprint under ``directory``.

    Writes go to a temp file first and are renamed into place, so a crash
    mid-write leaves the previous record intact. Unreadable files are
    treated as missing.
    """

    def __init__(self, directory):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        safe = "".join(c for c in key if c.isalnum() or c in "-_")
        if not safe:
            raise ValueError(f"Unusable store key: {key!r}")
        return self.directory / f"{safe}.json"

    def save(self, key: str, record: dict) -> None:
        path = self._path(key)
        tmp = path.with_suffix(".json.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(record, f)
        os.replace(tmp, path)
        logger.debug(f"Saved upload state {path.name}")

    def load(self, key: str) -> Optional[dict]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable upload state {path.name}: {e}")
            return None

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass
