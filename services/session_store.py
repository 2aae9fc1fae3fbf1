"""
Session record storage.

Session records are plain JSON-compatible dicts (camelCase keys, ISO-8601 UTC
timestamps ending in "Z"). Two backends share the SessionStore interface:
InMemorySessionStore for tests and single-process use, and JsonFileSessionStore
which persists everything to one JSON file with atomic replace-on-write.
"""

import copy
import json
import logging
import os
import tempfile
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import config

logger = logging.getLogger(__name__)


class StorageError(RuntimeError):
    """A persistence operation failed."""


class SessionNotFoundError(LookupError):
    """No session with the given id."""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp (with or without "Z"); naive values are UTC. None if unparseable."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str) or not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def new_session_record(
    owner_id: str,
    configuration: Optional[Dict[str, Any]] = None,
    questions: Optional[List[Dict[str, Any]]] = None,
    now: Optional[datetime] = None,
    session_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Build a fresh record in the "created" state."""
    configuration = copy.deepcopy(configuration or {})
    configuration.setdefault("interviewer", "")
    configuration.setdefault("type", "")
    settings = configuration.setdefault("settings", {})
    settings.setdefault("difficulty", "")
    settings.setdefault("topicFocus", "")
    settings.setdefault("purpose", "")
    return {
        "id": session_id or str(uuid.uuid4()),
        "candidateId": owner_id,
        "configuration": configuration,
        "questions": copy.deepcopy(questions or []),
        "responses": [],
        "metrics": None,
        "feedback": None,
        "status": "created",
        "startedAt": to_iso(now or utc_now()),
        "completedAt": None,
        "archived": False,
        "archivedAt": None,
    }


class SessionStore(ABC):
    """
    Transactional session storage. Every method acts atomically on whole records
    and returns copies, so callers never mutate stored state by accident.
    """

    @abstractmethod
    def get(self, session_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def save(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """Insert or replace a record (keyed by record["id"])."""
        pass

    @abstractmethod
    def update(self, session_id: str, mutate: Callable[[Dict[str, Any]], None]) -> Dict[str, Any]:
        """Apply mutate() to the stored record under the store's lock. Raises SessionNotFoundError."""
        pass

    @abstractmethod
    def delete(self, session_id: str) -> bool:
        pass

    @abstractmethod
    def list_by_owner(self, owner_id: str) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def list_owners(self) -> List[str]:
        pass

    def list_all(self) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for owner in self.list_owners():
            out.extend(self.list_by_owner(owner))
        return out


class InMemorySessionStore(SessionStore):

    def __init__(self):
        self._records: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.RLock()

    def get(self, session_id):
        with self._lock:
            record = self._records.get(session_id)
            return copy.deepcopy(record) if record is not None else None

    def save(self, record):
        if not record.get("id"):
            raise ValueError("record must have an id")
        with self._lock:
            self._records[record["id"]] = copy.deepcopy(record)
            return copy.deepcopy(record)

    def update(self, session_id, mutate):
        with self._lock:
            record = self._records.get(session_id)
            if record is None:
                raise SessionNotFoundError(session_id)
            working = copy.deepcopy(record)
            mutate(working)
            self._records[session_id] = working
            return copy.deepcopy(working)

    def delete(self, session_id):
        with self._lock:
            return self._records.pop(session_id, None) is not None

    def list_by_owner(self, owner_id):
        with self._lock:
            return [copy.deepcopy(r) for r in self._records.values() if r.get("candidateId") == owner_id]

    def list_owners(self):
        with self._lock:
            return sorted({r.get("candidateId") for r in self._records.values() if r.get("candidateId")})

    def list_all(self):
        with self._lock:
            return [copy.deepcopy(r) for r in self._records.values()]


class JsonFileSessionStore(InMemorySessionStore):
    """
    All records in one JSON file, loaded at construction and rewritten after
    every change. Writes go to a temp file first and replace the target with
    os.replace, so a crash mid-write leaves the previous file intact.
    """

    def __init__(self, path):
        super().__init__()
        self.path = Path(path)
        for record in self._load():
            if record.get("id"):
                self._records[record["id"]] = record

    def _load(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Cannot read session store {self.path}: {e}") from e
        if not isinstance(payload, list):
            raise StorageError(f"Session store {self.path} must contain a JSON list")
        return payload

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(list(self._records.values()), indent=2)
        fd, tmp = tempfile.mkstemp(dir=str(self.path.parent), prefix=".sessions-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp, self.path)
        except OSError as e:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise StorageError(f"Cannot write session store {self.path}: {e}") from e

    def save(self, record):
        with self._lock:
            previous = self._records.get(record.get("id"))
            saved = super().save(record)
            try:
                self._flush()
            except StorageError:
                self._restore(record["id"], previous)
                raise
            return saved

    def update(self, session_id, mutate):
        with self._lock:
            previous = self._records.get(session_id)
            updated = super().update(session_id, mutate)
            try:
                self._flush()
            except StorageError:
                self._restore(session_id, previous)
                raise
            return updated

    def delete(self, session_id):
        with self._lock:
            previous = self._records.get(session_id)
            removed = super().delete(session_id)
            if removed:
                try:
                    self._flush()
                except StorageError:
                    self._restore(session_id, previous)
                    raise
            return removed

    def _restore(self, session_id: str, previous: Optional[Dict[str, Any]]) -> None:
        if previous is None:
            self._records.pop(session_id, None)
        else:
            self._records[session_id] = previous


_session_store: Optional[SessionStore] = None
_store_lock = threading.Lock()


def get_session_store() -> SessionStore:
    """Process-wide store: JSON file when SESSION_STORE_PATH is set, else in memory."""
    global _session_store
    with _store_lock:
        if _session_store is None:
            if config.SESSION_STORE_PATH:
                _session_store = JsonFileSessionStore(config.SESSION_STORE_PATH)
                logger.info("Session store: %s", config.SESSION_STORE_PATH)
            else:
                _session_store = InMemorySessionStore()
        return _session_store


def set_session_store(store: Optional[SessionStore]) -> None:
    """Replace the process-wide store (tests, CLI with an explicit path)."""
    global _session_store
    with _store_lock:
        _session_store = store
