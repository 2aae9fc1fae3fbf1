"""
Retention Policy Engine

Classifies stored sessions into keep / archive / delete by age and by a
per-owner session cap, applies the result to the session store, and reports
storage and archive statistics.

Classification rules (age = now - startedAt, in days):
  - age >= deleteAfter                      -> delete
  - age >= archiveAfter or age >= maxAge    -> archive
  - already archived                        -> archive
  - otherwise                               -> keep
  Then, per owner, the oldest "keep" sessions beyond maxSessions move to archive.
  Sessions without a parseable startedAt are kept.

Cleanup runs are idempotent: re-running with the same policy and clock
archives and deletes nothing new. Callers serialize cleanup per owner.
"""

import json
import logging
import threading
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

import config
from services.data_export import ExportOptions, export_user_data
from services.session_store import SessionStore, get_session_store, parse_iso, to_iso, utc_now

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400.0


@dataclass
class RetentionPolicy:
    """Day counts. archiveAfter < deleteAfter < maxAge is expected, not enforced."""
    max_age: float = 365
    max_sessions: int = 100
    archive_after: float = 90
    delete_after: float = 730

    _WIRE_NAMES = {
        "maxAge": "max_age",
        "maxSessions": "max_sessions",
        "archiveAfter": "archive_after",
        "deleteAfter": "delete_after",
    }

    @classmethod
    def default(cls) -> "RetentionPolicy":
        return cls.from_dict(config.get_default_retention_policy(), base=cls())

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]], base: Optional["RetentionPolicy"] = None) -> "RetentionPolicy":
        """
        Build a policy from wire keys, merged over base (the configured defaults
        when omitted). Unknown keys and non-numeric or negative values raise ValueError.
        """
        policy = base if base is not None else cls.default()
        if not data:
            return policy
        if not isinstance(data, dict):
            raise ValueError("policy must be an object")
        unknown = sorted(set(data) - set(cls._WIRE_NAMES))
        if unknown:
            raise ValueError(f"Unknown policy fields: {', '.join(unknown)}")
        values = {f.name: getattr(policy, f.name) for f in fields(cls)}
        for wire, attr in cls._WIRE_NAMES.items():
            if wire not in data:
                continue
            value = data[wire]
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"{wire} must be a number")
            values[attr] = int(value) if attr == "max_sessions" else value
        result = cls(**values)
        result.validate()
        return result

    def validate(self) -> None:
        for wire, attr in self._WIRE_NAMES.items():
            if getattr(self, attr) < 0:
                raise ValueError(f"{wire} must not be negative")
        if self.archive_after >= self.delete_after:
            logger.warning(
                "Retention policy archives at %s days but deletes at %s days; sessions will be deleted without archiving",
                self.archive_after, self.delete_after,
            )

    def to_dict(self) -> Dict[str, Any]:
        return {wire: getattr(self, attr) for wire, attr in self._WIRE_NAMES.items()}


@dataclass
class Classification:
    keep: List[Dict[str, Any]] = field(default_factory=list)
    archive: List[Dict[str, Any]] = field(default_factory=list)
    delete: List[Dict[str, Any]] = field(default_factory=list)

    def ids(self) -> Dict[str, List[str]]:
        return {
            "keep": [s["id"] for s in self.keep],
            "archive": [s["id"] for s in self.archive],
            "delete": [s["id"] for s in self.delete],
        }


def session_age_days(session: Dict[str, Any], now: datetime) -> Optional[float]:
    started = parse_iso(session.get("startedAt"))
    if started is None:
        return None
    return (parse_iso(now) - started).total_seconds() / SECONDS_PER_DAY


def classify(sessions: Iterable[Dict[str, Any]], policy: RetentionPolicy, now: datetime) -> Classification:
    """Partition sessions into keep/archive/delete; every session lands in exactly one bucket."""
    # Naive "now" is UTC, matching parse_iso.
    now = parse_iso(now)
    result = Classification()
    archive_threshold = min(policy.archive_after, policy.max_age)
    for session in sessions:
        age = session_age_days(session, now)
        if age is None:
            result.keep.append(session)
        elif age >= policy.delete_after:
            result.delete.append(session)
        elif age >= archive_threshold or session.get("archived"):
            result.archive.append(session)
        else:
            result.keep.append(session)

    by_owner: Dict[Any, List[Dict[str, Any]]] = {}
    for session in result.keep:
        by_owner.setdefault(session.get("candidateId"), []).append(session)
    overflow_ids = set()
    for owned in by_owner.values():
        excess = len(owned) - max(0, int(policy.max_sessions))
        if excess <= 0:
            continue
        # Unparseable dates sort as oldest so they are capped first.
        owned.sort(key=lambda s: parse_iso(s.get("startedAt")) or datetime.min.replace(tzinfo=now.tzinfo))
        overflow_ids.update(s["id"] for s in owned[:excess])
    if overflow_ids:
        result.archive.extend(s for s in result.keep if s["id"] in overflow_ids)
        result.keep = [s for s in result.keep if s["id"] not in overflow_ids]
    return result


def record_size(record: Dict[str, Any]) -> int:
    """UTF-8 byte length of the record's compact JSON."""
    return len(json.dumps(record, separators=(",", ":"), ensure_ascii=False).encode("utf-8"))


def compute_storage_stats(sessions: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    sessions = list(sessions)
    dates = sorted(d for d in (parse_iso(s.get("startedAt")) for s in sessions) if d is not None)
    return {
        "totalSessions": len(sessions),
        "activeSessions": sum(1 for s in sessions if s.get("status") != "abandoned"),
        "archivedSessions": sum(1 for s in sessions if s.get("archived")),
        "storageUsed": sum(record_size(s) for s in sessions),
        "oldestSession": to_iso(dates[0]) if dates else None,
        "newestSession": to_iso(dates[-1]) if dates else None,
    }


class RetentionEngine:
    """Applies retention to a SessionStore and remembers the last cleanup run."""

    def __init__(self, store: Optional[SessionStore] = None, clock: Callable[[], datetime] = utc_now):
        self.store = store if store is not None else get_session_store()
        self._clock = clock
        self._lock = threading.Lock()
        self.last_cleanup: Optional[datetime] = None
        self.last_deleted = 0

    def plan(self, owner_id: str, policy: RetentionPolicy, now: Optional[datetime] = None) -> Classification:
        return classify(self.store.list_by_owner(owner_id), policy, now or self._clock())

    def apply_retention_policy(
        self,
        owner_id: str,
        policy: Optional[RetentionPolicy] = None,
        now: Optional[datetime] = None,
        dry_run: bool = False,
    ) -> Dict[str, Any]:
        """
        Archive and delete one owner's sessions. Per-session failures are
        collected in "errors" and do not stop the batch.
        """
        policy = policy or RetentionPolicy.default()
        now = now or self._clock()
        plan = self.plan(owner_id, policy, now)
        results = {"archived": 0, "deleted": 0, "errors": []}

        for session in plan.delete:
            if dry_run:
                results["deleted"] += 1
                continue
            try:
                if self.store.delete(session["id"]):
                    results["deleted"] += 1
            except Exception as e:
                results["errors"].append(f"Failed to delete session {session['id']}: {e}")

        archived_at = to_iso(now)
        for session in plan.archive:
            if session.get("archived"):
                continue
            if dry_run:
                results["archived"] += 1
                continue
            try:
                self.store.update(session["id"], lambda r: r.update(archived=True, archivedAt=archived_at))
                results["archived"] += 1
            except Exception as e:
                results["errors"].append(f"Failed to archive session {session['id']}: {e}")

        logger.info(
            "Retention for %s%s: archived=%d deleted=%d errors=%d",
            owner_id, " (dry run)" if dry_run else "", results["archived"], results["deleted"], len(results["errors"]),
        )
        return results

    def run_global_cleanup(
        self,
        policy: Optional[RetentionPolicy] = None,
        now: Optional[datetime] = None,
        dry_run: bool = False,
    ) -> Dict[str, Any]:
        """Apply the policy to every owner. One owner's failure never aborts the run."""
        policy = policy or RetentionPolicy.default()
        now = now or self._clock()
        results = {"usersProcessed": 0, "totalArchived": 0, "totalDeleted": 0, "errors": []}
        for owner_id in self.store.list_owners():
            try:
                owner_results = self.apply_retention_policy(owner_id, policy, now=now, dry_run=dry_run)
            except Exception as e:
                logger.error("Retention failed for %s: %s", owner_id, e)
                results["errors"].append(f"User {owner_id}: {e}")
                continue
            results["usersProcessed"] += 1
            results["totalArchived"] += owner_results["archived"]
            results["totalDeleted"] += owner_results["deleted"]
            results["errors"].extend(f"User {owner_id}: {err}" for err in owner_results["errors"])
        if not dry_run:
            with self._lock:
                self.last_cleanup = now
                self.last_deleted = results["totalDeleted"]
        return results

    def get_user_storage_stats(self, owner_id: str) -> Dict[str, Any]:
        return compute_storage_stats(self.store.list_by_owner(owner_id))

    def get_archive_stats(self) -> Dict[str, Any]:
        """Computed on every call; deletedSessions is the total from the last cleanup run."""
        sessions = self.store.list_all()
        with self._lock:
            last_cleanup, last_deleted = self.last_cleanup, self.last_deleted
        return {
            "totalSessions": len(sessions),
            "archivedSessions": sum(1 for s in sessions if s.get("archived")),
            "deletedSessions": last_deleted,
            "storageUsed": sum(record_size(s) for s in sessions),
            "lastCleanup": to_iso(last_cleanup),
        }

    def _archived_for(self, owner_id: str, session_ids: Optional[List[str]]) -> List[Dict[str, Any]]:
        wanted = set(session_ids) if session_ids else None
        return [
            s for s in self.store.list_by_owner(owner_id)
            if s.get("archived") and (wanted is None or s["id"] in wanted)
        ]

    def restore_archived_sessions(self, owner_id: str, session_ids: Optional[List[str]] = None) -> Dict[str, Any]:
        results = {"restored": 0, "errors": []}
        for session in self._archived_for(owner_id, session_ids):
            try:
                self.store.update(session["id"], lambda r: r.update(archived=False, archivedAt=None))
                results["restored"] += 1
            except Exception as e:
                results["errors"].append(f"Failed to restore session {session['id']}: {e}")
        return results

    def delete_archived_sessions(self, owner_id: str, session_ids: Optional[List[str]] = None) -> Dict[str, Any]:
        results = {"deleted": 0, "errors": []}
        for session in self._archived_for(owner_id, session_ids):
            try:
                if self.store.delete(session["id"]):
                    results["deleted"] += 1
            except Exception as e:
                results["errors"].append(f"Failed to delete session {session['id']}: {e}")
        return results

    def export_user_data(self, owner_id: str, options: ExportOptions, now: Optional[datetime] = None) -> Dict[str, Any]:
        sessions = sorted(self.store.list_by_owner(owner_id), key=lambda s: s.get("startedAt") or "")
        return export_user_data(sessions, options, now=now or self._clock())


_retention_engine: Optional[RetentionEngine] = None
_engine_lock = threading.Lock()


def get_retention_engine() -> RetentionEngine:
    global _retention_engine
    with _engine_lock:
        if _retention_engine is None:
            _retention_engine = RetentionEngine()
        return _retention_engine


def set_retention_engine(engine: Optional[RetentionEngine]) -> None:
    global _retention_engine
    with _engine_lock:
        _retention_engine = engine
