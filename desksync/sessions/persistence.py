"""
Durable persistence adapter — all sessions under one namespaced key.

Writes are capped at a fixed number of sessions. When the medium reports
that it is full, save() walks an ordered list of strategies:

  1. keep the newest `max_sessions` sessions (the normal write)
  2. keep half as many and strip full events from all but the last
     few (emits storage-quota-warning)
  3. remove the key entirely (emits storage-quota-error)

Each strategy returns True on success; the first success ends the walk.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..core import notifications
from ..core.errors import QuotaExceededError, StorageError
from ..core.models import SCHEMA_VERSION, StoredSession, now_ms
from ..core.notifications import NotificationBus
from ..core.storage import KeyValueStorage
from .naming import ordinal_name

logger = logging.getLogger(__name__)

SESSION_STORAGE_KEY = "ai-agent-sessions"
MAX_SESSIONS = 50
FULL_EVENT_SESSIONS = 5

_PROBE_KEY = "__desksync_probe__"

QUOTA_WARNING_MESSAGE = "Storage quota exceeded. Some older session data was removed to free space."
QUOTA_ERROR_MESSAGE = "Storage quota exceeded. All session data was cleared."


class SessionPersistence:
    def __init__(
        self,
        storage: Optional[KeyValueStorage],
        *,
        key: str = SESSION_STORAGE_KEY,
        version: str = SCHEMA_VERSION,
        max_sessions: int = MAX_SESSIONS,
        full_event_sessions: int = FULL_EVENT_SESSIONS,
        notifier: Optional[NotificationBus] = None,
    ):
        self.storage = storage
        self.key = key
        self.version = version
        self.max_sessions = max(1, max_sessions)
        self.full_event_sessions = max(0, full_event_sessions)
        self.notifier = notifier or NotificationBus()
        self._available: Optional[bool] = None

        self.strategies: List[Callable[[Sequence[StoredSession]], bool]] = [
            self._save_limited,
            self._save_reduced,
            self._clear_all,
        ]

    # ── Availability ──────────────────────────────────────────────────────

    def is_available(self) -> bool:
        """Probe the medium once; a missing medium is not an error."""
        if self._available is not None:
            return self._available
        if self.storage is None:
            self._available = False
            return False
        try:
            self.storage.set_item(_PROBE_KEY, _PROBE_KEY)
            self.storage.remove_item(_PROBE_KEY)
            self._available = True
        except QuotaExceededError:
            # Full, but present.
            self._available = True
        except (StorageError, OSError) as e:
            logger.warning(f"Session storage unavailable: {e}")
            self._available = False
        return self._available

    # ── Read ──────────────────────────────────────────────────────────────

    def load(self) -> List[StoredSession]:
        if not self.is_available():
            logger.warning("Session storage is not available")
            return []

        try:
            raw = self.storage.get_item(self.key)
        except StorageError as e:
            logger.error(f"Failed to read sessions: {e}")
            return []
        if not raw:
            return []

        try:
            records = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse stored sessions: {e}")
            return []
        if not isinstance(records, list):
            logger.error(f"Stored sessions under {self.key!r} are not a list")
            return []

        sessions: List[StoredSession] = []
        for index, record in enumerate(records):
            if not isinstance(record, dict):
                logger.warning(f"Dropping malformed session record at position {index}")
                continue
            if record.get("schemaVersion") != self.version:
                record = self.migrate(record, index)
            try:
                sessions.append(StoredSession.from_dict(record))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Dropping unreadable session record at position {index}: {e}")
        return sessions

    def migrate(self, record: Dict[str, Any], index: int = 0) -> Dict[str, Any]:
        """Upgrade a record to the current schema, filling absent fields."""
        now = now_ms()
        events = record.get("events") if isinstance(record.get("events"), list) else []
        event_ids = record.get("eventIds")
        if not isinstance(event_ids, list):
            event_ids = [e["id"] for e in events if isinstance(e, dict) and e.get("id")]

        migrated = {
            "id": record.get("id") or str(uuid.uuid4()),
            "name": record.get("name") or ordinal_name(index),
            "createdAt": record.get("createdAt") or now,
            "updatedAt": record.get("updatedAt") or now,
            "messages": record.get("messages") if isinstance(record.get("messages"), list) else [],
            "events": events,
            "eventIds": event_ids,
            "sandboxId": record.get("sandboxId") or None,
            "schemaVersion": self.version,
        }
        logger.debug(
            f"Migrated session {migrated['id']} from "
            f"{record.get('schemaVersion') or record.get('version') or 'unversioned'} to {self.version}"
        )
        return migrated

    def get(self, session_id: str) -> Optional[StoredSession]:
        for session in self.load():
            if session.id == session_id:
                return session
        return None

    # ── Write ─────────────────────────────────────────────────────────────

    def save(self, sessions: Sequence[StoredSession]) -> bool:
        """Persist the full list. Returns False when nothing could be written."""
        if not self.is_available():
            logger.warning("Session storage is not available; save skipped")
            return False

        sessions = list(sessions)
        for strategy in self.strategies:
            try:
                if strategy(sessions):
                    return True
            except StorageError as e:
                logger.error(f"Failed to save sessions: {e}")
                return False
        return False

    def save_one(self, session: StoredSession) -> bool:
        session = replace(session, updated_at=now_ms())
        sessions = self.load()
        for i, existing in enumerate(sessions):
            if existing.id == session.id:
                sessions[i] = session
                break
        else:
            sessions.append(session)
        return self.save(sessions)

    def delete(self, session_id: str) -> bool:
        sessions = self.load()
        remaining = [s for s in sessions if s.id != session_id]
        if len(remaining) == len(sessions):
            return False
        return self.save(remaining)

    def clear(self) -> None:
        if not self.is_available():
            return
        try:
            self.storage.remove_item(self.key)
        except StorageError as e:
            logger.error(f"Failed to clear sessions: {e}")

    # ── Strategies ────────────────────────────────────────────────────────

    def _write(self, sessions: Sequence[StoredSession]) -> None:
        payload = json.dumps([s.to_dict() for s in sessions], ensure_ascii=False)
        self.storage.set_item(self.key, payload)

    def _save_limited(self, sessions: Sequence[StoredSession]) -> bool:
        try:
            self._write(sessions[-self.max_sessions:])
            return True
        except QuotaExceededError:
            logger.warning("Storage quota exceeded, attempting to preserve recent sessions")
            return False

    def _save_reduced(self, sessions: Sequence[StoredSession]) -> bool:
        keep = list(sessions[-max(1, self.max_sessions // 2):])
        # Most recently touched sessions keep their events; ties go to the later position.
        by_recency = sorted(range(len(keep)), key=lambda i: (keep[i].updated_at, i), reverse=True)
        full = set(by_recency[:max(0, self.full_event_sessions)])
        reduced = [
            s if i in full else replace(s, events=[], event_ids=list(s.event_ids))
            for i, s in enumerate(keep)
        ]
        try:
            self._write(reduced)
        except QuotaExceededError:
            logger.error("Failed to save sessions even after removing old event data")
            return False
        self.notifier.emit(
            notifications.STORAGE_QUOTA_WARNING,
            QUOTA_WARNING_MESSAGE,
            kept=len(reduced),
            dropped=len(sessions) - len(reduced),
        )
        return True

    def _clear_all(self, sessions: Sequence[StoredSession]) -> bool:
        self.storage.remove_item(self.key)
        logger.error(f"Cleared all persisted sessions ({len(sessions)} could not be stored)")
        self.notifier.emit(notifications.STORAGE_QUOTA_ERROR, QUOTA_ERROR_MESSAGE)
        return True
