"""
Repository pattern for data access.

Handles key-value persistence and the chat history, profile and usage
record repositories layered on top of it.
"""

import json
import logging
import threading
from datetime import datetime
from typing import Dict, List, Optional, Protocol

from .db import DEFAULT_DB_PATH, get_connection
from .models import CharacterProfile, Message, UsageRecord

logger = logging.getLogger(__name__)

CHAT_PREFIX = "velvet_ai_chat_"
USAGE_KEY = "velvet_api_usage"
PROFILES_KEY = "velvet_ai_profiles"
HISTORY_LIMIT = 50


class KeyValueStore(Protocol):
    """String key-value collaborator used for all persistence."""

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the kv_store table if it doesn't exist.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS kv_store (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        conn.commit()
    finally:
        conn.close()


class SQLiteKeyValueStore:
    """Key-value store backed by a single SQLite table.

    A connection is opened per operation, the same way the usage
    ledger functions do it, so the store is safe to share between
    threads.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the store and make sure the schema exists.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        initialize_schema(db_path)

    def get(self, key: str) -> Optional[str]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT value FROM kv_store WHERE key = ?", (key,)
            ).fetchone()
            return row[0] if row else None
        finally:
            conn.close()

    def set(self, key: str, value: str) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO kv_store (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
            """, (key, value, datetime.now().isoformat()))
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def delete(self, key: str) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            conn.commit()
        finally:
            conn.close()


class InMemoryKeyValueStore:
    """Process-local key-value store, used for tests and ephemeral runs."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)


class HistoryStore:
    """Repository for per-profile conversation history.

    Histories are stored oldest first and capped to the most recent
    ``limit`` messages on every write.
    """

    def __init__(self, store: KeyValueStore, limit: int = HISTORY_LIMIT):
        if limit <= 0:
            raise ValueError("limit must be > 0")
        self.store = store
        self.limit = limit

    @staticmethod
    def _key(profile_id: str) -> str:
        if not profile_id or not profile_id.strip():
            raise ValueError("profile_id is required and cannot be empty")
        return f"{CHAT_PREFIX}{profile_id}"

    def get(self, profile_id: str) -> List[Message]:
        """Load a profile's history, oldest first.

        Unreadable payloads are logged and treated as an empty history.
        """
        raw = self.store.get(self._key(profile_id))
        if not raw:
            return []
        try:
            messages = [Message.from_dict(item) for item in json.loads(raw)]
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.error(f"Failed to read chat history for {profile_id}: {e}")
            return []
        return messages[-self.limit:]

    def put(self, profile_id: str, messages: List[Message]) -> None:
        """Overwrite a profile's history with the capped tail of ``messages``."""
        truncated = list(messages)[-self.limit:]
        payload = json.dumps([m.to_dict() for m in truncated], ensure_ascii=False)
        self.store.set(self._key(profile_id), payload)

    def delete(self, profile_id: str) -> None:
        """Remove a profile's history entirely."""
        self.store.delete(self._key(profile_id))


class ProfileStore:
    """Repository for character profiles.

    All profiles live in one JSON list under ``key``. Deleting a profile
    also deletes its conversation history.
    """

    def __init__(
        self,
        store: KeyValueStore,
        history_store: Optional[HistoryStore] = None,
        key: str = PROFILES_KEY
    ):
        self.store = store
        self.history_store = history_store or HistoryStore(store)
        self.key = key

    def list_all(self) -> List[CharacterProfile]:
        """Load every profile, newest first.

        An unreadable payload is logged and treated as no profiles.
        """
        raw = self.store.get(self.key)
        if not raw:
            return []
        try:
            profiles = [CharacterProfile.from_dict(item) for item in json.loads(raw)]
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.error(f"Failed to read character profiles: {e}")
            return []
        return sorted(profiles, key=lambda p: p.created_at, reverse=True)

    def get(self, profile_id: str) -> Optional[CharacterProfile]:
        for profile in self.list_all():
            if profile.id == profile_id:
                return profile
        return None

    def save(self, profile: CharacterProfile) -> None:
        """Insert a new profile or replace the one with the same id."""
        profiles = self.list_all()
        for index, existing in enumerate(profiles):
            if existing.id == profile.id:
                profiles[index] = profile
                break
        else:
            profiles.insert(0, profile)
        self._write(profiles)

    def delete(self, profile_id: str) -> None:
        """Remove a profile and its conversation history."""
        profiles = [p for p in self.list_all() if p.id != profile_id]
        self._write(profiles)
        self.history_store.delete(profile_id)
        logger.info(f"Deleted profile {profile_id} and its history")

    def _write(self, profiles: List[CharacterProfile]) -> None:
        payload = json.dumps([p.to_dict() for p in profiles], ensure_ascii=False)
        self.store.set(self.key, payload)


class KeyValueUsageStore:
    """Persistence for the single process-wide usage record."""

    def __init__(self, store: KeyValueStore, key: str = USAGE_KEY):
        self.store = store
        self.key = key

    def load(self) -> Optional[UsageRecord]:
        """Load the stored record, or None when missing or unreadable."""
        raw = self.store.get(self.key)
        if not raw:
            return None
        try:
            return UsageRecord.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Discarding unreadable usage record: {e}")
            return None

    def save(self, record: UsageRecord) -> None:
        self.store.set(self.key, json.dumps(record.to_dict()))
