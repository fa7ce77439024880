"""Session-scoped key-value storage for reconciliation state.

Browser session storage is modelled as an injectable get/set/delete store.
InMemoryStore covers a single process; SQLAlchemyStore persists the same
slots per session so a pending correction survives a restart of the client.
"""
import threading
from datetime import datetime, timedelta, UTC
from typing import Dict, Optional, Protocol

from sqlalchemy import Column, DateTime, String, Text, create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()


def utc_now():
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class KeyValueStore(Protocol):
    """Minimal storage interface used by the pending-sync queue."""

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class InMemoryStore:
    """Thread-safe dict store. One instance per client session."""

    def __init__(self):
        self._data: Dict[str, str] = {}
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

    def clear(self) -> None:
        """Drop every slot (session ended)."""
        with self._lock:
            self._data.clear()


class SessionValue(Base):
    """One key-value slot belonging to one client session."""
    __tablename__ = "session_kv"

    session_id = Column(String(255), primary_key=True, index=True)
    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)

    def __repr__(self):
        return f"<SessionValue(session_id={self.session_id}, key={self.key})>"


class SQLAlchemyStore:
    """
    KeyValueStore backed by a SQL table, scoped to one session_id.

    Pattern: Thin wrapper around SQLAlchemy, same lifetime rules as browser
    session storage - rows are dropped when the session ends or expires.
    """

    def __init__(self, database_url: str, session_id: str, engine=None):
        """
        Args:
            database_url: SQLAlchemy connection string
            session_id: Client session the slots belong to
            engine: Existing engine to share between sessions (optional)
        """
        self.engine = engine or create_engine(database_url, pool_pre_ping=True)
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine)
        self.session_id = session_id

    def get(self, key: str) -> Optional[str]:
        with self.SessionLocal() as db:
            row = db.get(SessionValue, (self.session_id, key))
            return row.value if row else None

    def set(self, key: str, value: str) -> None:
        with self.SessionLocal() as db:
            row = db.get(SessionValue, (self.session_id, key))
            if row:
                row.value = value
                row.updated_at = utc_now()
            else:
                db.add(SessionValue(session_id=self.session_id, key=key, value=value))
            db.commit()

    def delete(self, key: str) -> None:
        with self.SessionLocal() as db:
            db.query(SessionValue).filter(
                SessionValue.session_id == self.session_id,
                SessionValue.key == key
            ).delete()
            db.commit()

    def clear_session(self) -> int:
        """
        Delete every slot of this session (logout / session end).

        Returns:
            Number of deleted rows
        """
        with self.SessionLocal() as db:
            deleted = db.query(SessionValue).filter(
                SessionValue.session_id == self.session_id
            ).delete()
            db.commit()
        return deleted

    def cleanup_expired_sessions(self, max_age_hours: int = 48) -> int:
        """
        Delete slots of any session not touched for max_age_hours.

        Returns:
            Number of deleted rows
        """
        cutoff_time = utc_now() - timedelta(hours=max_age_hours)

        with self.SessionLocal() as db:
            deleted = db.query(SessionValue).filter(
                SessionValue.updated_at < cutoff_time
            ).delete()
            db.commit()

        return deleted

    def _touch(self, key: str, timestamp: datetime):
        """Helper for testing - manually set updated_at."""
        with self.SessionLocal() as db:
            row = db.get(SessionValue, (self.session_id, key))
            if row:
                row.updated_at = timestamp
                db.commit()
