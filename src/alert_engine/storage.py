"""Key-value persistence for preferences, dismissal patterns and analytics.

The engine only needs get / set / delete / prefix listing of JSON records.
``InMemoryKeyValueStore`` is the default; ``SqlKeyValueStore`` keeps the
records in a single SQLAlchemy table.
"""

import json
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

from sqlalchemy import Column, DateTime, String, Text, create_engine, select
from sqlalchemy.orm import declarative_base, sessionmaker

logger = logging.getLogger(__name__)

Base = declarative_base()


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[Any]: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> bool: ...

    def keys(self, prefix: str = "") -> list[str]: ...


class InMemoryKeyValueStore:
    """Thread-safe dict-backed store. Values are stored as JSON text."""

    def __init__(self):
        self._data: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    def set(self, key: str, value: Any) -> None:
        raw = json.dumps(value, default=str)
        with self._lock:
            self._data[key] = raw

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))


class KeyValueRecord(Base):
    """One JSON record in the engine's key-value table."""

    __tablename__ = "alert_engine_kv"

    key = Column(String(255), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )


class SqlKeyValueStore:
    """SQLAlchemy-backed key-value store.

    Args:
        url: Database URL, e.g. ``sqlite:///alert_engine.db``.
        engine: An existing engine; takes precedence over ``url``.
    """

    def __init__(self, url: str = "sqlite://", engine=None):
        self._engine = engine or create_engine(url, pool_pre_ping=True)
        Base.metadata.create_all(self._engine)
        self._session_factory = sessionmaker(bind=self._engine, expire_on_commit=False)

    def get(self, key: str) -> Optional[Any]:
        with self._session_factory() as session:
            record = session.get(KeyValueRecord, key)
            return json.loads(record.value) if record is not None else None

    def set(self, key: str, value: Any) -> None:
        raw = json.dumps(value, default=str)
        with self._session_factory() as session:
            record = session.get(KeyValueRecord, key)
            if record is None:
                session.add(KeyValueRecord(key=key, value=raw))
            else:
                record.value = raw
            session.commit()

    def delete(self, key: str) -> bool:
        with self._session_factory() as session:
            record = session.get(KeyValueRecord, key)
            if record is None:
                return False
            session.delete(record)
            session.commit()
            return True

    def keys(self, prefix: str = "") -> list[str]:
        with self._session_factory() as session:
            stmt = select(KeyValueRecord.key).where(KeyValueRecord.key.startswith(prefix))
            return sorted(session.scalars(stmt).all())
