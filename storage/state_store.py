"""
Storage - State Store.

============================================================
RESPONSIBILITY
============================================================
Persists engine state (registry records, tombstones, sync
vectors) across restarts.

- JsonFileStateStore: single JSON document, atomic replace
- SqlStateStore: one row per state section via SQLAlchemy
- create_state_store: pick a backend from StorageConfig

Stores are synchronous. The engine calls them off the event
loop.

============================================================
"""

import json
import logging
import os
import tempfile
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Generator, Optional, Protocol

from sqlalchemy import DateTime, Integer, String, Text, create_engine, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from core.constants import STATE_FORMAT_VERSION
from core.exceptions import ConfigurationError, StateStoreError
from orchestrator.config import StorageConfig


logger = logging.getLogger(__name__)


class StateStore(Protocol):
    """Load and save the engine's serializable state."""

    def load(self) -> Optional[Dict[str, Any]]:
        """Return the saved state, or None if nothing was saved yet."""
        ...

    def save(self, state: Dict[str, Any]) -> None:
        ...


# ============================================================
# JSON FILE
# ============================================================

class JsonFileStateStore:
    """State as one JSON file, written through a temp file and os.replace."""

    def __init__(self, path: str):
        self._path = path

    @property
    def path(self) -> str:
        return self._path

    def load(self) -> Optional[Dict[str, Any]]:
        if not os.path.exists(self._path):
            return None
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                state = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StateStoreError(f"Cannot read state from {self._path}: {e}", cause=e) from e
        if not isinstance(state, dict):
            raise StateStoreError(f"State file {self._path} does not contain an object")
        logger.info(f"Loaded state from {self._path}")
        return state

    def save(self, state: Dict[str, Any]) -> None:
        directory = os.path.dirname(os.path.abspath(self._path))
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=".state-", suffix=".json", dir=directory)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(state, f, indent=2, sort_keys=True)
                os.replace(tmp_path, self._path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except (OSError, TypeError, ValueError) as e:
            raise StateStoreError(f"Cannot write state to {self._path}: {e}", cause=e) from e
        logger.info(f"Saved state to {self._path}")


# ============================================================
# SQL
# ============================================================

class Base(DeclarativeBase):
    type_annotation_map = {
        datetime: DateTime(timezone=True),
    }


class StateSection(Base):
    """One top-level section of engine state, stored as JSON text."""

    __tablename__ = "orchestrator_state"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    format_version: Mapped[int] = mapped_column(Integer, nullable=False, default=STATE_FORMAT_VERSION)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )


class SqlStateStore:
    """State in a relational database (SQLite by default)."""

    def __init__(self, url: str, echo: bool = False):
        self._url = url
        try:
            self._engine = create_engine(url, echo=echo, future=True)
            Base.metadata.create_all(self._engine)
        except SQLAlchemyError as e:
            raise StateStoreError(f"Cannot open state database: {e}", cause=e) from e
        self._sessions = sessionmaker(
            bind=self._engine,
            autoflush=False,
            expire_on_commit=False,
        )

    @contextmanager
    def _transaction(self) -> Generator[Session, None, None]:
        session = self._sessions()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            logger.error(f"State transaction failed, rolling back: {e}")
            session.rollback()
            raise StateStoreError(f"State transaction failed: {e}", cause=e) from e
        finally:
            session.close()

    def load(self) -> Optional[Dict[str, Any]]:
        with self._transaction() as session:
            rows = session.scalars(select(StateSection)).all()
            if not rows:
                return None
            try:
                state = {row.key: json.loads(row.payload) for row in rows}
            except json.JSONDecodeError as e:
                raise StateStoreError(f"Corrupt state row: {e}", cause=e) from e
        logger.info(f"Loaded {len(state)} state sections from database")
        return state

    def save(self, state: Dict[str, Any]) -> None:
        try:
            encoded = {key: json.dumps(value, sort_keys=True) for key, value in state.items()}
        except (TypeError, ValueError) as e:
            raise StateStoreError(f"State is not serializable: {e}", cause=e) from e

        with self._transaction() as session:
            existing = {row.key: row for row in session.scalars(select(StateSection)).all()}
            now = datetime.now(timezone.utc)
            for key, payload in encoded.items():
                row = existing.pop(key, None)
                if row is None:
                    session.add(StateSection(key=key, payload=payload, updated_at=now))
                else:
                    row.payload = payload
                    row.format_version = STATE_FORMAT_VERSION
                    row.updated_at = now
            for row in existing.values():
                session.delete(row)
        logger.info(f"Saved {len(encoded)} state sections to database")

    def close(self) -> None:
        self._engine.dispose()


# ============================================================
# FACTORY
# ============================================================

def create_state_store(config: StorageConfig):
    """
    Build the configured store.

    Returns:
        A StateStore, or None when persistence is disabled
    """
    backend = config.backend.lower()
    if backend == "none":
        return None
    if backend == "json":
        return JsonFileStateStore(config.path)
    if backend == "sql":
        return SqlStateStore(config.url)
    raise ConfigurationError(f"Unknown storage backend: {config.backend}", config_key="storage.backend")


__all__ = [
    "StateStore",
    "JsonFileStateStore",
    "StateSection",
    "SqlStateStore",
    "create_state_store",
]
