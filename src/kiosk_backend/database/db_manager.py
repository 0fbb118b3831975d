"""
Kiosk Database
==============
SQLite storage for the attendance blobs and the tunable kiosk settings.

Features:
- One engine per kiosk, file-backed (WAL) or in-memory
- Tables created on first use
- system_config seeded from DEFAULT_CONFIG, never overwriting operator edits
"""

import os
import logging
from pathlib import Path
from datetime import datetime
from typing import Callable, Optional, Generator, TypeVar
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from .models import Base, StorageBlob, SystemConfig, DEFAULT_CONFIG

logger = logging.getLogger(__name__)

IN_MEMORY = ":memory:"

# Kiosks with a read-only install dir point this somewhere writable
DATABASE_PATH = Path(os.environ.get("KIOSK_DB_PATH", Path.cwd() / "attendance_kiosk.db"))

T = TypeVar("T")


class DatabaseManager:
    """
    Owns the engine and hands out sessions.

    Usage:
        db = DatabaseManager(":memory:")
        with db.get_session() as session:
            session.query(StorageBlob).count()
        threshold = db.get_config_float("pixel_match_threshold", 0.8)
    """

    def __init__(self, db_path: Optional[Path] = None, echo: bool = False):
        """
        Args:
            db_path: SQLite file, or ":memory:". Defaults to DATABASE_PATH.
            echo: Log every SQL statement.
        """
        self.db_path = db_path or DATABASE_PATH
        self.echo = echo
        self.engine: Optional[Engine] = None
        self.SessionLocal = None
        self._initialized = False

    @property
    def in_memory(self) -> bool:
        return str(self.db_path) == IN_MEMORY

    def _build_engine(self) -> Engine:
        if self.in_memory:
            url = "sqlite://"
        else:
            self.db_path = Path(self.db_path)
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            url = f"sqlite:///{self.db_path}"

        # The API hands sessions to worker threads; one shared connection
        # also keeps an in-memory database alive between sessions.
        engine = create_engine(
            url,
            echo=self.echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool
        )

        if not self.in_memory:
            @event.listens_for(engine, "connect")
            def enable_wal(dbapi_connection, connection_record):
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.close()

        return engine

    def initialize(self) -> bool:
        """
        Open the database, create missing tables and seed defaults.

        Returns:
            False if the database could not be opened (the error is logged)
        """
        try:
            self.engine = self._build_engine()
            self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
            Base.metadata.create_all(bind=self.engine)

            self._initialized = True
            self._seed_default_config()
            logger.info(f"Kiosk database ready at: {self.db_path}")
            return True

        except Exception as e:
            logger.error(f"Could not open kiosk database {self.db_path}: {e}")
            self._initialized = False
            return False

    def _seed_default_config(self):
        with self.get_session() as session:
            present = {key for (key,) in session.query(SystemConfig.key)}
            missing = [key for key in DEFAULT_CONFIG if key not in present]
            for key in missing:
                value, description = DEFAULT_CONFIG[key]
                session.add(SystemConfig(key=key, value=value, description=description))
            session.commit()
            if missing:
                logger.info(f"Seeded {len(missing)} default settings")

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        Session scope; rolls back and re-raises on error.
        Opens the database on first use.
        """
        if not self._initialized and not self.initialize():
            raise RuntimeError(f"Database at {self.db_path} could not be initialized")

        session = self.SessionLocal()
        try:
            yield session
        except Exception as e:
            session.rollback()
            logger.error(f"Database session error: {e}")
            raise
        finally:
            session.close()

    # ============== Settings ==============

    def get_config(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with self.get_session() as session:
            row = session.get(SystemConfig, key)
            return row.value if row else default

    def _get_typed(self, key: str, parse: Callable[[str], T], default: T) -> T:
        value = self.get_config(key)
        if not value:
            return default
        try:
            return parse(value)
        except ValueError:
            logger.warning(f"Setting {key}={value!r} is not valid, using {default}")
            return default

    def get_config_int(self, key: str, default: int = 0) -> int:
        return self._get_typed(key, int, default)

    def get_config_float(self, key: str, default: float = 0.0) -> float:
        return self._get_typed(key, float, default)

    def get_config_bool(self, key: str, default: bool = False) -> bool:
        value = self.get_config(key)
        if value is None:
            return default
        return value.strip().lower() in ('true', '1', 'yes', 'on')

    def set_config(self, key: str, value: str, description: Optional[str] = None):
        """Create or overwrite a setting. Takes effect for pipelines built afterwards."""
        with self.get_session() as session:
            row = session.get(SystemConfig, key)
            if row is None:
                session.add(SystemConfig(key=key, value=value, description=description))
            else:
                row.value = value
                row.updated_at = datetime.utcnow()
                if description:
                    row.description = description
            session.commit()
        logger.info(f"Setting changed: {key}={value}")

    # ============== Housekeeping ==============

    def get_stats(self) -> dict:
        """Blob sizes (characters) and the number of settings."""
        with self.get_session() as session:
            return {
                "database_path": str(self.db_path),
                "blobs": {key: len(value) for key, value in session.query(StorageBlob.key, StorageBlob.value)},
                "config_entries": session.query(SystemConfig).count(),
                "initialized": self._initialized
            }

    def close(self):
        if self.engine is not None:
            self.engine.dispose()
            logger.info("Kiosk database closed")
        self._initialized = False


_db_manager: Optional[DatabaseManager] = None


def get_db_manager() -> DatabaseManager:
    """Process-wide manager, opened on first call."""
    global _db_manager

    if _db_manager is None:
        _db_manager = DatabaseManager()
        _db_manager.initialize()

    return _db_manager

