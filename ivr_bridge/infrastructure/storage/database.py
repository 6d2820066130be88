"""
Database Connection and Session Management
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import NullPool
from contextlib import contextmanager
from typing import Iterator
import logging

from ivr_bridge.infrastructure.storage.models import Base

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when the database cannot be read or written."""

    def __init__(self, message: str = "Storage unavailable"):
        self.message = message
        super().__init__(self.message)


class Database:
    """
    Engine and session factory for one database URL.

    Usage:
        db = Database("sqlite:///./ivr_bridge.db")
        with db.session() as session:
            session.query(QueueEntryRow).all()
    """

    def __init__(self, url: str, echo: bool = False):
        connect_args = {}
        if url.startswith("sqlite"):
            # Sessions run in worker threads; wait on locks instead of failing fast
            connect_args = {"check_same_thread": False, "timeout": 30}

        self.url = url
        self.engine = create_engine(
            url,
            poolclass=NullPool,
            echo=echo,
            connect_args=connect_args,
        )
        self.SessionLocal = sessionmaker(autoflush=False, bind=self.engine)

    def create_all(self) -> None:
        """Create tables that do not exist yet."""
        Base.metadata.create_all(self.engine)
        logger.info(f"Database schema ready ({self.engine.url.get_backend_name()})")

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Session with commit on success, rollback on error, always closed."""
        db = self.SessionLocal()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def dispose(self) -> None:
        self.engine.dispose()
