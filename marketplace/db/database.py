"""
Database connection and session management for the Marketplace Bookings Service.
"""

from sqlalchemy import create_engine, event, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.pool import QueuePool, StaticPool
from contextlib import contextmanager
from typing import Generator, Optional, Dict, Any
import logging

from marketplace.core.config import config
from marketplace.core.exceptions import ConflictError
from marketplace.models.base import Base
# Imported for table registration on Base.metadata
from marketplace.models.user import User  # noqa: F401
from marketplace.models.event import Event, RSVP  # noqa: F401
from marketplace.models.service import Service  # noqa: F401
from marketplace.models.booking import Booking  # noqa: F401
from marketplace.models.review import Review  # noqa: F401
from marketplace.models.notification import Notification  # noqa: F401

logger = logging.getLogger(__name__)


class DatabaseManager:
    """
    Database manager owning the engine and the session factory.
    Sessions commit on success and roll back on any exception.
    """

    def __init__(self):
        self.engine = None
        self.session_factory = None
        self._initialized = False

    async def initialize(self):
        """Initialize the database engine from configuration."""
        if self._initialized:
            return

        try:
            db_url = await config.get_database_url()
            db_config = await config.get_database_config()
            self.setup(db_url, db_config)
        except Exception as e:
            logger.error(f"Failed to initialize database manager: {e}")
            raise

    def setup(self, db_url: str, db_config: Optional[Dict[str, Any]] = None):
        """
        Build the engine and session factory for a database URL.

        SQLite URLs get a single shared connection so in-memory databases
        survive across sessions.
        """
        if db_url.startswith("sqlite"):
            self.engine = create_engine(
                db_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
                echo=False
            )
        else:
            db_config = db_config or {}
            self.engine = create_engine(
                db_url,
                poolclass=QueuePool,
                pool_size=db_config.get("pool_size", 20),
                max_overflow=db_config.get("max_overflow", 30),
                pool_timeout=db_config.get("pool_timeout", 30),
                pool_recycle=db_config.get("pool_recycle", 3600),
                pool_pre_ping=True,
                echo=False
            )

        self.session_factory = sessionmaker(
            bind=self.engine,
            class_=Session,
            autoflush=False,
            expire_on_commit=False
        )

        self._setup_event_listeners()
        self._initialized = True
        logger.info("Database manager initialized successfully")

    def _setup_event_listeners(self):
        """Set up connection event listeners."""

        @event.listens_for(self.engine, "connect")
        def set_connection_parameters(dbapi_connection, connection_record):
            if self.engine.dialect.name == "sqlite":
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.close()
            elif self.engine.dialect.name == "postgresql":
                with dbapi_connection.cursor() as cursor:
                    cursor.execute("SET default_transaction_isolation TO 'read committed'")
                    cursor.execute("SET lock_timeout TO '30s'")
                    cursor.execute("SET statement_timeout TO '60s'")

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        Get a database session with automatic transaction management.
        Ensures proper rollback on exceptions.
        """
        if not self._initialized:
            raise RuntimeError("Database manager not initialized")

        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.debug(f"Database session rolled back: {e}")
            raise
        finally:
            session.close()

    def create_tables(self):
        """Create all database tables."""
        Base.metadata.create_all(bind=self.engine)
        logger.info("Database tables created successfully")

    def drop_tables(self):
        """Drop all database tables (use with caution)."""
        Base.metadata.drop_all(bind=self.engine)
        logger.info("Database tables dropped successfully")

    def health_check(self) -> bool:
        """Run a trivial query against the database."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False

    async def close(self):
        """Close all database connections."""
        if self.engine:
            self.engine.dispose()
        self._initialized = False
        logger.info("Database connections closed")


# Global database manager instance
db_manager = DatabaseManager()


@contextmanager
def translate_write_conflicts(entity: str) -> Generator[None, None, None]:
    """
    Map concurrent-write failures raised at flush or commit to ConflictError.

    A stale version column means another writer committed first; an integrity
    error means a uniqueness rule (such as one active booking per event and
    service) was hit by a racing insert.
    """
    try:
        yield
    except StaleDataError as e:
        logger.warning(f"Stale {entity} write rejected: {e}")
        raise ConflictError(f"The {entity} was modified concurrently, please retry") from e
    except IntegrityError as e:
        logger.warning(f"{entity} integrity conflict: {e.orig}")
        raise ConflictError(f"The {entity} conflicts with an existing record") from e
