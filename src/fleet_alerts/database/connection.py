"""
Database connection and session management for the fleet alerting service.
Provides connection pooling, session management, and database utilities.
"""
from contextlib import contextmanager
from functools import lru_cache
from typing import Any, Dict, Generator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from fleet_alerts.database.models import Base
from fleet_alerts.utils.config import get_settings
from fleet_alerts.utils.logging_config import get_logger

logger = get_logger(__name__)


def _is_in_memory_sqlite(db_url: str) -> bool:
    return db_url in ("sqlite://", "sqlite:///") or ":memory:" in db_url


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class DatabaseManager:
    """
    Database connection and session manager with connection pooling.
    Handles database initialization, health checks, and session lifecycle.
    """

    def __init__(self):
        self.engine: Optional[Engine] = None
        self.SessionLocal: Optional[sessionmaker] = None
        # True when every session shares one DBAPI connection; callers must serialize access
        self.single_connection = False
        self._initialized = False

    def initialize(self, database_url: Optional[str] = None, echo: Optional[bool] = None) -> None:
        """
        Initialize database connection with connection pooling.

        Args:
            database_url: Optional database URL override
            echo: Log SQL statements; defaults to the DEBUG setting
        """
        if self._initialized:
            logger.warning("Database already initialized")
            return

        settings = get_settings()
        db_url = database_url or settings.DATABASE_URL
        echo = settings.DEBUG if echo is None else echo

        try:
            if db_url.startswith("sqlite"):
                sqlite_kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
                if _is_in_memory_sqlite(db_url):
                    # One shared connection keeps the in-memory database alive across threads
                    sqlite_kwargs["poolclass"] = StaticPool
                    self.single_connection = True
                self.engine = create_engine(db_url, echo=echo, **sqlite_kwargs)
                event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)
            else:
                self.engine = create_engine(
                    db_url,
                    poolclass=QueuePool,
                    pool_size=10,  # Number of connections to maintain in pool
                    max_overflow=20,  # Additional connections beyond pool_size
                    pool_pre_ping=True,  # Verify connections before use
                    pool_recycle=3600,  # Recycle connections after 1 hour
                    echo=echo,
                )

            # Create session factory
            self.SessionLocal = sessionmaker(
                bind=self.engine,
                autocommit=False,
                autoflush=False,
                expire_on_commit=False  # Keep objects usable after commit
            )

            logger.info("Database connection initialized successfully")
            self._initialized = True

        except Exception as e:
            logger.error(f"Failed to initialize database connection: {e}")
            raise

    def create_tables(self) -> None:
        """Create all database tables if they don't exist."""
        if not self.engine:
            raise RuntimeError("Database not initialized")

        try:
            Base.metadata.create_all(bind=self.engine)
            logger.info("Database tables created/verified successfully")

        except Exception as e:
            logger.error(f"Failed to create database tables: {e}")
            raise

    def get_session(self) -> Session:
        """
        Get a database session.

        Returns:
            SQLAlchemy session instance

        Raises:
            RuntimeError: If database not initialized
        """
        if not self.SessionLocal:
            raise RuntimeError("Database not initialized. Call initialize() first.")

        return self.SessionLocal()

    @contextmanager
    def get_db_session(self) -> Generator[Session, None, None]:
        """
        Context manager for database sessions with automatic cleanup.
        Commits on success and rolls back on any error.

        Example:
            with db_manager.get_db_session() as session:
                session.query(Vehicle).all()
        """
        session = self.get_session()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Database session error: {e}")
            raise
        finally:
            session.close()

    def health_check(self) -> Dict[str, Any]:
        """
        Perform database health check.

        Returns:
            Health status dictionary
        """
        if not self.engine:
            return {
                "status": "error",
                "message": "Database not initialized",
                "connection_pool": None
            }

        try:
            with self.engine.connect() as conn:
                result = conn.execute(text("SELECT 1")).scalar()

            pool = self.engine.pool
            pool_status = None
            if isinstance(pool, QueuePool):
                pool_status = {
                    "pool_size": pool.size(),
                    "checked_in": pool.checkedin(),
                    "checked_out": pool.checkedout(),
                    "overflow": pool.overflow(),
                    "total_connections": pool.checkedin() + pool.checkedout()
                }

            return {
                "status": "healthy" if result == 1 else "error",
                "message": "Database connection successful",
                "connection_pool": pool_status,
                "database_url": self.engine.url.render_as_string(hide_password=True)
            }

        except OperationalError as e:
            logger.error(f"Database operational error: {e}")
            return {
                "status": "error",
                "message": f"Database connection failed: {str(e)}",
                "connection_pool": None
            }
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return {
                "status": "error",
                "message": f"Health check failed: {str(e)}",
                "connection_pool": None
            }

    def close(self) -> None:
        """Close database connections and cleanup resources."""
        if self.engine:
            self.engine.dispose()
            logger.info("Database connections closed")
        self.engine = None
        self.SessionLocal = None
        self.single_connection = False
        self._initialized = False


# Global database manager instance
db_manager = DatabaseManager()


@lru_cache()
def get_database_manager() -> DatabaseManager:
    """
    Get the global database manager instance.
    Cached to ensure singleton behavior.
    """
    return db_manager


def initialize_database(manager: Optional[DatabaseManager] = None, database_url: Optional[str] = None) -> DatabaseManager:
    """
    Initialize database connection and create tables.
    Should be called at application startup.
    """
    manager = manager or get_database_manager()
    try:
        manager.initialize(database_url)
        manager.create_tables()

        health = manager.health_check()
        if health["status"] != "healthy":
            raise RuntimeError(f"Database health check failed: {health['message']}")

        logger.info("Database initialization completed successfully")
        return manager

    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise


def shutdown_database(manager: Optional[DatabaseManager] = None) -> None:
    """
    Cleanup database connections.
    Should be called at application shutdown.
    """
    manager = manager or get_database_manager()
    manager.close()
    logger.info("Database shutdown completed")
