"""
Database session management with SQLAlchemy 2.0.

Provides engine configuration, session creation and teardown, and the
circuit breaker for the live loop. Per-unit scoring work relies on SAVEPOINTs
(``Session.begin_nested``), so SQLite engines are patched to let SQLAlchemy
drive BEGIN itself.
"""

import threading
from datetime import datetime
from typing import Any, Dict, Optional

from loguru import logger
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IllegalStateChangeError
from sqlalchemy.orm import Session, scoped_session, sessionmaker

from stockleague.config import settings
from stockleague.utils.datetime import utcnow


def enable_sqlite_savepoints(target_engine: Engine) -> Engine:
    """
    Make SAVEPOINT work on pysqlite.

    The driver issues its own BEGIN lazily and never for SAVEPOINT, which
    breaks nested transactions. Disable that and emit BEGIN from SQLAlchemy.
    """

    @event.listens_for(target_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(target_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return target_engine


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine for the given URL with pool settings suited to it."""
    if database_url.startswith("sqlite"):
        new_engine = create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
        )
        return enable_sqlite_savepoints(new_engine)

    return create_engine(
        database_url,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=10,
        max_overflow=20,
        pool_timeout=30,
        pool_recycle=1800,  # Recycle connections after 30 minutes
        echo=echo,
        connect_args={
            "connect_timeout": 10,
            "options": "-c statement_timeout=60000",  # 60 second query timeout
        },
    )


engine = build_engine(settings.database_url, echo=settings.debug)

SessionLocal = scoped_session(
    sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=engine,
        expire_on_commit=False,  # Prevent lazy load issues after commit
    )
)


# ============================================================================
# Circuit Breaker for the live cycle
# ============================================================================

class CircuitBreaker:
    """
    Stops the background loop from hammering a failing database.

    States:
    - CLOSED: cycles run normally
    - OPEN: failures exceeded threshold, cycles are skipped
    - HALF_OPEN: recovery timeout passed, one trial cycle is let through
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(self, name: str, failure_threshold: int = 5, recovery_timeout: int = 30):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout

        self._lock = threading.Lock()
        self._state = self.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[datetime] = None

    @property
    def state(self) -> str:
        with self._lock:
            if self._state == self.OPEN and self._last_failure_time:
                elapsed = (utcnow() - self._last_failure_time).total_seconds()
                if elapsed >= self.recovery_timeout:
                    self._state = self.HALF_OPEN
                    logger.info(f"Circuit breaker '{self.name}' entering HALF_OPEN state")
            return self._state

    def can_execute(self) -> bool:
        return self.state != self.OPEN

    def record_success(self) -> None:
        with self._lock:
            if self._state == self.HALF_OPEN:
                logger.info(f"Circuit breaker '{self.name}' CLOSED after successful recovery")
            self._state = self.CLOSED
            self._failure_count = 0

    def record_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = utcnow()

            if self._state == self.HALF_OPEN:
                self._state = self.OPEN
                logger.warning(f"Circuit breaker '{self.name}' back to OPEN after failure in HALF_OPEN")
            elif self._state == self.CLOSED and self._failure_count >= self.failure_threshold:
                self._state = self.OPEN
                logger.warning(
                    f"Circuit breaker '{self.name}' OPENED after {self._failure_count} failures"
                )

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "name": self.name,
                "state": self._state,
                "failure_count": self._failure_count,
                "last_failure": self._last_failure_time.isoformat() if self._last_failure_time else None,
            }

    def reset(self) -> None:
        with self._lock:
            self._state = self.CLOSED
            self._failure_count = 0
            self._last_failure_time = None


# ============================================================================
# Database Session Management Functions
# ============================================================================

def init_db(bind: Optional[Engine] = None) -> None:
    """Create all tables. Idempotent; safe to call on every startup."""
    from stockleague.db.models import Base

    Base.metadata.create_all(bind=bind or engine, checkfirst=True)
    logger.info("Database schema initialized successfully")


def get_db() -> Session:
    """
    Get a database session.

    Caller is responsible for closing it with close_db_session() or should
    leave it to the FastAPI dependency.
    """
    return SessionLocal()


def close_db_session(db: Session) -> None:
    """Close a session from get_db() and remove it from the registry."""
    try:
        db.close()
    except IllegalStateChangeError:
        # Already closed by a concurrent request teardown
        pass

    SessionLocal.remove()
