"""Database configuration, session management and transient-failure retry."""
import logging
import time
from datetime import datetime, timezone
from typing import Callable, TypeVar

from sqlalchemy import create_engine
from sqlalchemy.exc import DisconnectionError, OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from ot_lifecycle.config import get_settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

SQLALCHEMY_DATABASE_URL = get_settings().database_url

# Configure engine based on database type
if SQLALCHEMY_DATABASE_URL.startswith("sqlite"):
    # SQLite-specific config
    engine = create_engine(
        SQLALCHEMY_DATABASE_URL,
        connect_args={"check_same_thread": False}
    )
else:
    # PostgreSQL config (production)
    engine = create_engine(
        SQLALCHEMY_DATABASE_URL,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=5,
        max_overflow=10
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()

TRANSIENT_ERRORS = (OperationalError, DisconnectionError)


def utcnow() -> datetime:
    """Naive UTC timestamp; every stored datetime uses this convention."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_db():
    """Dependency for FastAPI endpoints to get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def retry_transient(
    db: Session,
    func: Callable[[], T],
    attempts: int = None,
    base_delay: float = None,
) -> T:
    """
    Run a read-only callable, retrying connectivity failures with backoff.

    Only safe before a transaction has written anything: the session is
    rolled back between attempts.
    """
    settings = get_settings()
    attempts = attempts or settings.store_retry_attempts
    base_delay = settings.store_retry_base_delay if base_delay is None else base_delay

    for attempt in range(attempts):
        try:
            return func()
        except TRANSIENT_ERRORS as e:
            db.rollback()
            if attempt == attempts - 1:
                raise
            delay = base_delay * (2 ** attempt)
            logger.warning(
                f"Transient store failure (attempt {attempt + 1}/{attempts}), "
                f"retrying in {delay:.2f}s: {e}"
            )
            time.sleep(delay)
