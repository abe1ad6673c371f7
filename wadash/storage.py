import logging
from datetime import datetime, timezone
from typing import Generator

from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.exc import IntegrityError

from wadash.config import settings

logger = logging.getLogger(__name__)

# check_same_thread=False is required for SQLite to work with FastAPI's threadpool
connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(
    settings.DATABASE_URL,
    connect_args=connect_args,
    echo=False,
)

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from wadash.models import BlockedNumber  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and the blocklist table exists.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    from wadash.models import BlockedNumber

    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
            db.query(BlockedNumber).limit(1).all()
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Blocklist Repository Functions
# =============================================================================

def block_number(db: Session, phone_number: str) -> bool:
    """
    Add a number to the blocklist (idempotent).

    Returns:
        True if the number was newly blocked, False if it already was.
    """
    from wadash.models import BlockedNumber

    try:
        db.add(BlockedNumber(
            phone_number=phone_number,
            blocked_at=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        ))
        db.commit()
        logger.info(f"Number blocked: {phone_number}")
        return True
    except IntegrityError:
        # Already on the list
        db.rollback()
        logger.info(f"Number already blocked: {phone_number}")
        return False


def unblock_number(db: Session, phone_number: str) -> bool:
    """
    Remove a number from the blocklist.

    Returns:
        True if the number was on the list.
    """
    from wadash.models import BlockedNumber

    deleted = db.query(BlockedNumber).filter(BlockedNumber.phone_number == phone_number).delete()
    db.commit()
    logger.info(f"Number unblocked: {phone_number} (was blocked: {bool(deleted)})")
    return bool(deleted)


def list_blocked_numbers(db: Session) -> list[str]:
    """All blocked numbers, in the order they were blocked."""
    from wadash.models import BlockedNumber

    rows = db.query(BlockedNumber).order_by(BlockedNumber.blocked_at.asc(), BlockedNumber.phone_number.asc()).all()
    return [row.phone_number for row in rows]


def is_blocked(db: Session, phone_number: str) -> bool:
    from wadash.models import BlockedNumber

    return db.query(BlockedNumber).filter(BlockedNumber.phone_number == phone_number).first() is not None
