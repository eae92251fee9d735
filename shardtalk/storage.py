import logging
from typing import Dict, Generator, Iterable, Optional, Tuple

from sqlalchemy import create_engine, func, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from shardtalk.config import get_settings

logger = logging.getLogger(__name__)

# Engine is created on first use and shared by every session in the process
_engine: Optional[Engine] = None

# Create SessionLocal class for creating database sessions (bound lazily)
SessionLocal = sessionmaker(autocommit=False, autoflush=False)

# Base class for SQLAlchemy models
Base = declarative_base()

# Fields that decide whether a matched message was modified by an upsert.
# created_at is bookkeeping and rewritten on every write.
TRACKED_FIELDS = ("sender", "content", "timestamp", "transaction_hash")


def get_engine() -> Engine:
    """
    Return the process-wide engine, creating it on first use.
    """
    global _engine
    if _engine is None:
        database_url = get_settings().DATABASE_URL
        logger.debug(f"Creating database engine for URL: {database_url}")
        # check_same_thread=False is required for SQLite to work with FastAPI's threadpool
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        _engine = create_engine(
            database_url,
            connect_args=connect_args,
            pool_pre_ping=True,
            echo=False,
        )
        SessionLocal.configure(bind=_engine)
    return _engine


def new_session() -> Session:
    """Open a session bound to the shared engine."""
    get_engine()
    return SessionLocal()


def close_db() -> None:
    """
    Dispose the shared engine and its connection pool.
    Called on application shutdown and between test runs.
    """
    global _engine
    if _engine is not None:
        logger.debug("Disposing database engine")
        _engine.dispose()
        _engine = None


def init_db() -> None:
    """
    Initialize the database by creating all tables and indexes.
    Called during application startup and before a sync run.
    """
    logger.debug("Initializing database")
    try:
        # Import models to register them with Base.metadata
        from shardtalk.models import Message  # noqa: F401

        Base.metadata.create_all(bind=get_engine())
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = new_session()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and the messages table exists, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            if not inspect(conn).has_table("messages"):
                logger.error("Database schema not applied: 'messages' table not found")
                return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Message Repository Functions
# =============================================================================

def upsert_messages(db: Session, docs: Iterable[dict]) -> Dict[str, int]:
    """
    Insert or overwrite messages keyed by message_id in one transaction.

    Every field present in a document is set unconditionally. Fields a
    document omits (e.g. transaction_hash for ledger records) are left as
    stored.

    Args:
        db: Database session
        docs: Message documents with at least message_id, sender, content,
            timestamp and created_at

    Returns:
        Dictionary with inserted, updated and unchanged counts

    Raises:
        SQLAlchemyError: on any storage failure (the transaction is rolled back)
    """
    from shardtalk.models import Message

    docs = list(docs)
    counts = {"inserted": 0, "updated": 0, "unchanged": 0}
    if not docs:
        return counts

    ids = [doc["message_id"] for doc in docs]
    logger.debug(f"Upserting {len(docs)} messages, ids {min(ids)}..{max(ids)}")

    try:
        existing = {
            msg.message_id: msg
            for msg in db.query(Message).filter(Message.message_id.in_(ids))
        }

        for doc in docs:
            current = existing.get(doc["message_id"])
            if current is None:
                message = Message(**doc)
                db.add(message)
                existing[doc["message_id"]] = message
                counts["inserted"] += 1
                continue

            changed = any(
                getattr(current, field) != doc[field]
                for field in TRACKED_FIELDS
                if field in doc
            )
            for field, value in doc.items():
                setattr(current, field, value)
            counts["updated" if changed else "unchanged"] += 1

        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.debug(f"Upsert result: {counts}")
    return counts


def count_messages_by_sender(db: Session, sender: str) -> int:
    """Count stored messages for an already-normalized sender address."""
    from shardtalk.models import Message

    return db.query(func.count(Message.message_id)).filter(Message.sender == sender).scalar() or 0


def get_messages_by_sender(
    db: Session,
    sender: str,
    limit: int = 20,
    offset: int = 0,
) -> Tuple[list, int]:
    """
    Retrieve a page of messages for a sender.

    Args:
        db: Database session
        sender: Normalized (lowercase) sender address
        limit: Maximum number of messages to return
        offset: Number of messages to skip

    Returns:
        Tuple of (messages list, total count for the sender)
    """
    from shardtalk.models import Message

    logger.info(f"Querying messages: sender={sender}, limit={limit}, offset={offset}")

    query = db.query(Message).filter(Message.sender == sender)
    total = query.count()

    # Most recent first; message_id breaks timestamp ties deterministically
    messages = (
        query.order_by(Message.timestamp.desc(), Message.message_id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    logger.info(f"Retrieved {len(messages)} of {total} total messages")

    return messages, total


def count_distinct_senders(db: Session) -> int:
    """Number of unique senders across all stored messages."""
    from shardtalk.models import Message

    return db.query(func.count(func.distinct(Message.sender))).scalar() or 0
