import logging
import threading
import uuid
from typing import Callable, Dict, List, Optional

from sqlalchemy import create_engine, func, inspect, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from chatrelay.config import settings
from chatrelay.errors import StoreUnavailable
from chatrelay.logging_utils import utc_timestamp
from chatrelay.schemas import Message

logger = logging.getLogger(__name__)

# check_same_thread=False lets SQLite connections cross FastAPI's worker threads
_connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args,
    echo=False,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()

REQUIRED_TABLES = ("messages", "channel_sequences", "channels", "parents")


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        import chatrelay.models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))

        inspector = inspect(engine)
        missing = [name for name in REQUIRED_TABLES if not inspector.has_table(name)]
        if missing:
            logger.error(f"Database schema not applied, missing tables: {missing}")
            return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Message Store
# =============================================================================

class MessageStore:
    """
    Durable append-only message log, one ordered run of seq per channel.

    The store is the sequencing authority: ``append`` bumps the channel's
    counter and inserts the message in one transaction, so a seq is only
    ever visible for a committed message and a failed append consumes
    nothing. Appends to the same channel are serialized by a per-channel
    lock; appends to different channels do not contend in-process.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _channel_lock(self, channel_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(channel_id)
            if lock is None:
                lock = self._locks[channel_id] = threading.Lock()
            return lock

    def append(self, channel_id: str, sender_id: str, content: str) -> Message:
        """
        Persist a message and assign it the next seq of its channel.

        Raises:
            StoreUnavailable: the write could not be committed; no seq was consumed
        """
        from chatrelay.models import ChannelSequence, MessageRecord

        with self._channel_lock(channel_id):
            with self._session_factory() as db:
                try:
                    counter = db.get(ChannelSequence, channel_id)
                    if counter is None:
                        counter = ChannelSequence(channel_id=channel_id, last_seq=0)
                        db.add(counter)
                    seq = counter.last_seq + 1
                    counter.last_seq = seq

                    record = MessageRecord(
                        id=uuid.uuid4().hex,
                        channel_id=channel_id,
                        sender_id=sender_id,
                        content=content,
                        seq=seq,
                        created_at=utc_timestamp(),
                    )
                    db.add(record)
                    db.commit()
                except SQLAlchemyError as e:
                    db.rollback()
                    logger.error(f"Append to channel {channel_id} failed: {e}")
                    raise StoreUnavailable(f"could not persist message to channel {channel_id}") from e

                message = Message.model_validate(record)

        logger.debug(f"Appended message {message.id} to channel {channel_id} at seq {seq}")
        return message

    def read_from(self, channel_id: str, after_seq: int, limit: int) -> List[Message]:
        """
        Messages of a channel with seq > after_seq, ascending, at most limit.

        Returns an empty list when nothing is past after_seq.
        """
        from chatrelay.models import MessageRecord

        if limit <= 0:
            return []

        try:
            with self._session_factory() as db:
                rows = (
                    db.query(MessageRecord)
                    .filter(MessageRecord.channel_id == channel_id)
                    .filter(MessageRecord.seq > after_seq)
                    .order_by(MessageRecord.seq.asc())
                    .limit(limit)
                    .all()
                )
                return [Message.model_validate(row) for row in rows]
        except SQLAlchemyError as e:
            logger.error(f"Read from channel {channel_id} failed: {e}")
            raise StoreUnavailable(f"could not read channel {channel_id}") from e

    def last_seq(self, channel_id: str) -> int:
        """Latest committed seq of a channel, 0 if it has no messages yet."""
        from chatrelay.models import ChannelSequence

        try:
            with self._session_factory() as db:
                counter = db.get(ChannelSequence, channel_id)
                return counter.last_seq if counter is not None else 0
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"could not read channel {channel_id}") from e

    def count(self, channel_id: Optional[str] = None) -> int:
        from chatrelay.models import MessageRecord

        try:
            with self._session_factory() as db:
                query = db.query(func.count(MessageRecord.id))
                if channel_id is not None:
                    query = query.filter(MessageRecord.channel_id == channel_id)
                return query.scalar() or 0
        except SQLAlchemyError as e:
            raise StoreUnavailable("could not count messages") from e
