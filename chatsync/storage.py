import logging
from typing import Generator, Iterable, Optional, Tuple

from sqlalchemy import create_engine, event, inspect, insert, or_, select, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from chatsync.config import settings
from chatsync.utils import utc_now_iso

logger = logging.getLogger(__name__)

_is_sqlite = settings.DATABASE_URL.startswith("sqlite")

# check_same_thread=False is required for SQLite to work with FastAPI's threadpool
engine = create_engine(
    settings.DATABASE_URL,
    connect_args={"check_same_thread": False} if _is_sqlite else {},
    echo=False,
)

if _is_sqlite:
    # pysqlite defers BEGIN on its own; take over so SAVEPOINT behaves.
    @event.listens_for(engine, "connect")
    def _sqlite_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _sqlite_begin(conn):
        conn.exec_driver_sql("BEGIN")


# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()

REQUIRED_TABLES = ("subjects", "connector_credentials", "conversations", "messages")


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {engine.url.render_as_string(hide_password=True)}")
    try:
        # Import models to register them with Base.metadata
        import chatsync.models  # noqa: F401

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
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and every table exists, False otherwise.
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
# Subject / Credential Lookups
# =============================================================================

def get_owned_subject(db: Session, subject_id: str, owner_id: str):
    """Return the subject if it exists and belongs to owner_id, else None."""
    from chatsync.models import Subject

    return db.execute(
        select(Subject).where(Subject.id == subject_id, Subject.owner_id == owner_id)
    ).scalar_one_or_none()


def get_authorized_credential(db: Session, subject_id: str):
    """Return the subject's authorized connector credential, if any."""
    from chatsync.models import ConnectorCredential

    return db.execute(
        select(ConnectorCredential)
        .where(
            ConnectorCredential.subject_id == subject_id,
            ConnectorCredential.status == "authorized",
        )
        .order_by(ConnectorCredential.created_at.desc())
        .limit(1)
    ).scalar_one_or_none()


# =============================================================================
# Conversation Repository Functions
# =============================================================================

def find_conversation_by_external_id(db: Session, subject_id: str, external_chat_id: str):
    from chatsync.models import Conversation

    return db.execute(
        select(Conversation).where(
            Conversation.subject_id == subject_id,
            Conversation.external_chat_id == external_chat_id,
        )
    ).scalar_one_or_none()


def find_legacy_conversation(db: Session, subject_id: str, external_name: str):
    """Find a conversation imported before provider chat ids were recorded."""
    from chatsync.models import Conversation

    return db.execute(
        select(Conversation)
        .where(
            Conversation.subject_id == subject_id,
            Conversation.external_name == external_name,
            Conversation.external_chat_id.is_(None),
        )
        .limit(1)
    ).scalar_one_or_none()


def create_conversation(
    db: Session,
    subject_id: str,
    external_chat_id: str,
    external_name: str,
    is_group: bool,
    last_message_at: Optional[str],
):
    """
    Create a conversation row inside a savepoint.

    Raises:
        IntegrityError: another run created the same (subject, chat id) first.
    """
    from chatsync.models import Conversation

    conversation = Conversation(
        subject_id=subject_id,
        external_chat_id=external_chat_id,
        external_name=external_name,
        is_group=is_group,
        last_message_at=last_message_at,
        created_at=utc_now_iso(),
    )
    with db.begin_nested():
        db.add(conversation)
    logger.info(f"Created conversation {conversation.id} for chat {external_chat_id}")
    return conversation


def advance_last_message_at(conversation, ts: Optional[str]) -> None:
    """Move last_message_at forward; never backwards."""
    if ts and (conversation.last_message_at is None or ts > conversation.last_message_at):
        conversation.last_message_at = ts


# =============================================================================
# Message Repository Functions
# =============================================================================

def find_existing_messages(
    db: Session,
    conversation_id: str,
    timestamps: Iterable[str],
    external_ids: Iterable[str],
) -> list:
    """
    Fetch stored messages that may collide with an incoming batch.

    One round-trip per batch: rows in the conversation whose timestamp is in
    the batch's timestamp set, plus rows carrying any of the batch's external ids.
    """
    from chatsync.models import Message

    timestamps = list(set(timestamps))
    external_ids = list(set(external_ids))
    if not timestamps and not external_ids:
        return []

    conditions = []
    if timestamps:
        conditions.append(Message.message_timestamp.in_(timestamps))
    if external_ids:
        conditions.append(Message.external_message_id.in_(external_ids))

    rows = db.execute(
        select(Message).where(Message.conversation_id == conversation_id, or_(*conditions))
    ).scalars().all()
    logger.debug(f"Dedup lookup for conversation {conversation_id}: {len(rows)} existing rows")
    return list(rows)


def _dialect_insert():
    name = engine.dialect.name
    if name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert as dialect_insert
    elif name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as dialect_insert
    else:
        return None
    return dialect_insert


def insert_messages_ignoring_conflicts(db: Session, rows: list) -> int:
    """
    Insert rows that carry an external_message_id in one statement.

    Conflicting rows are skipped (insert-or-ignore). Returns the number of
    rows actually written.
    """
    from chatsync.models import Message

    if not rows:
        return 0

    dialect_insert = _dialect_insert()
    if dialect_insert is None:
        return sum(1 for row in rows if insert_message_tolerant(db, row))

    table = Message.__table__
    stmt = (
        dialect_insert(table)
        .values(rows)
        .on_conflict_do_nothing()
        .returning(table.c.id)
    )
    inserted = db.execute(stmt).scalars().all()
    skipped = len(rows) - len(inserted)
    if skipped:
        logger.info(f"Insert ignored {skipped} already-stored messages")
    return len(inserted)


def insert_message_tolerant(db: Session, row: dict) -> bool:
    """
    Plain insert of a single message inside a savepoint.

    Returns:
        True if written, False if a uniqueness constraint rejected it
        (another run already stored it).
    """
    from chatsync.models import Message

    try:
        with db.begin_nested():
            db.execute(insert(Message.__table__).values(**row))
        return True
    except IntegrityError:
        logger.info(
            f"Duplicate message detected: conversation={row.get('conversation_id')}, "
            f"ts={row.get('message_timestamp')}"
        )
        return False


def backfill_media_url(db: Session, message_id: str, media_url: str) -> None:
    """Fill media_url on an existing message that has none. Other fields stay untouched."""
    from chatsync.models import Message

    db.execute(
        update(Message)
        .where(Message.id == message_id, Message.media_url.is_(None))
        .values(media_url=media_url)
    )


def get_messages(
    db: Session,
    subject_id: str,
    limit: int = 50,
    offset: int = 0,
    conversation_id: Optional[str] = None,
    q: Optional[str] = None,
) -> Tuple[list, int]:
    """
    Retrieve a subject's stored messages with pagination and filtering.

    Args:
        db: Database session
        subject_id: Owning subject
        limit: Maximum number of messages to return (1-100)
        offset: Number of messages to skip
        conversation_id: Restrict to one conversation
        q: Free-text search in message text (case-insensitive)

    Returns:
        Tuple of (list of (Message, Conversation) rows, total count matching filters)
    """
    from chatsync.models import Conversation, Message

    query = (
        db.query(Message, Conversation)
        .join(Conversation, Conversation.id == Message.conversation_id)
        .filter(Message.subject_id == subject_id)
    )

    if conversation_id:
        query = query.filter(Message.conversation_id == conversation_id)

    if q:
        query = query.filter(Message.text_content.ilike(f"%{q}%"))

    total = query.count()

    # Newest first, id as tie-breaker for deterministic pages
    query = query.order_by(Message.message_timestamp.desc(), Message.id.asc())
    rows = query.offset(offset).limit(limit).all()
    logger.info(f"Retrieved {len(rows)} of {total} messages for subject {subject_id}")

    return rows, total
