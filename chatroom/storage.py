import logging
from datetime import datetime, timezone
from typing import Generator, List, NamedTuple, Optional

from sqlalchemy import create_engine, event, func, inspect, select, text
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.exc import IntegrityError

from chatroom.config import settings

logger = logging.getLogger(__name__)

DEFAULT_FETCH_LIMIT = 100
MAX_FETCH_LIMIT = 200

# Largest id a signed 64-bit primary key can hold
MAX_MESSAGE_ID = 2**63 - 1

connect_args = {}
if settings.DATABASE_URL.startswith("sqlite"):
    # Requests run in FastAPI's thread pool, connections move between threads
    connect_args["check_same_thread"] = False
    # Writers queue on the database lock instead of failing at once
    connect_args["timeout"] = settings.DB_BUSY_TIMEOUT_SECONDS

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=connect_args,
    pool_pre_ping=True,
    echo=False,
)

if engine.dialect.name == "sqlite":

    @event.listens_for(engine, "connect")
    def _sqlite_on_connect(dbapi_connection, connection_record):
        # pysqlite's own BEGIN handling breaks SAVEPOINT; SQLAlchemy emits BEGIN instead
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _sqlite_on_begin(conn):
        # Take the write lock up front; a deferred BEGIN deadlocks read-then-write transactions
        conn.exec_driver_sql("BEGIN IMMEDIATE")


SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


class ChatMessage(NamedTuple):
    """A message as seen by readers, with the author's current name."""
    id: int
    name: str
    content: str
    created_at: str


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {engine.url!r}")
    try:
        # Import models to register them with Base.metadata
        from chatroom.models import Identity, Message  # noqa: F401

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
        True if DB is healthy and both tables exist, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            inspector = inspect(conn)
            for table in ("identities", "messages"):
                if not inspector.has_table(table):
                    logger.error(f"Database schema not applied: '{table}' table not found")
                    return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Identity Resolver
# =============================================================================

def find_identity_by_email(db: Session, email: str):
    """Return the identity registered under email, ignoring case, or None."""
    from chatroom.models import Identity

    # Both sides lowered by the database so the match agrees with the unique index
    return db.execute(
        select(Identity).where(func.lower(Identity.email) == func.lower(email)).limit(1)
    ).scalar_one_or_none()


def resolve_identity(db: Session, name: str, email: str) -> int:
    """
    Map an email to its identity id, creating or renaming the identity.

    Runs inside the caller's transaction and never commits. A first post
    racing another first post for the same email loses on the unique
    constraint; the insert is rolled back to its savepoint and the winner's
    row is used instead.

    Args:
        db: Database session with an open transaction
        name: Validated display name
        email: Validated email address

    Returns:
        The identity id
    """
    from chatroom.models import Identity

    identity = find_identity_by_email(db, email)

    if identity is None:
        try:
            with db.begin_nested():
                identity = Identity(name=name, email=email, created_at=utc_now_iso())
                db.add(identity)
            logger.info(f"Created identity {identity.id} for {email}")
            return identity.id
        except IntegrityError:
            logger.info(f"Identity for {email} created concurrently, retrying lookup")
            identity = find_identity_by_email(db, email)
            if identity is None:
                raise

    if identity.name != name:
        logger.info(f"Renaming identity {identity.id}: {identity.name!r} -> {name!r}")
        identity.name = name
        db.flush()

    return identity.id


# =============================================================================
# Message Store
# =============================================================================

def append_message(
    db: Session,
    identity_id: int,
    content: str,
    client_address: Optional[str] = None,
) -> int:
    """
    Append a message to the log and return its store-assigned id.

    Flushes but does not commit; the caller owns the transaction.
    """
    from chatroom.models import Message

    message = Message(
        identity_id=identity_id,
        content=content,
        client_address=client_address,
        created_at=utc_now_iso(),
    )
    db.add(message)
    db.flush()
    logger.debug(f"Appended message {message.id} for identity {identity_id}")
    return message.id


def _message_query():
    from chatroom.models import Identity, Message

    return select(
        Message.id, Identity.name, Message.content, Message.created_at
    ).join(Identity, Message.identity_id == Identity.id)


def read_after(db: Session, watermark: int, limit: int = DEFAULT_FETCH_LIMIT) -> List[ChatMessage]:
    """Return up to limit messages with id > watermark, ascending by id."""
    from chatroom.models import Message

    rows = db.execute(
        _message_query()
        .where(Message.id > watermark)
        .order_by(Message.id.asc())
        .limit(limit)
    ).all()
    return [ChatMessage(*row) for row in rows]


def read_latest(db: Session, limit: int = DEFAULT_FETCH_LIMIT) -> List[ChatMessage]:
    """Return the newest limit messages in chronological (ascending) order."""
    from chatroom.models import Message

    rows = db.execute(
        _message_query().order_by(Message.id.desc()).limit(limit)
    ).all()
    # Fetched newest first; readers expect ascending ids
    return [ChatMessage(*row) for row in reversed(rows)]


def clamp_limit(limit: Optional[int]) -> int:
    """Out-of-range or missing limits fall back to the default."""
    if limit is None or limit < 1 or limit > MAX_FETCH_LIMIT:
        return DEFAULT_FETCH_LIMIT
    return limit


def fetch_messages(
    db: Session,
    since_id: Optional[int] = 0,
    limit: Optional[int] = DEFAULT_FETCH_LIMIT,
) -> List[ChatMessage]:
    """
    Incremental sync: everything after the client's watermark, or the most
    recent window when the client has none yet.

    Args:
        db: Database session
        since_id: Highest message id the client already has (0 for none)
        limit: Maximum number of messages, clamped to 1..200 (default 100)

    Returns:
        Messages ascending by id; empty when nothing is new
    """
    since_id = max(0, since_id or 0)
    limit = clamp_limit(limit)

    if since_id >= MAX_MESSAGE_ID:
        # No message can have a larger id
        return []

    logger.debug(f"Fetching messages: since_id={since_id}, limit={limit}")

    if since_id > 0:
        return read_after(db, since_id, limit)
    return read_latest(db, limit)
