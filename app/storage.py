import logging
from typing import Generator, Optional, Tuple

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from app.config import settings

logger = logging.getLogger(__name__)

REQUIRED_TABLES = ("instances", "contacts", "groups", "conversations", "messages", "trigger_outbox")


def _connect_args(database_url: str) -> dict:
    # check_same_thread=False is required for SQLite to work with FastAPI;
    # the timeout makes concurrent writers wait on the file lock
    if database_url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": 30}
    return {}


engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args(settings.DATABASE_URL),
    echo=False,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        import app.models  # noqa: F401

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
        True if DB is healthy and schema exists, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        existing = set(inspect(engine).get_table_names())
        missing = [name for name in REQUIRED_TABLES if name not in existing]
        if missing:
            logger.error(f"Database schema not applied, missing tables: {missing}")
            return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Read Queries for the agent UI
# =============================================================================

def get_conversations(
    db: Session,
    limit: int = 50,
    offset: int = 0,
    status: Optional[str] = None,
    instance_id: Optional[str] = None,
    assigned_agent_id: Optional[str] = None,
) -> Tuple[list, int]:
    """
    Retrieve conversations with pagination and filtering.

    Returns:
        Tuple of (conversations list, total count matching filters)
    """
    from app.models import Conversation

    logger.debug(f"Querying conversations: limit={limit}, offset={offset}, status={status}")

    query = db.query(Conversation)

    if status:
        query = query.filter(Conversation.status == status)

    if instance_id:
        query = query.filter(Conversation.instance_id == instance_id)

    if assigned_agent_id:
        query = query.filter(Conversation.assigned_agent_id == assigned_agent_id)

    total = query.count()

    # Most recent activity first, id as tie-breaker (deterministic)
    query = query.order_by(Conversation.updated_at.desc(), Conversation.id.asc())

    conversations = query.offset(offset).limit(limit).all()
    logger.info(f"Retrieved {len(conversations)} of {total} total conversations")

    return conversations, total


def get_conversation_messages(
    db: Session,
    conversation_id: str,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[list, int]:
    """
    Retrieve the messages of one conversation, oldest first.

    Returns:
        Tuple of (messages list, total count in the conversation)
    """
    from app.models import Message

    query = db.query(Message).filter(Message.conversation_id == conversation_id)
    total = query.count()

    query = query.order_by(Message.created_at.asc(), Message.id.asc())
    messages = query.offset(offset).limit(limit).all()
    logger.info(f"Retrieved {len(messages)} of {total} messages for conversation {conversation_id}")

    return messages, total
