import logging
from typing import Any, Generator, Optional, Tuple

from sqlalchemy import create_engine, func, inspect, or_, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from whatsapp_inbound.config import settings
from whatsapp_inbound.utils import utc_now_iso

logger = logging.getLogger(__name__)

REQUIRED_TABLES = (
    "whatsapp_accounts",
    "whatsapp_conversations",
    "whatsapp_messages",
    "whatsapp_media",
    "candidates",
)

# check_same_thread=False is required for SQLite when sessions are used from
# FastAPI's threadpool and background tasks
_connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args,
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
        from whatsapp_inbound import models  # noqa: F401

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
        True if DB is healthy and all tables exist, False otherwise.
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
# Account Repository Functions
# =============================================================================

def get_account_by_phone_number_id(db: Session, phone_number_id: str):
    from whatsapp_inbound.models import WhatsAppAccount

    return (
        db.query(WhatsAppAccount)
        .filter(WhatsAppAccount.phone_number_id == phone_number_id)
        .first()
    )


def get_or_create_account(db: Session, phone_number_id: str, waba_id: str):
    """
    Fetch the account for a phone_number_id, creating a placeholder if unseen.

    The unique index on phone_number_id makes a concurrent insert fail with
    IntegrityError, in which case the row created by the other writer is
    fetched instead.

    Returns:
        WhatsAppAccount, or None if it could neither be found nor created
    """
    from whatsapp_inbound.models import WhatsAppAccount

    existing = get_account_by_phone_number_id(db, phone_number_id)
    if existing:
        return existing

    logger.info(f"Creating placeholder account for phone_number_id={phone_number_id}")
    account = WhatsAppAccount(
        name="Auto-created",
        waba_id=waba_id,
        phone_number_id=phone_number_id,
        phone_number="",
        is_active=True,
        created_at=utc_now_iso(),
    )
    try:
        db.add(account)
        db.commit()
        return account
    except IntegrityError:
        db.rollback()
        logger.info(f"Account for phone_number_id={phone_number_id} created concurrently, refetching")
        return get_account_by_phone_number_id(db, phone_number_id)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to create account for phone_number_id={phone_number_id}: {e}")
        return None


# =============================================================================
# Conversation Repository Functions
# =============================================================================

def get_conversation(db: Session, account_id: str, wa_id: str):
    from whatsapp_inbound.models import WhatsAppConversation

    return (
        db.query(WhatsAppConversation)
        .filter(
            WhatsAppConversation.account_id == account_id,
            WhatsAppConversation.wa_id == wa_id,
        )
        .first()
    )


def update_conversation_profile_name(db: Session, conversation, profile_name: str) -> bool:
    """Store a new profile name, returns False if the update failed."""
    try:
        conversation.profile_name = profile_name
        db.commit()
        return True
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(f"Failed to update profile name of conversation {conversation.id}: {e}")
        return False


def find_candidate_by_phone(db: Session, phone_variants: list[str]):
    """First candidate whose stored phone equals any of the given spellings."""
    from whatsapp_inbound.models import Candidate

    return (
        db.query(Candidate)
        .filter(or_(*[Candidate.phone == variant for variant in phone_variants]))
        .order_by(Candidate.id.asc())
        .first()
    )


def create_conversation(
    db: Session,
    account_id: str,
    wa_id: str,
    phone_number: str,
    profile_name: Optional[str] = None,
    linked_candidate_id: Optional[str] = None,
) -> Tuple[Optional[Any], bool]:
    """
    Create a conversation for (account_id, wa_id).

    Returns:
        Tuple of (conversation, created)
        - (conv, True): Conversation created
        - (conv, False): Conversation already existed (concurrent first contact)
        - (None, False): Error occurred
    """
    from whatsapp_inbound.models import WhatsAppConversation

    now = utc_now_iso()
    conversation = WhatsAppConversation(
        account_id=account_id,
        wa_id=wa_id,
        phone_number=phone_number,
        profile_name=profile_name,
        linked_candidate_id=linked_candidate_id,
        is_unread=True,
        unread_count=0,
        last_customer_message_at=now,
        created_at=now,
    )
    try:
        db.add(conversation)
        db.commit()
        logger.info(f"Conversation created: account={account_id}, wa_id={wa_id}")
        return conversation, True
    except IntegrityError:
        db.rollback()
        logger.info(f"Conversation for wa_id={wa_id} created concurrently, refetching")
        return get_conversation(db, account_id, wa_id), False
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to create conversation for wa_id={wa_id}: {e}")
        return None, False


# =============================================================================
# Message Repository Functions
# =============================================================================

def get_message_by_wamid(db: Session, wamid: str):
    """
    Retrieve a message by its provider message ID.

    Returns:
        WhatsAppMessage if found, None otherwise
    """
    from whatsapp_inbound.models import WhatsAppMessage

    return db.query(WhatsAppMessage).filter(WhatsAppMessage.wamid == wamid).first()


def create_inbound_message(
    db: Session,
    conversation_id: str,
    wamid: str,
    message_type: str,
    body: Optional[str],
    sent_at: str,
    raw_payload: dict,
) -> Tuple[Optional[Any], bool]:
    """
    Store an inbound message (idempotent on wamid).

    The owning conversation's last-message bookkeeping is updated in the
    same transaction, so a duplicate never bumps the unread counter.

    Returns:
        Tuple of (message, is_duplicate)
        - (msg, False): Message created successfully
        - (None, True): wamid already stored (duplicate delivery)
        - (None, False): Error occurred
    """
    from whatsapp_inbound.models import WhatsAppConversation, WhatsAppMessage

    now = utc_now_iso()
    message = WhatsAppMessage(
        conversation_id=conversation_id,
        wamid=wamid,
        direction="inbound",
        message_type=message_type,
        status="delivered",
        body=body,
        sent_at=sent_at,
        delivered_at=now,
        raw_payload=raw_payload,
        created_at=now,
    )

    try:
        db.add(message)
        db.flush()
        db.query(WhatsAppConversation).filter(
            WhatsAppConversation.id == conversation_id
        ).update(
            {
                WhatsAppConversation.last_message_at: now,
                WhatsAppConversation.last_message_preview: body[:100] if body else None,
                WhatsAppConversation.is_unread: True,
                WhatsAppConversation.unread_count: WhatsAppConversation.unread_count + 1,
                WhatsAppConversation.last_customer_message_at: now,
            },
            synchronize_session=False,
        )
        db.commit()
        logger.info(f"Message created successfully: {wamid}")
        return message, False

    except IntegrityError:
        # wamid already exists - expected for duplicate webhook delivery
        db.rollback()
        logger.info(f"Duplicate message detected: {wamid}")
        return None, True

    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to create message {wamid}: {e}")
        return None, False


def update_message_status(db: Session, wamid: str, updates: dict) -> int:
    """
    Apply a status update to the message with the given wamid.

    Returns:
        Number of rows updated (0 when the message is unknown)
    """
    from whatsapp_inbound.models import WhatsAppMessage

    try:
        updated = (
            db.query(WhatsAppMessage)
            .filter(WhatsAppMessage.wamid == wamid)
            .update(updates, synchronize_session=False)
        )
        db.commit()
        return updated
    except SQLAlchemyError:
        db.rollback()
        raise


def create_media(db: Session, message_id: str, **fields):
    """Insert the media row of a stored message."""
    from whatsapp_inbound.models import WhatsAppMedia

    media = WhatsAppMedia(message_id=message_id, created_at=utc_now_iso(), **fields)
    try:
        db.add(media)
        db.commit()
        return media
    except SQLAlchemyError:
        db.rollback()
        raise


# =============================================================================
# Read API Queries
# =============================================================================

def get_conversations(
    db: Session,
    limit: int = 50,
    offset: int = 0,
    account_id: Optional[str] = None,
    unread: Optional[bool] = None,
) -> Tuple[list, int]:
    """
    Retrieve conversations, most recently active first.

    Returns:
        Tuple of (conversations list, total count matching filters)
    """
    from whatsapp_inbound.models import WhatsAppConversation

    query = db.query(WhatsAppConversation)

    if account_id:
        query = query.filter(WhatsAppConversation.account_id == account_id)

    if unread is not None:
        query = query.filter(WhatsAppConversation.is_unread == unread)

    total = query.count()

    # NULL last_message_at sorts last
    query = query.order_by(
        WhatsAppConversation.last_message_at.is_(None),
        WhatsAppConversation.last_message_at.desc(),
        WhatsAppConversation.id.asc(),
    )
    conversations = query.offset(offset).limit(limit).all()
    logger.debug(f"Retrieved {len(conversations)} of {total} total conversations")

    return conversations, total


def get_messages(
    db: Session,
    limit: int = 50,
    offset: int = 0,
    conversation_id: Optional[str] = None,
    status: Optional[str] = None,
    direction: Optional[str] = None,
    q: Optional[str] = None,
) -> Tuple[list, int]:
    """
    Retrieve messages with pagination and filtering.

    Args:
        db: Database session
        limit: Maximum number of messages to return (1-100)
        offset: Number of messages to skip
        conversation_id: Only messages of this conversation
        status: Filter by delivery status (exact match)
        direction: inbound or outbound
        q: Free-text search in message body (case-insensitive)

    Returns:
        Tuple of (messages list, total count matching filters)
    """
    from whatsapp_inbound.models import WhatsAppMessage

    query = db.query(WhatsAppMessage)

    if conversation_id:
        query = query.filter(WhatsAppMessage.conversation_id == conversation_id)

    if status:
        query = query.filter(WhatsAppMessage.status == status)

    if direction:
        query = query.filter(WhatsAppMessage.direction == direction)

    if q:
        query = query.filter(WhatsAppMessage.body.ilike(f"%{q}%"))

    total = query.count()

    # Deterministic ordering: created_at ASC, id ASC
    query = query.order_by(WhatsAppMessage.created_at.asc(), WhatsAppMessage.id.asc())
    messages = query.offset(offset).limit(limit).all()
    logger.debug(f"Retrieved {len(messages)} of {total} total messages")

    return messages, total


def get_stats(db: Session) -> dict:
    """
    Get counts for the /stats endpoint.

    Returns:
        Dictionary with stats data
    """
    from whatsapp_inbound.models import WhatsAppConversation, WhatsAppMessage

    total_messages = db.query(func.count(WhatsAppMessage.id)).scalar() or 0

    messages_by_status = {
        row.status: row.count
        for row in db.query(
            WhatsAppMessage.status, func.count(WhatsAppMessage.id).label("count")
        ).group_by(WhatsAppMessage.status)
    }

    messages_by_type = {
        row.message_type: row.count
        for row in db.query(
            WhatsAppMessage.message_type, func.count(WhatsAppMessage.id).label("count")
        ).group_by(WhatsAppMessage.message_type)
    }

    total_conversations = db.query(func.count(WhatsAppConversation.id)).scalar() or 0
    unread_conversations = (
        db.query(func.count(WhatsAppConversation.id))
        .filter(WhatsAppConversation.is_unread.is_(True))
        .scalar()
        or 0
    )

    logger.info(f"Stats computed: {total_messages} messages, {total_conversations} conversations")

    return {
        "total_messages": total_messages,
        "messages_by_status": messages_by_status,
        "messages_by_type": messages_by_type,
        "total_conversations": total_conversations,
        "unread_conversations": unread_conversations,
    }
