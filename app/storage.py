import logging
from datetime import datetime, timezone
from typing import Generator, Optional, Tuple

from sqlalchemy import create_engine, func, inspect, or_, text
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from app.config import settings

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

IDENTITY_FIELDS = ("username", "first_name", "last_name", "phone_number")


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug("Initializing identity store")
    try:
        # Import models to register them with Base.metadata
        from app.models import TelegramUserRecord  # noqa: F401

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
    logger.debug("Checking database health...")
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))

        if not inspect(engine).has_table("telegram_users"):
            logger.error("Database schema not applied: 'telegram_users' table not found")
            return False

        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Identity Repository Functions
# =============================================================================

def get_identity(db: Session, chat_id: str):
    """
    Retrieve an identity record by chat_id.

    Returns:
        TelegramUserRecord if found, None otherwise
    """
    from app.models import TelegramUserRecord

    result = db.query(TelegramUserRecord).filter(TelegramUserRecord.chat_id == chat_id).first()
    logger.debug(f"Identity lookup {chat_id}: {'found' if result else 'not found'}")
    return result


def insert_identity(
    db: Session,
    chat_id: str,
    username: Optional[str] = None,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
    phone_number: Optional[str] = None,
    now: Optional[str] = None,
):
    """
    Insert a new identity record.

    Raises:
        IntegrityError: a record for chat_id already exists
    """
    from app.models import TelegramUserRecord

    now = now or utc_now()
    record = TelegramUserRecord(
        chat_id=chat_id,
        username=username,
        first_name=first_name,
        last_name=last_name,
        phone_number=phone_number,
        created_at=now,
        updated_at=now,
    )

    try:
        db.add(record)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(f"New user saved: chat_id={chat_id}, name={first_name}")
    return record


def update_identity(db: Session, chat_id: str, values: dict, now: Optional[str] = None) -> int:
    """
    Overwrite identity fields on an existing record and refresh updated_at.

    Returns:
        Number of rows updated
    """
    from app.models import TelegramUserRecord

    changes = {field: values.get(field) for field in IDENTITY_FIELDS if field in values}
    changes["updated_at"] = now or utc_now()

    try:
        updated = (
            db.query(TelegramUserRecord)
            .filter(TelegramUserRecord.chat_id == chat_id)
            .update(changes, synchronize_session=False)
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.debug(f"Identity updated: chat_id={chat_id}, rows={updated}")
    return updated


def list_identities(
    db: Session,
    limit: int = 50,
    offset: int = 0,
    q: Optional[str] = None,
    phone_number: Optional[str] = None,
    verified: Optional[bool] = None,
) -> Tuple[list, int]:
    """
    Retrieve identity records with pagination and filtering.

    Args:
        db: Database session
        limit: Maximum number of records to return (1-100)
        offset: Number of records to skip
        q: Case-insensitive search in username, first and last name
        phone_number: Exact phone number match
        verified: True for records with a phone number, False for without

    Returns:
        Tuple of (records list, total count matching filters)
    """
    from app.models import TelegramUserRecord

    logger.debug(f"Filters: q={q}, phone={phone_number}, verified={verified}")

    query = db.query(TelegramUserRecord)

    if q:
        pattern = f"%{q}%"
        query = query.filter(or_(
            TelegramUserRecord.username.ilike(pattern),
            TelegramUserRecord.first_name.ilike(pattern),
            TelegramUserRecord.last_name.ilike(pattern),
        ))

    if phone_number:
        query = query.filter(TelegramUserRecord.phone_number == phone_number)

    if verified is True:
        query = query.filter(TelegramUserRecord.phone_number.isnot(None))
    elif verified is False:
        query = query.filter(TelegramUserRecord.phone_number.is_(None))

    total = query.count()

    # Most recently active first, chat_id breaks ties deterministically
    query = query.order_by(TelegramUserRecord.updated_at.desc(), TelegramUserRecord.chat_id.asc())

    records = query.offset(offset).limit(limit).all()
    logger.info(f"Retrieved {len(records)} of {total} identity records")

    return records, total


def get_identity_stats(db: Session) -> dict:
    """
    Get identity store statistics for the /stats endpoint.

    Computes:
    - total_users: count of all identity records
    - phone_verified: records with a phone number
    - identified_only: records without a phone number
    - last_seen_at: latest updated_at (null if empty)
    """
    from app.models import TelegramUserRecord

    total_users = db.query(func.count(TelegramUserRecord.chat_id)).scalar() or 0
    phone_verified = (
        db.query(func.count(TelegramUserRecord.chat_id))
        .filter(TelegramUserRecord.phone_number.isnot(None))
        .scalar()
        or 0
    )
    last_seen_at = db.query(func.max(TelegramUserRecord.updated_at)).scalar()

    logger.info(f"Stats computed: {total_users} users, {phone_verified} with phone")

    return {
        "total_users": total_users,
        "phone_verified": phone_verified,
        "identified_only": total_users - phone_verified,
        "last_seen_at": last_seen_at,
    }
