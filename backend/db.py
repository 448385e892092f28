import logging
import os
from datetime import UTC, datetime

from sqlalchemy import delete
from sqlmodel import Session, SQLModel, create_engine

from models import KVEntry

logger = logging.getLogger(__name__)

# The key-value table lives in Postgres when DATABASE_URL is set, otherwise in
# a local SQLite file (DATABASE_PATH) for development and tests
db_path = os.getenv("DATABASE_PATH", "./leaderboard.db")
env = os.getenv("ENV", os.getenv("RENDER", "").lower() or "dev")

DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    # Synced sheet data and admin edits would vanish with the container
    if env in ("prod", "production") or os.getenv("RENDER"):
        raise RuntimeError(
            "DATABASE_URL missing in production; refusing to keep leaderboard data in SQLite. "
            "Please configure DATABASE_URL environment variable."
        )
    DATABASE_URL = f"sqlite:///{db_path}"

# Render provides postgres:// but SQLAlchemy needs postgresql://
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

is_sqlite = DATABASE_URL.startswith("sqlite")
logger.info(f"KV store backend: {DATABASE_URL.split(':', 1)[0]}")

if is_sqlite:
    # The request session is shared with the threadpool that runs sync routes
    engine = create_engine(DATABASE_URL, echo=False, connect_args={"check_same_thread": False})
else:
    # Hosted Postgres drops idle connections between cron runs
    engine = create_engine(DATABASE_URL, echo=False, pool_pre_ping=True)


def create_db_and_tables():
    """Create the kventry table if missing; existing keys are left alone."""
    SQLModel.metadata.create_all(engine)


def purge_expired_entries() -> int:
    """Delete every key whose TTL has run out and return how many went.

    Reads already skip expired keys; this keeps the table from
    collecting stale cache entries that are never read again.
    """
    with Session(engine) as session:
        result = session.execute(
            delete(KVEntry).where(KVEntry.expires_at <= datetime.now(UTC))
        )
        session.commit()
    if result.rowcount:
        logger.info(f"Purged {result.rowcount} expired key(s)")
    return result.rowcount


def get_session():
    """Get database session."""
    with Session(engine) as session:
        yield session
