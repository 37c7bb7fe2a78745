import asyncio
import logging
from typing import Any, Callable, Generator

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from starlette.concurrency import run_in_threadpool

from app.config import settings

logger = logging.getLogger(__name__)

# Tables every report reads from; readiness fails if any is missing
REQUIRED_TABLES = (
    "whatsapp_userinfo",
    "whatsapp_messages",
    "whatsapp_petdetails",
    "consultations",
    "user_feedback",
)


def _engine_options(database_url: str) -> dict:
    if make_url(database_url).get_backend_name() == "sqlite":
        # check_same_thread=False is required for SQLite to work with FastAPI's threadpool
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_pre_ping": True,
    }


# Process-wide connection pool, shared by every request
engine = create_engine(
    settings.DATABASE_URL,
    echo=False,
    **_engine_options(settings.DATABASE_URL),
)

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()


def init_db() -> None:
    """
    Verify the pool can hand out a working connection.
    Called during application startup. The schema is provisioned externally.
    """
    logger.debug(f"Initializing connection pool for {engine.url.render_as_string(hide_password=True)}")
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        logger.info("Database connection pool initialized")
    except Exception as e:
        # The app still starts; /health/ready reports the outage
        logger.error(f"Database not reachable at startup: {e}")


def dispose_db() -> None:
    """Close every pooled connection. Called during application shutdown."""
    engine.dispose()
    logger.info("Database connection pool disposed")


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


async def gather_queries(*queries: Callable[[Session], Any]) -> list:
    """
    Run mutually independent read queries concurrently.

    Each callable receives its own pooled session, which is returned to the
    pool when the call finishes or raises. The first failure propagates and
    aborts the whole request.
    """
    def run(query: Callable[[Session], Any]) -> Any:
        with SessionLocal() as db:
            return query(db)

    return list(await asyncio.gather(*(run_in_threadpool(run, q) for q in queries)))


def list_tables() -> list[str]:
    """Names of the tables visible in the connected store."""
    return sorted(inspect(engine).get_table_names())


def check_db_health() -> bool:
    """
    Check if the database is reachable and the dashboard tables exist.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
            logger.debug("Database connectivity OK")

        missing = [name for name in REQUIRED_TABLES if name not in list_tables()]
        if missing:
            logger.error(f"Database schema incomplete, missing tables: {missing}")
            return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False
