import logging
import time
from datetime import datetime, timezone

from psycopg2 import errorcodes
from sqlalchemy import create_engine, text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value):
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def make_engine(database_url: str):
    if database_url.startswith("sqlite"):
        # in-memory databases must share one connection across threads
        options = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            options["poolclass"] = StaticPool
        return create_engine(database_url, echo=False, **options)

    return create_engine(
        database_url,
        pool_pre_ping=True,
        echo=False,
        pool_recycle=300,
    )


def make_session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


def wait_for_db(engine, max_retries=30, retry_interval=2):
    logger.info("Waiting for the database...")

    for attempt in range(max_retries):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.info("Database is available")
            return True
        except OperationalError as e:
            logger.warning(f"Attempt {attempt + 1}/{max_retries}: database not available yet ({e})")
            if attempt < max_retries - 1:
                time.sleep(retry_interval)

    logger.error("Database still unavailable after all retries")
    return False


def init_db(engine):
    from cafe_pos import models  # noqa: F401  registers the tables on Base

    Base.metadata.create_all(bind=engine)


def is_unique_violation(exc: IntegrityError) -> bool:
    pgcode = getattr(exc.orig, "pgcode", None)
    if pgcode is not None:
        return pgcode == errorcodes.UNIQUE_VIOLATION
    return "UNIQUE constraint failed" in str(exc.orig)
