#!/usr/bin/env python
"""
cryptotax/database.py

SQLAlchemy wiring for CryptoTax: engine, session factory, the declarative
Base shared by User / Source / Transaction / LotSelection, and two column
types that keep SQLite honest about time zones and decimals.

Configuration (read from the project-root .env, then the environment):
  DATABASE_URL   full SQLAlchemy URL; wins over DATABASE_FILE
  DATABASE_FILE  SQLite file, relative paths resolve against the project root
  LOG_LEVEL      root logging level, INFO by default
"""

import datetime
import logging
import os
from decimal import Decimal

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.types import String, TypeDecorator

PACKAGE_DIR = os.path.dirname(os.path.abspath(__file__))
PROJECT_ROOT = os.path.dirname(PACKAGE_DIR)

ENV_FILE = os.path.join(PROJECT_ROOT, ".env")
load_dotenv(dotenv_path=ENV_FILE)

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)


# ------------------------------------------------------------------
# Connection settings
# ------------------------------------------------------------------
def _sqlite_url() -> str:
    db_file = os.getenv("DATABASE_FILE", "cryptotax.db")
    if not os.path.isabs(db_file):
        db_file = os.path.join(PROJECT_ROOT, db_file)
    os.makedirs(os.path.dirname(db_file), exist_ok=True)
    return f"sqlite:///{db_file}"


DATABASE_URL = os.getenv("DATABASE_URL") or _sqlite_url()
logger.debug(f"Using database {DATABASE_URL} (env file: {ENV_FILE})")

# FastAPI runs sync routes in a threadpool, so one SQLite connection may be
# used from several threads
_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, connect_args=_connect_args)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
Base = declarative_base()


# ------------------------------------------------------------------
# Column types
# ------------------------------------------------------------------
class UTCDateTime(TypeDecorator):
    """
    Timestamp column kept as an ISO-8601 string ending in 'Z'.
    Naive values are taken to be UTC; values always read back tz-aware.
    """

    impl = String
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=datetime.timezone.utc)
        as_utc = value.astimezone(datetime.timezone.utc)
        return as_utc.isoformat().replace("+00:00", "Z")

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        return datetime.datetime.fromisoformat(value)


class DecimalString(TypeDecorator):
    """
    Exact Decimal column. SQLite NUMERIC round-trips through float, which
    loses 18-decimal token quantities, so the plain-notation string is stored.
    """

    impl = String
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return format(Decimal(str(value)), "f")

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(value)


# ------------------------------------------------------------------
# Sessions and schema
# ------------------------------------------------------------------
def get_db():
    """Request-scoped session for Depends(get_db); always closed afterwards."""
    db = SessionLocal()
    logger.debug("Opened request session")
    try:
        yield db
    finally:
        db.close()
        logger.debug("Closed request session")


def create_tables(bind=None):
    """
    create_all for every model. Safe to call on every startup: existing
    tables and rows are left alone.
    """
    # registers the mapped classes on Base.metadata
    from cryptotax.models import source, transaction, user  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
    logger.info("Database tables created or verified.")


if __name__ == "__main__":
    create_tables()
