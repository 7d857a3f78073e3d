"""
Database Configuration and Session Management
============================================

Main database engine, session factory and table creation for the settlement core.
Services never commit; callers wrap work in managed_session() so a balance
change and its ledger entry commit or roll back together.
"""

import logging
from contextlib import contextmanager
from typing import Callable, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool
from config import Config
from models import Base

logger = logging.getLogger(__name__)


def _engine_options(database_url: str) -> dict:
    if database_url.startswith("sqlite"):
        return {"echo": False, "connect_args": {"check_same_thread": False}}
    return {
        "poolclass": QueuePool,
        "pool_size": 7,
        "max_overflow": 15,
        "pool_pre_ping": True,    # Validate connections before use
        "pool_recycle": 3600,     # Recycle connections every hour
        "pool_timeout": 30,
        "echo": False,
        "connect_args": {
            "connect_timeout": 10,
            "application_name": "settlement_core",
        },
    }


engine = create_engine(Config.DATABASE_URL, **_engine_options(Config.DATABASE_URL))

SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def create_tables(bind=None) -> bool:
    """Create all database tables if they don't exist"""
    try:
        logger.info("🏗️ Creating database tables (if they don't exist)...")
        Base.metadata.create_all(bind=bind or engine)
        logger.info("✅ Database tables ready")
        return True
    except Exception as e:
        logger.error(f"❌ Table creation failed: {e}")
        return False


@contextmanager
def managed_session(session_factory: Optional[Callable[[], Session]] = None):
    """Sync context manager: commit on success, rollback and re-raise on error"""
    session = (session_factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Database session error: {e}")
        raise
    finally:
        session.close()


def test_connection() -> bool:
    """Test database connection"""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
            logger.info("✅ Database connection test successful")
            return True
    except Exception as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False
