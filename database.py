"""
Database Configuration and Session Management
============================================

This module provides the main database engine, session factory, and table creation
functionality for the marketplace escrow service.
"""

import logging
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool
from config import Config
from models import Base

logger = logging.getLogger(__name__)

if not Config.DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is required")


def _engine_options(database_url: str) -> dict:
    """Pool settings per backend; SQLite is only used for local runs and tests"""
    if database_url.startswith("sqlite"):
        return {
            "poolclass": StaticPool,
            "connect_args": {"check_same_thread": False},
        }
    return {
        "poolclass": QueuePool,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_pre_ping": True,     # Validate connections before use
        "pool_recycle": 3600,      # Recycle connections every hour
        "pool_timeout": 30,
        "connect_args": {
            "connect_timeout": 10,
            "application_name": "code_marketplace_escrow",
        },
    }


engine = create_engine(Config.DATABASE_URL, echo=False, **_engine_options(Config.DATABASE_URL))

# Detached rows stay readable after commit so services can return them
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    bind=engine
)


def create_tables(bind=None):
    """Create all database tables if they don't exist"""
    target = bind or engine
    logger.info(f"🏗️ Creating database tables ({len(Base.metadata.tables)} models registered)...")
    Base.metadata.create_all(bind=target, checkfirst=True)
    logger.info("✅ Database schema verified")
    return True


def check_database_connection() -> bool:
    """Run a trivial query against the configured database"""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
            return True
    except Exception as e:
        logger.error(f"❌ Database connection check failed: {e}")
        return False
