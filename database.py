"""
Database Configuration and Session Management
============================================

This module provides the database engine, session factory, and table creation
functionality for the lending ledger.

Every repository call opens its own short transaction from ``SessionLocal``;
status transitions are single guarded UPDATE statements, so no session is
shared between webhook deliveries.
"""

import logging
from sqlalchemy import create_engine, text, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from config import Config
from models import Base

logger = logging.getLogger(__name__)


def build_engine(database_url: str = None, **kwargs) -> Engine:
    """Create an engine with pool settings suited to the configured backend"""
    database_url = database_url or Config.DATABASE_URL
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is required")

    if database_url.startswith("sqlite"):
        # sqlite connections are handed across the FastAPI threadpool
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("check_same_thread", False)
        return create_engine(database_url, connect_args=connect_args, **kwargs)

    return create_engine(
        database_url,
        pool_size=kwargs.pop("pool_size", 5),
        max_overflow=kwargs.pop("max_overflow", 10),
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,     # Recycle connections every hour
        pool_timeout=30,
        echo=False,
        **kwargs,
    )


def build_session_factory(bind: Engine) -> sessionmaker:
    """Session factory used by the repositories"""
    return sessionmaker(
        bind=bind,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,  # returned rows stay readable after the transaction closes
    )


engine = build_engine()
SessionLocal = build_session_factory(engine)


def create_tables(bind: Engine = None) -> bool:
    """Create missing tables and log what the schema ends up holding"""
    bind = bind or engine
    try:
        logger.info(f"🏗️ Creating database tables ({len(Base.metadata.tables)} models registered)...")
        Base.metadata.create_all(bind=bind, checkfirst=True)

        existing_tables = inspect(bind).get_table_names()
        logger.info(f"✅ Database schema verified: {', '.join(sorted(existing_tables))}")
        return True
    except Exception as e:
        logger.error(f"❌ Failed to create database tables: {e}", exc_info=True)
        return False


def check_connection(bind: Engine = None) -> bool:
    """Run a trivial query against the configured database"""
    try:
        with (bind or engine).connect() as connection:
            connection.execute(text("SELECT 1"))
        logger.info("✅ DB_CONNECTION_OK")
        return True
    except Exception as e:
        logger.error(f"❌ DB_CONNECTION_FAILED: {e}")
        return False
