"""
Database initialization script.

Creates the subscribers and billing_webhook_events tables.
Run this script to initialize a fresh database or add new tables.

Usage:
    python -m scripts.init_db

Environment variables:
    DATABASE_URL: PostgreSQL (or SQLite) connection string
"""

import os
import sys
import logging
from pathlib import Path

# Add backend directory to path
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.exc import SQLAlchemyError

from gatekeeper.database.session import _get_database_url, init_models
from gatekeeper.db_base import Base

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def init_database(database_url: str) -> None:
    """
    Initialize database tables.

    Creates all tables defined in SQLAlchemy models if they don't exist.
    Existing tables are not modified.

    Args:
        database_url: Database connection string
    """
    logger.info("Connecting to database...")

    engine = create_engine(
        database_url,
        pool_pre_ping=True,
        echo=os.getenv("SQL_ECHO", "false").lower() == "true"
    )

    try:
        # Test connection
        with engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
        logger.info("Database connection successful")
    except SQLAlchemyError as e:
        logger.error(f"Failed to connect to database: {e}")
        raise

    try:
        init_models(engine)
        logger.info("All tables created/verified successfully")
    except SQLAlchemyError as e:
        logger.error(f"Failed to create tables: {e}")
        raise

    # Log table status
    existing = set(inspect(engine).get_table_names())
    for table_name in sorted(Base.metadata.tables.keys()):
        status = "EXISTS" if table_name in existing else "MISSING"
        logger.info(f"  {table_name}: {status}")


def main() -> int:
    try:
        init_database(_get_database_url())
    except (ValueError, SQLAlchemyError) as e:
        logger.error(f"Database initialization failed: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
