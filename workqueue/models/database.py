# workqueue/models/database.py
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from workqueue.config import settings

Base = declarative_base()


def create_db_engine(url: Optional[str] = None) -> Engine:
    """Create an engine configured for the database type behind ``url``"""
    url = url or settings.DATABASE_URL

    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={
                "check_same_thread": False,  # Needed for SQLite
                "timeout": 30,  # Busy timeout while another worker holds the write lock
            }
        )

    # PostgreSQL or other databases
    return create_engine(
        url,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_pre_ping=True
    )


def create_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


engine = create_db_engine()

SessionLocal = create_session_factory(engine)


def init_db(bind: Optional[Engine] = None) -> None:
    """Create all tables (development and tests; production uses alembic)"""
    # Import models so they are registered on Base.metadata
    from workqueue.models import task  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
