"""
Database Engine & Session Management
SQLAlchemy setup with dependency injection for FastAPI.
"""
import os
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from payrecon.config import get_settings

settings = get_settings()


def _sqlite_path(url: str) -> str:
    if url.startswith("sqlite:///"):
        return url.replace("sqlite:///", "", 1)
    return ""


# Ensure data directory exists for file-backed SQLite
_db_path = _sqlite_path(settings.DATABASE_URL)
if _db_path and os.path.dirname(_db_path):
    os.makedirs(os.path.dirname(_db_path), exist_ok=True)

engine = create_engine(
    settings.DATABASE_URL,
    # Timer threads and request threads share the pool
    connect_args={"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {},
    echo=settings.DEBUG,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """FastAPI dependency: yields a database session, auto-closes on finish."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    """Create all tables. Called once at application startup."""
    from payrecon.models import order as _order_model                # noqa: F401
    from payrecon.models import payment as _payment_model            # noqa: F401
    from payrecon.models import payment_event as _event_model        # noqa: F401
    from payrecon.models import idempotency as _idempotency_model    # noqa: F401
    from payrecon.models import polling_job as _polling_model        # noqa: F401
    from payrecon.models import webhook_inbox as _inbox_model        # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
