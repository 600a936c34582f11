"""Database session management"""
from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker
from paycore.models.base import Base
from paycore.core.config import settings


def engine_options(database_url: str) -> dict:
    """Pool settings per backend.

    SQLite (local runs) hands one connection between the request threadpool
    and the replay worker thread, so the same-thread check is off.
    """
    if make_url(database_url).get_backend_name() == "sqlite":
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_pre_ping": True,
        "pool_recycle": 3600,
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
    }


engine = create_engine(settings.DATABASE_URL, **engine_options(settings.DATABASE_URL))

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Dependency for FastAPI endpoints"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Create any missing tables (alembic owns schema changes after the first deploy)"""
    import paycore.models  # noqa: F401  register every model on Base.metadata
    Base.metadata.create_all(bind=engine)
