from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from invoicepay.core.config import settings
import logging

logger = logging.getLogger(__name__)

_engine_options = {"pool_pre_ping": True, "echo": settings.DEBUG and settings.ENVIRONMENT != "test"}
if settings.database_url.startswith("postgresql"):
    _engine_options.update(pool_size=10, max_overflow=20)

engine = create_engine(settings.database_url, **_engine_options)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """Request-scoped database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
