from sqlalchemy import create_engine, Column, Integer, String, DateTime, JSON
from sqlalchemy.orm import declarative_base, sessionmaker
from datetime import datetime, timezone
from config import settings


def _utcnow():
    return datetime.now(timezone.utc)


def _connect_args(url: str) -> dict:
    # The API runs sync sessions from several threads
    return {"check_same_thread": False} if url.startswith("sqlite") else {}


engine = create_engine(settings.DATABASE_URL, connect_args=_connect_args(settings.DATABASE_URL))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

# Database Models
class CacheEntry(Base):
    __tablename__ = "license_cache_entries"

    id = Column(Integer, primary_key=True, index=True)
    key = Column(String(255), unique=True, nullable=False, index=True)
    value = Column(JSON, nullable=False)  # Full license collection as stored by /sync
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


def init_db(bind=None):
    """Create the cache tables."""
    Base.metadata.create_all(bind=bind or engine)
