from sqlalchemy import Column, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP
from sqlalchemy.sql import func

from wabot.database import Base


class CacheEntry(Base):
    """Durable tier of the two-tier cache."""

    __tablename__ = "cache_entries"

    namespace = Column(Text, primary_key=True)
    content_hash = Column(Text, primary_key=True)
    payload = Column(JSONB, nullable=False)
    expires_at = Column(TIMESTAMP(timezone=True), nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
