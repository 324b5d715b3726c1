import uuid

from sqlalchemy import Column, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.sql import func

from wabot.database import Base


class FaqEmbedding(Base):
    __tablename__ = "faq_embeddings"
    __table_args__ = (UniqueConstraint("business_id", "faq_id", name="uq_faq_embeddings_business_faq"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    business_id = Column(UUID(as_uuid=True), nullable=False)
    faq_id = Column(Text, nullable=False)
    question = Column(Text, nullable=False)
    answer = Column(Text)
    embedding = Column(JSONB, nullable=False)
    source = Column(Text, nullable=False, default="airtable")
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
