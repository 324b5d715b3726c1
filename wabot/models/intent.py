import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Numeric, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from wabot.database import Base


class Intent(Base):
    __tablename__ = "intents"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False, unique=True)
    description = Column(Text)
    confidence_threshold = Column(Numeric(3, 2), nullable=False, default=0.75)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    examples = relationship("IntentExample", back_populates="intent", cascade="all, delete-orphan")


class IntentExample(Base):
    __tablename__ = "intent_examples"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    intent_id = Column(UUID(as_uuid=True), ForeignKey("intents.id", ondelete="CASCADE"), nullable=False)
    text = Column(Text, nullable=False)
    embedding = Column(JSONB)
    weight = Column(Numeric(3, 2), nullable=False, default=1.0)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    intent = relationship("Intent", back_populates="examples")
