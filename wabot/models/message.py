import uuid

from sqlalchemy import Column, ForeignKey, Numeric, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from wabot.database import Base


class Message(Base):
    __tablename__ = "messages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id = Column(UUID(as_uuid=True), ForeignKey("conversations.id"), nullable=False)
    business_id = Column(UUID(as_uuid=True), nullable=False)
    provider_message_id = Column(Text)
    role = Column(Text, nullable=False)  # user, assistant
    content = Column(Text, nullable=False)
    handler = Column(Text)
    intent = Column(Text)
    confidence = Column(Numeric(5, 4))
    message_metadata = Column("metadata", JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)

    conversation = relationship("Conversation", back_populates="messages")


class MessageDedup(Base):
    """Provider message ids that have already been accepted for processing."""

    __tablename__ = "message_dedup"
    __table_args__ = (UniqueConstraint("business_id", "message_id", name="uq_message_dedup"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    business_id = Column(UUID(as_uuid=True), nullable=False)
    message_id = Column(Text, nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
