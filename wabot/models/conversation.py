import uuid

from sqlalchemy import Column, ForeignKey, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import relationship

from wabot.database import Base


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    business_id = Column(UUID(as_uuid=True), ForeignKey("businesses.id"), nullable=False)
    phone_number = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="active")  # active, closed
    started_at = Column(TIMESTAMP(timezone=True), nullable=False)
    last_message_at = Column(TIMESTAMP(timezone=True))
    context = Column(JSONB, nullable=False, default=dict)

    business = relationship("Business", back_populates="conversations")
    messages = relationship("Message", back_populates="conversation")
