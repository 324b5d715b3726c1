import uuid

from sqlalchemy import Column, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import relationship

from wabot.database import Base


class Business(Base):
    __tablename__ = "businesses"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="active")  # active, inactive
    phone_number_id = Column(Text, unique=True)
    config = Column(JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)
    updated_at = Column(TIMESTAMP(timezone=True))

    conversations = relationship("Conversation", back_populates="business")

    @property
    def is_active(self) -> bool:
        return self.status != "inactive"

    @property
    def tone_prompt(self) -> str | None:
        """System prompt describing the business tone, if configured."""
        return self.config.get("tone_prompt") if self.config else None

    @property
    def faq_source(self) -> dict:
        source = self.config.get("faq_source") if self.config else None
        return source if isinstance(source, dict) else {}
