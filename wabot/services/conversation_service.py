from datetime import datetime, timedelta, timezone
from typing import List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from wabot.models import Business, Conversation, Message

PENDING_KEY = "pending_confirmation"


def get_active_business(db: Session, phone_number_id: str) -> Optional[Business]:
    business = db.query(Business).filter(Business.phone_number_id == phone_number_id).first()
    if not business or not business.is_active:
        return None
    return business


def get_or_create_conversation(db: Session, business_id: UUID, phone_number: str) -> Conversation:
    """Find active conversation or create new one."""
    conversation = (
        db.query(Conversation)
        .filter(
            Conversation.business_id == business_id,
            Conversation.phone_number == phone_number,
            Conversation.status == "active",
        )
        .first()
    )

    if not conversation:
        conversation = Conversation(
            business_id=business_id,
            phone_number=phone_number,
            status="active",
            started_at=datetime.now(timezone.utc),
            context={},
        )
        db.add(conversation)
        db.flush()

    return conversation


def save_message(
    db: Session,
    conversation: Conversation,
    role: str,
    content: str,
    provider_message_id: Optional[str] = None,
    handler: Optional[str] = None,
    intent: Optional[str] = None,
    confidence: Optional[float] = None,
    metadata: Optional[dict] = None,
) -> Message:
    now = datetime.now(timezone.utc)
    message = Message(
        conversation_id=conversation.id,
        business_id=conversation.business_id,
        provider_message_id=provider_message_id,
        role=role,
        content=content,
        handler=handler,
        intent=intent,
        confidence=confidence,
        message_metadata=metadata or {},
        created_at=now,
    )
    db.add(message)
    conversation.last_message_at = now
    db.flush()
    return message


def get_recent_messages(db: Session, conversation_id: UUID, limit: int = 6) -> List[Message]:
    """Last ``limit`` messages, oldest first."""
    rows = (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.desc())
        .limit(limit)
        .all()
    )
    return list(reversed(rows))


def get_pending_confirmation(conversation: Conversation, now: Optional[datetime] = None) -> Optional[dict]:
    """Pending yes/no confirmation if present and not expired."""
    pending = (conversation.context or {}).get(PENDING_KEY)
    if not isinstance(pending, dict):
        return None
    expires_at = pending.get("expires_at")
    if not expires_at:
        return None
    now = now or datetime.now(timezone.utc)
    try:
        if datetime.fromisoformat(expires_at) <= now:
            return None
    except (TypeError, ValueError):
        return None
    return pending


def set_pending_confirmation(
    db: Session,
    conversation: Conversation,
    action: str,
    data: dict,
    ttl_seconds: int,
    now: Optional[datetime] = None,
) -> dict:
    now = now or datetime.now(timezone.utc)
    pending = {
        "action": action,
        "data": data,
        "created_at": now.isoformat(),
        "expires_at": (now + timedelta(seconds=ttl_seconds)).isoformat(),
    }
    context = dict(conversation.context or {})
    context[PENDING_KEY] = pending
    conversation.context = context
    db.flush()
    return pending


def clear_pending_confirmation(db: Session, conversation: Conversation) -> Optional[dict]:
    context = dict(conversation.context or {})
    pending = context.pop(PENDING_KEY, None)
    conversation.context = context
    db.flush()
    return pending
