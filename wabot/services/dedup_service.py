from uuid import UUID

from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from wabot.logging_config import get_logger
from wabot.models import MessageDedup

logger = get_logger("dedup_service")


def claim_message(db: Session, business_id: UUID, message_id: str) -> bool:
    """Record ``message_id`` as seen. False when it was already claimed.

    The unique insert is the only arbiter, so two concurrent deliveries of the
    same id cannot both pass.
    """
    stmt = (
        insert(MessageDedup.__table__)
        .values(business_id=business_id, message_id=message_id)
        .on_conflict_do_nothing(index_elements=["business_id", "message_id"])
    )
    try:
        result = db.execute(stmt)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(
            "Dedup insert failed, processing message anyway",
            extra={"context": {"business_id": str(business_id), "message_id": message_id, "error": str(e)}},
        )
        return True

    if result.rowcount == 0:
        logger.info(
            "Duplicate message_id",
            extra={"context": {"business_id": str(business_id), "message_id": message_id}},
        )
        return False
    return True
