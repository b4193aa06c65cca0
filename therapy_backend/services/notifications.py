import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from therapy_backend.models.notification import TYPE_SYSTEM, Notification

logger = logging.getLogger(__name__)


def build_notification(
    receiver_id: int,
    title: str,
    message: str,
    notification_type: str = TYPE_SYSTEM,
    sender_id: int | None = None,
    is_urgent: bool = False,
) -> Notification:
    return Notification(
        receiver_id=receiver_id,
        sender_id=sender_id,
        type=notification_type,
        title=title,
        message=message,
        is_read=False,
        is_urgent=is_urgent,
    )


def send_notifications(db: Session, notifications: list[Notification]) -> bool:
    """Persist notifications in their own commit. Failures are logged, never raised."""
    if not notifications:
        return True
    try:
        db.add_all(notifications)
        db.commit()
        return True
    except SQLAlchemyError:
        db.rollback()
        logger.exception('Failed to create %d notification(s)', len(notifications))
        return False
