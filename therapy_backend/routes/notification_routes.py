from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from therapy_backend.auth.dependencies import get_current_user
from therapy_backend.database import get_db
from therapy_backend.models.notification import Notification
from therapy_backend.models.user import User
from therapy_backend.routes.common import CamelModel, database_unavailable, ensure_database_ready

router = APIRouter(tags=['notifications'])

NOTIFICATION_PAGE_SIZE = 50


class NotificationResponse(CamelModel):
    id: int
    sender_id: int | None = None
    type: str
    title: str
    message: str
    is_read: bool
    is_urgent: bool
    created_at: datetime


class NotificationListResponse(CamelModel):
    notifications: list[NotificationResponse]
    unread_count: int


class MarkNotificationsRequest(CamelModel):
    notification_ids: list[int] | None = None
    mark_all_as_read: bool = False


@router.get('', response_model=NotificationListResponse)
def list_notifications(
    unread_only: bool = Query(default=False, alias='unreadOnly'),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        query = db.query(Notification).filter(Notification.receiver_id == current_user.id)
        if unread_only:
            query = query.filter(Notification.is_read.is_(False))
        notifications = query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(
            NOTIFICATION_PAGE_SIZE
        ).all()
        unread_count = db.query(Notification).filter(
            Notification.receiver_id == current_user.id,
            Notification.is_read.is_(False),
        ).count()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    return NotificationListResponse(
        notifications=[NotificationResponse.model_validate(notification) for notification in notifications],
        unread_count=unread_count,
    )


@router.patch('')
def mark_notifications_read(
    data: MarkNotificationsRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    if not data.mark_all_as_read and not data.notification_ids:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='Provide notificationIds or markAllAsRead',
        )

    try:
        query = db.query(Notification).filter(
            Notification.receiver_id == current_user.id,
            Notification.is_read.is_(False),
        )
        if not data.mark_all_as_read:
            query = query.filter(Notification.id.in_(data.notification_ids))
        updated = query.update({Notification.is_read: True}, synchronize_session=False)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return {'success': True, 'updated': updated}
