"""PayHere server-to-server notifications and the checkout cancel return."""

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from therapy_backend.auth.dependencies import require_roles
from therapy_backend.core import config
from therapy_backend.database import get_db
from therapy_backend.models.notification import TYPE_PAYMENT
from therapy_backend.models.payment import (
    PAYMENT_CANCELLED,
    PAYMENT_COMPLETE,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    Payment,
)
from therapy_backend.models.therapy_session import STATUS_SCHEDULED, TherapySession
from therapy_backend.models.user import ROLE_PARENT, ROLE_PATIENT, User
from therapy_backend.routes.common import database_unavailable, ensure_database_ready
from therapy_backend.services import booking, payhere
from therapy_backend.services.notifications import build_notification, send_notifications

router = APIRouter(tags=['payment'])

logger = logging.getLogger(__name__)

RELEASING_STATUSES = (PAYMENT_FAILED, PAYMENT_CANCELLED)


def apply_payment_status(db: Session, payment: Payment, new_status: str, reason: str) -> TherapySession | None:
    """Set the payment status and cancel a still-scheduled session when the payment did not go through."""
    payment.status = new_status
    payment.updated_at = datetime.utcnow()

    therapy_session = db.query(TherapySession).filter(TherapySession.id == payment.session_id).first()
    if therapy_session is not None and new_status in RELEASING_STATUSES and therapy_session.status == STATUS_SCHEDULED:
        booking.cancel_session(db, therapy_session, reason)
    return therapy_session


def notify_payment_complete(db: Session, payment: Payment, therapy_session: TherapySession | None) -> None:
    if therapy_session is None:
        return

    amount = f'{payment.currency} {payhere.format_amount(payment.amount)}'
    when = f'{therapy_session.scheduled_at:%d/%m/%Y %H:%M}'
    initiated_by = (payment.details or {}).get('initiatedBy', {})
    receivers = []
    payer_id = initiated_by.get('userId') or therapy_session.patient.user_id
    if payer_id:
        receivers.append(build_notification(
            payer_id,
            'Payment Successful',
            f'Your payment of {amount} was received. Your session on {when} is confirmed.',
            TYPE_PAYMENT,
        ))
    receivers.append(build_notification(
        therapy_session.therapist.user_id,
        'Session Payment Received',
        f'Payment of {amount} received for the session with {therapy_session.patient.full_name} on {when}.',
        TYPE_PAYMENT,
    ))
    send_notifications(db, receivers)


def flag_refund_required(payment: Payment, therapy_session: TherapySession) -> None:
    """A completed payment whose session is no longer scheduled is owed back to the payer."""
    reason = f'Payment received after the session was {therapy_session.status.lower()}'
    payment.status_message = f'{reason}; refund required'
    payment.details = {
        **(payment.details or {}),
        'refundRequired': True,
        'refundReason': reason,
    }


def notify_refund_required(db: Session, payment: Payment, therapy_session: TherapySession) -> None:
    amount = f'{payment.currency} {payhere.format_amount(payment.amount)}'
    when = f'{therapy_session.scheduled_at:%d/%m/%Y %H:%M}'
    payer_id = (payment.details or {}).get('initiatedBy', {}).get('userId') or therapy_session.patient.user_id
    if not payer_id:
        return
    send_notifications(db, [build_notification(
        payer_id,
        'Payment Will Be Refunded',
        f'Your payment of {amount} arrived after your session on {when} was cancelled. '
        'The time slot is no longer reserved and the full amount will be refunded.',
        TYPE_PAYMENT,
        is_urgent=True,
    )])


@router.post('/notify')
async def payment_notify(request: Request, db: Session = Depends(get_db)):
    form = await request.form()
    fields = {key: str(value) for key, value in form.items()}

    missing = [name for name in payhere.REQUIRED_NOTIFICATION_FIELDS if not fields.get(name)]
    if missing:
        logger.warning('PayHere notification missing fields: %s', ', '.join(missing))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Missing required fields')

    if fields['merchant_id'] != config.PAYHERE_MERCHANT_ID:
        logger.warning('PayHere notification for unknown merchant %s', fields['merchant_id'])
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Invalid merchant')

    if not payhere.verify_notification(fields, config.PAYHERE_MERCHANT_SECRET):
        logger.warning('PayHere signature mismatch for order %s', fields['order_id'])
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Invalid signature')

    ensure_database_ready()

    payment = db.query(Payment).filter(Payment.order_id == fields['order_id']).first()
    if payment is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Payment not found')

    status_code = fields['status_code']
    new_status = payhere.status_from_code(status_code)
    refund_required = False
    try:
        payment.payment_id = fields.get('payment_id') or payment.payment_id
        payment.payment_method = fields.get('method') or payment.payment_method
        payment.status_message = fields.get('status_message') or payhere.status_message(status_code)
        therapy_session = apply_payment_status(db, payment, new_status, f'Payment {new_status.lower()}')
        if (
            new_status == PAYMENT_COMPLETE
            and therapy_session is not None
            and therapy_session.status != STATUS_SCHEDULED
        ):
            flag_refund_required(payment, therapy_session)
            refund_required = True
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    logger.info('Payment %s for order %s is now %s', payment.id, payment.order_id, new_status)
    if refund_required:
        logger.warning(
            'Order %s paid for %s session %s, refund required',
            payment.order_id, therapy_session.status, therapy_session.id,
        )
        notify_refund_required(db, payment, therapy_session)
    elif new_status == PAYMENT_COMPLETE:
        notify_payment_complete(db, payment, therapy_session)

    return {'status': 'success'}


@router.get('/cancel')
def payment_cancel(
    order_id: str = Query(...),
    current_user: User = Depends(require_roles(ROLE_PATIENT, ROLE_PARENT)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    payment = db.query(Payment).filter(Payment.order_id == order_id).first()
    if payment is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Payment not found')

    if (payment.details or {}).get('initiatedBy', {}).get('userId') != current_user.id:
        logger.warning('User %s tried to cancel order %s they did not start', current_user.id, order_id)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Forbidden')

    if payment.status != PAYMENT_PENDING:
        return {'status': payment.status, 'message': 'Payment is no longer pending'}

    try:
        apply_payment_status(db, payment, PAYMENT_CANCELLED, 'Payment cancelled by user')
        payment.status_message = 'Cancelled by user'
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    logger.info('Checkout for order %s cancelled, slot released', order_id)
    return {'status': PAYMENT_CANCELLED, 'message': 'Payment cancelled and time slot released'}
