"""Reserve-then-confirm booking of therapist availability slots.

A booking claims the slot with a conditional UPDATE (``is_booked`` must still
be false) in the same transaction that inserts the session and, for paid
slots, the pending payment. Two concurrent requests for one slot cannot both
see a matched row, whatever the database's isolation level.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime

from fastapi import HTTPException, status
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from therapy_backend.core import config
from therapy_backend.models.availability import TherapistAvailability
from therapy_backend.models.notification import TYPE_APPOINTMENT
from therapy_backend.models.patient import Patient
from therapy_backend.models.payment import PAYMENT_PENDING, Payment
from therapy_backend.models.therapist import Therapist
from therapy_backend.models.therapy_session import (
    MEETING_TYPES,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_SCHEDULED,
    TherapySession,
)
from therapy_backend.models.user import User
from therapy_backend.services import meetings, payhere
from therapy_backend.services.notifications import build_notification, send_notifications
from therapy_backend.services.scheduling import parse_time_slot, session_datetime

logger = logging.getLogger(__name__)

SLOT_UNAVAILABLE_DETAIL = 'This time slot is not available or has already been booked'
DATABASE_UNAVAILABLE_DETAIL = 'Database unavailable. Verify DATABASE_URL and Postgres credentials.'


@dataclass
class BookingResult:
    session: TherapySession
    meeting_link: str | None
    payment: Payment | None = None
    payment_data: dict = field(default_factory=dict)

    @property
    def requires_payment(self) -> bool:
        return self.payment is not None


def resolve_assigned_therapist(db: Session, patient: Patient) -> Therapist:
    if not patient.primary_therapist_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='No assigned therapist. Please select a therapist first.',
        )

    therapist = db.query(Therapist).filter(Therapist.id == patient.primary_therapist_id).first()
    if therapist is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail='Assigned therapist not found',
        )
    return therapist


def list_slots_for_date(db: Session, therapist_id: int, slot_date: date) -> list[TherapistAvailability]:
    return db.query(TherapistAvailability).filter(
        TherapistAvailability.therapist_id == therapist_id,
        TherapistAvailability.date == slot_date,
    ).order_by(TherapistAvailability.start_time.asc()).all()


def find_open_slot(db: Session, therapist_id: int, slot_date: date, start_time: str) -> TherapistAvailability | None:
    return db.query(TherapistAvailability).filter(
        TherapistAvailability.therapist_id == therapist_id,
        TherapistAvailability.date == slot_date,
        TherapistAvailability.start_time == start_time,
        TherapistAvailability.is_booked.is_(False),
    ).first()


def claim_slot(db: Session, slot_id: int) -> bool:
    """Flip ``is_booked`` on an unbooked slot. False when another booking won."""
    result = db.execute(
        update(TherapistAvailability)
        .where(TherapistAvailability.id == slot_id, TherapistAvailability.is_booked.is_(False))
        .values(is_booked=True)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def release_slot(db: Session, slot_id: int | None) -> None:
    if slot_id is None:
        return
    db.execute(
        update(TherapistAvailability)
        .where(TherapistAvailability.id == slot_id)
        .values(is_booked=False)
        .execution_options(synchronize_session=False)
    )


def cancel_session(db: Session, therapy_session: TherapySession, reason: str | None = None) -> None:
    """Mark a session cancelled and reopen its slot. The caller commits."""
    therapy_session.status = STATUS_CANCELLED
    therapy_session.updated_at = datetime.utcnow()
    if reason:
        therapy_session.cancel_reason = reason
    release_slot(db, therapy_session.availability_slot_id)


@dataclass
class RescheduleCheck:
    can_reschedule: bool
    reason: str | None = None
    message: str = 'Session can be rescheduled'
    original_rate: float | None = None
    current_rate: float | None = None


def check_reschedule(therapy_session: TherapySession) -> RescheduleCheck:
    """Whether a session may move to another slot at the rate it was booked at."""
    if therapy_session.status == STATUS_CANCELLED:
        return RescheduleCheck(False, 'CANCELLED', 'Cannot reschedule a cancelled session')
    if therapy_session.status == STATUS_COMPLETED:
        return RescheduleCheck(False, 'COMPLETED', 'Cannot reschedule a completed session')

    booked_rate = float(therapy_session.booked_rate or 0)
    current_rate = float(therapy_session.therapist.session_rate or 0)
    if booked_rate > 0 and booked_rate != current_rate:
        return RescheduleCheck(
            False,
            'RATE_CHANGED',
            'The therapist has changed their rates since your original booking. If you cannot attend '
            'the scheduled session, please cancel it and book again at the current rate.',
            original_rate=booked_rate,
            current_rate=current_rate,
        )
    return RescheduleCheck(True)


def reschedule_session(
    db: Session,
    therapy_session: TherapySession,
    *,
    new_date: date,
    time_slot: str,
    rescheduled_by: User,
) -> TherapySession:
    """Move a session onto another open slot of the same therapist.

    The new slot is claimed, the old one released and the session updated in
    one commit, so a lost claim leaves the original booking untouched.
    """
    eligibility = check_reschedule(therapy_session)
    if not eligibility.can_reschedule:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=eligibility.message)

    try:
        start_time = parse_time_slot(time_slot)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='Invalid date or time provided',
        ) from exc

    new_scheduled_at = session_datetime(new_date, start_time)
    if new_scheduled_at <= datetime.utcnow():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='New session time must be in the future',
        )

    slot = find_open_slot(db, therapy_session.therapist_id, new_date, start_time)
    if slot is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=SLOT_UNAVAILABLE_DETAIL)

    slot_rate = 0.0 if slot.is_free else float(therapy_session.therapist.session_rate or 0)
    if slot_rate != float(therapy_session.booked_rate or 0):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='The new time slot is priced differently from the original booking',
        )

    previous_at = therapy_session.scheduled_at
    previous_slot_id = therapy_session.availability_slot_id
    try:
        if not claim_slot(db, slot.id):
            db.rollback()
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=SLOT_UNAVAILABLE_DETAIL)

        release_slot(db, previous_slot_id)
        therapy_session.availability_slot_id = slot.id
        therapy_session.scheduled_at = new_scheduled_at
        therapy_session.status = STATUS_SCHEDULED
        therapy_session.updated_at = datetime.utcnow()
        db.commit()
        db.refresh(therapy_session)
    except SQLAlchemyError as exc:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=DATABASE_UNAVAILABLE_DETAIL,
        ) from exc

    logger.info(
        'Session %s moved from slot %s (%s) to slot %s (%s)',
        therapy_session.id, previous_slot_id, previous_at, slot.id, new_scheduled_at,
    )
    send_notifications(db, [
        build_notification(
            therapy_session.therapist.user_id,
            'Session Rescheduled',
            f'A therapy session on {previous_at:%d/%m/%Y %H:%M} has been rescheduled to '
            f'{new_scheduled_at:%d/%m/%Y} at {start_time}.',
            TYPE_APPOINTMENT,
            sender_id=rescheduled_by.id,
            is_urgent=True,
        ),
    ])
    return therapy_session


def book_session(
    db: Session,
    *,
    patient: Patient,
    booking_user: User,
    slot_date: date,
    time_slot: str,
    session_type: str = 'Individual',
    meeting_type: str = 'IN_PERSON',
    return_path: str = '/patient/appointments',
) -> BookingResult:
    if meeting_type not in MEETING_TYPES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='Invalid meetingType. Must be IN_PERSON, ONLINE, or HYBRID',
        )

    try:
        start_time = parse_time_slot(time_slot)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='Invalid date or time provided',
        ) from exc

    therapist = resolve_assigned_therapist(db, patient)
    scheduled_at = session_datetime(slot_date, start_time)
    logger.info(
        'Booking request patient=%s therapist=%s date=%s start=%s meeting=%s',
        patient.id, therapist.id, slot_date, start_time, meeting_type,
    )

    slot = find_open_slot(db, therapist.id, slot_date, start_time)
    if slot is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=SLOT_UNAVAILABLE_DETAIL)

    session_rate = 0.0 if slot.is_free else float(therapist.session_rate or 0)

    if session_rate > 0:
        try:
            payhere.require_credentials()
        except payhere.PayHereConfigError as exc:
            logger.error('PayHere credentials missing, refusing paid booking for slot %s', slot.id)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail='PayHere credentials not configured',
            ) from exc

    therapist_user = therapist.user
    meeting_link = None
    calendar_event_id = None
    payment = None
    try:
        if not claim_slot(db, slot.id):
            db.rollback()
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=SLOT_UNAVAILABLE_DETAIL)

        # Only a won claim gets a calendar event.
        if meeting_type in ('ONLINE', 'HYBRID'):
            details = meetings.create_session_meeting(
                db,
                therapist_user_id=therapist.user_id,
                patient_user_id=patient.user_id,
                summary=f'Therapy Session - {patient.full_name}',
                description=(
                    f'Online therapy session\nSession Type: {session_type}\n'
                    f'Patient: {patient.full_name}\nTherapist: {therapist_user.name or "Therapist"}'
                ),
                start=scheduled_at,
                attendee_emails=[booking_user.email, therapist_user.email],
                reference=f'{patient.id}-{slot.id}',
            )
            meeting_link = details.meeting_link
            calendar_event_id = details.event_id

        therapy_session = TherapySession(
            patient_id=patient.id,
            therapist_id=therapist.id,
            availability_slot_id=slot.id,
            scheduled_at=scheduled_at,
            duration=config.SESSION_DURATION_MINUTES,
            status=STATUS_SCHEDULED,
            type=session_type,
            session_type=meeting_type,
            booked_rate=session_rate,
            meeting_link=meeting_link,
            calendar_event_id=calendar_event_id,
        )
        db.add(therapy_session)
        db.flush()

        if session_rate > 0:
            payment = Payment(
                order_id=payhere.generate_order_id(),
                session_id=therapy_session.id,
                patient_id=patient.id,
                amount=session_rate,
                currency=config.PAYHERE_CURRENCY,
                status=PAYMENT_PENDING,
                details={
                    'initiatedBy': {
                        'userId': booking_user.id,
                        'userName': booking_user.name,
                        'userEmail': booking_user.email,
                    },
                    'bookingDetails': {
                        'date': slot_date.isoformat(),
                        'timeSlot': time_slot,
                        'therapistId': therapist.id,
                        'sessionType': session_type,
                        'meetingType': meeting_type,
                        'availabilitySlotId': slot.id,
                        'patientId': patient.id,
                    },
                },
            )
            db.add(payment)

        db.commit()
        db.refresh(therapy_session)
    except SQLAlchemyError as exc:
        db.rollback()
        if calendar_event_id:
            meetings.delete_session_meeting(
                db,
                therapist_user_id=therapist.user_id,
                patient_user_id=patient.user_id,
                event_id=calendar_event_id,
            )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=DATABASE_UNAVAILABLE_DETAIL,
        ) from exc

    if payment is None:
        logger.info('Free session %s booked on slot %s', therapy_session.id, slot.id)
        readable_date = slot_date.strftime('%d/%m/%Y')
        send_notifications(db, [
            build_notification(
                booking_user.id,
                'Session Booked',
                f'Your free therapy session has been booked for {readable_date} at {start_time}',
                TYPE_APPOINTMENT,
            ),
            build_notification(
                therapist.user_id,
                'New Session Booked',
                f'New free session booked with {patient.full_name} on {readable_date} at {start_time}',
                TYPE_APPOINTMENT,
            ),
        ])
        return BookingResult(session=therapy_session, meeting_link=meeting_link)

    logger.info('Session %s reserved pending payment %s', therapy_session.id, payment.order_id)
    payment_data = payhere.build_checkout_payload(
        order_id=payment.order_id,
        amount=session_rate,
        items=f'Therapy Session - {session_type}',
        first_name=patient.first_name,
        last_name=patient.last_name,
        email=booking_user.email or '',
        return_path=f'{return_path}?payment=success',
        cancel_path=f'{return_path}?payment=cancelled',
    )
    return BookingResult(
        session=therapy_session,
        meeting_link=meeting_link,
        payment=payment,
        payment_data=payment_data,
    )
