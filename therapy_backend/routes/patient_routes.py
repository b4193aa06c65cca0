import logging
from datetime import date, datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import Field, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from therapy_backend.auth.dependencies import require_roles
from therapy_backend.database import get_db
from therapy_backend.models.notification import TYPE_APPOINTMENT, TYPE_SYSTEM
from therapy_backend.models.patient import Patient
from therapy_backend.models.payment import PAYMENT_COMPLETE, Payment
from therapy_backend.models.therapist import Therapist, TherapistAssignmentRequest
from therapy_backend.models.therapy_session import STATUS_CANCELLED, STATUS_COMPLETED, TherapySession
from therapy_backend.models.user import ROLE_PATIENT, User
from therapy_backend.routes.common import (
    CamelModel,
    database_unavailable,
    ensure_database_ready,
    get_patient_for_user,
)
from therapy_backend.services import booking
from therapy_backend.services.notifications import build_notification, send_notifications
from therapy_backend.services.refunds import calculate_refund
from therapy_backend.services.scheduling import format_utc_iso, slot_label

router = APIRouter(tags=['patient'])

logger = logging.getLogger(__name__)

MAX_REQUEST_MESSAGE_LENGTH = 1000


class TimeSlotResponse(CamelModel):
    slot_id: int
    slot: str
    start_time: str
    is_available: bool
    is_booked: bool
    is_blocked: bool
    is_free: bool
    cost: float


class AvailableSlotsResponse(CamelModel):
    available_slots: list[TimeSlotResponse]
    therapist_name: str | None = None
    therapist_id: int
    date: str | None = None
    message: str | None = None


class InitiatePaymentRequest(CamelModel):
    slot_date: date = Field(alias='date')
    time_slot: str
    session_type: str = 'Individual'
    meeting_type: str = 'IN_PERSON'

    @field_validator('time_slot')
    @classmethod
    def validate_time_slot(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Missing required fields: date and timeSlot')
        return normalized

    @field_validator('meeting_type')
    @classmethod
    def normalize_meeting_type(cls, value: str) -> str:
        return value.strip().upper()


class BookedSessionSummary(CamelModel):
    id: int
    scheduled_at: str
    meeting_link: str | None = None
    session_type: str


class PaymentInitiationResponse(CamelModel):
    message: str
    requires_payment: bool
    session: BookedSessionSummary | None = None
    payment_data: dict | None = None
    session_id: int | None = None
    meeting_link: str | None = None


class SessionResponse(CamelModel):
    id: int
    therapist_id: int
    therapist_name: str | None = None
    scheduled_at: str
    duration: int
    status: str
    type: str | None = None
    session_type: str | None = None
    booked_rate: float
    meeting_link: str | None = None
    payment_status: str | None = None


class CancelSessionRequest(CamelModel):
    session_id: int
    cancel_reason: str | None = None


class RefundResponse(CamelModel):
    original_amount: float
    refund_amount: float
    refund_percentage: int
    hours_before_session: float
    can_refund: bool


class CancelSessionResponse(CamelModel):
    success: bool
    message: str
    session_id: int
    status: str
    refund: RefundResponse | None = None


class RescheduleCheckRequest(CamelModel):
    session_id: int


class RescheduleCheckResponse(CamelModel):
    can_reschedule: bool
    reason: str | None = None
    message: str
    original_rate: float | None = None
    current_rate: float | None = None


class RescheduleSessionRequest(CamelModel):
    session_id: int
    slot_date: date = Field(alias='date')
    time_slot: str


class RescheduleSessionResponse(CamelModel):
    success: bool
    message: str
    session: SessionResponse


class TherapistRequestCreate(CamelModel):
    therapist_id: int
    message: str | None = None

    @field_validator('message')
    @classmethod
    def validate_message(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        if not normalized:
            return None
        if len(normalized) > MAX_REQUEST_MESSAGE_LENGTH:
            raise ValueError(f'Message must be {MAX_REQUEST_MESSAGE_LENGTH} characters or fewer.')
        return normalized


class TherapistRequestResponse(CamelModel):
    id: int
    therapist_id: int
    status: str
    request_message: str | None = None
    created_at: datetime


def build_available_slots(db: Session, patient: Patient, slot_date: date) -> AvailableSlotsResponse:
    therapist = booking.resolve_assigned_therapist(db, patient)
    therapist_name = therapist.user.name if therapist.user else None
    slots = booking.list_slots_for_date(db, therapist.id, slot_date)
    logger.debug('Found %d availability slots for therapist %s on %s', len(slots), therapist.id, slot_date)

    if not slots:
        return AvailableSlotsResponse(
            available_slots=[],
            therapist_name=therapist_name,
            therapist_id=therapist.id,
            message='Therapist is not available on this day',
        )

    rate = float(therapist.session_rate or 0)
    return AvailableSlotsResponse(
        available_slots=[
            TimeSlotResponse(
                slot_id=slot.id,
                slot=slot_label(slot.start_time),
                start_time=slot.start_time,
                is_available=not slot.is_booked,
                is_booked=slot.is_booked,
                is_blocked=False,
                is_free=slot.is_free,
                cost=0 if slot.is_free else rate,
            )
            for slot in slots
        ],
        therapist_name=therapist_name,
        therapist_id=therapist.id,
        date=slot_date.isoformat(),
    )


def build_payment_response(result: booking.BookingResult) -> PaymentInitiationResponse:
    if not result.requires_payment:
        return PaymentInitiationResponse(
            message='Free session booked successfully',
            requires_payment=False,
            session=BookedSessionSummary(
                id=result.session.id,
                scheduled_at=format_utc_iso(result.session.scheduled_at),
                meeting_link=result.session.meeting_link,
                session_type=result.session.session_type,
            ),
        )

    return PaymentInitiationResponse(
        message='Payment initiated successfully',
        requires_payment=True,
        payment_data=result.payment_data,
        session_id=result.session.id,
        meeting_link=result.meeting_link,
    )


def serialize_session(therapy_session: TherapySession) -> SessionResponse:
    therapist = therapy_session.therapist
    payment = therapy_session.payment
    return SessionResponse(
        id=therapy_session.id,
        therapist_id=therapy_session.therapist_id,
        therapist_name=therapist.user.name if therapist and therapist.user else None,
        scheduled_at=format_utc_iso(therapy_session.scheduled_at),
        duration=therapy_session.duration,
        status=therapy_session.status,
        type=therapy_session.type,
        session_type=therapy_session.session_type,
        booked_rate=therapy_session.booked_rate or 0,
        meeting_link=therapy_session.meeting_link,
        payment_status=payment.status if payment else None,
    )


def cancel_patient_session(
    db: Session,
    therapy_session: TherapySession,
    cancelled_by: User,
    reason: str | None,
    actor_label: str,
) -> CancelSessionResponse:
    if therapy_session.status == STATUS_CANCELLED:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Session is already cancelled')
    if therapy_session.status == STATUS_COMPLETED:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Cannot cancel a completed session')

    paid_amount = 0.0
    payment = db.query(Payment).filter(Payment.session_id == therapy_session.id).first()
    if payment is not None and payment.status == PAYMENT_COMPLETE:
        paid_amount = float(payment.amount)

    cancel_note = f'Cancelled by {actor_label}. Reason: {reason}' if reason else f'Cancelled by {actor_label}'
    try:
        booking.cancel_session(db, therapy_session, cancel_note)
        db.commit()
        db.refresh(therapy_session)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    therapist = therapy_session.therapist
    send_notifications(db, [
        build_notification(
            therapist.user_id,
            'Session Cancelled',
            f'A therapy session scheduled for {therapy_session.scheduled_at:%d/%m/%Y} '
            f'has been cancelled by the {actor_label}.',
            TYPE_APPOINTMENT,
            sender_id=cancelled_by.id,
            is_urgent=True,
        ),
    ])

    refund = None
    if paid_amount > 0:
        refund = RefundResponse(**calculate_refund(therapy_session.scheduled_at, paid_amount).as_dict())

    return CancelSessionResponse(
        success=True,
        message='Session cancelled successfully',
        session_id=therapy_session.id,
        status=therapy_session.status,
        refund=refund,
    )


def reschedule_patient_session(
    db: Session,
    therapy_session: TherapySession,
    rescheduled_by: User,
    new_date: date,
    time_slot: str,
) -> RescheduleSessionResponse:
    updated = booking.reschedule_session(
        db,
        therapy_session,
        new_date=new_date,
        time_slot=time_slot,
        rescheduled_by=rescheduled_by,
    )
    return RescheduleSessionResponse(
        success=True,
        message='Session rescheduled successfully',
        session=serialize_session(updated),
    )


def build_reschedule_check(therapy_session: TherapySession) -> RescheduleCheckResponse:
    check = booking.check_reschedule(therapy_session)
    return RescheduleCheckResponse(
        can_reschedule=check.can_reschedule,
        reason=check.reason,
        message=check.message,
        original_rate=check.original_rate,
        current_rate=check.current_rate,
    )


def find_own_session(db: Session, current_user: User, session_id: int) -> TherapySession:
    patient = get_patient_for_user(db, current_user)
    therapy_session = db.query(TherapySession).filter(
        TherapySession.id == session_id,
        TherapySession.patient_id == patient.id,
    ).first()
    if therapy_session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Session not found or unauthorized')
    return therapy_session


@router.get('/sessions/available-slots', response_model=AvailableSlotsResponse, response_model_exclude_none=True)
def list_available_slots(
    slot_date: date = Query(..., alias='date'),
    current_user: User = Depends(require_roles(ROLE_PATIENT)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        patient = get_patient_for_user(db, current_user)
        return build_available_slots(db, patient, slot_date)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/payment/initiate', response_model=PaymentInitiationResponse, response_model_exclude_none=True)
def initiate_payment(
    data: InitiatePaymentRequest,
    current_user: User = Depends(require_roles(ROLE_PATIENT)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        patient = get_patient_for_user(db, current_user)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    result = booking.book_session(
        db,
        patient=patient,
        booking_user=current_user,
        slot_date=data.slot_date,
        time_slot=data.time_slot,
        session_type=data.session_type,
        meeting_type=data.meeting_type,
        return_path='/patient/appointments',
    )
    return build_payment_response(result)


@router.get('/sessions', response_model=list[SessionResponse])
def list_my_sessions(
    current_user: User = Depends(require_roles(ROLE_PATIENT)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        patient = get_patient_for_user(db, current_user)
        sessions = db.query(TherapySession).filter(
            TherapySession.patient_id == patient.id,
        ).order_by(TherapySession.scheduled_at.desc()).all()
        return [serialize_session(therapy_session) for therapy_session in sessions]
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/sessions/cancel', response_model=CancelSessionResponse)
def cancel_my_session(
    data: CancelSessionRequest,
    current_user: User = Depends(require_roles(ROLE_PATIENT)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    therapy_session = find_own_session(db, current_user, data.session_id)
    return cancel_patient_session(db, therapy_session, current_user, data.cancel_reason, 'patient')


@router.post('/sessions/check-reschedule', response_model=RescheduleCheckResponse, response_model_exclude_none=True)
def check_my_reschedule(
    data: RescheduleCheckRequest,
    current_user: User = Depends(require_roles(ROLE_PATIENT)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    return build_reschedule_check(find_own_session(db, current_user, data.session_id))


@router.post('/sessions/reschedule', response_model=RescheduleSessionResponse)
def reschedule_my_session(
    data: RescheduleSessionRequest,
    current_user: User = Depends(require_roles(ROLE_PATIENT)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    therapy_session = find_own_session(db, current_user, data.session_id)
    return reschedule_patient_session(db, therapy_session, current_user, data.slot_date, data.time_slot)


@router.post('/request-therapist', response_model=TherapistRequestResponse, status_code=status.HTTP_201_CREATED)
def request_therapist(
    data: TherapistRequestCreate,
    current_user: User = Depends(require_roles(ROLE_PATIENT)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    patient = get_patient_for_user(db, current_user)
    therapist = db.query(Therapist).filter(Therapist.id == data.therapist_id).first()
    if therapist is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Therapist not found')

    if patient.primary_therapist_id == therapist.id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='This therapist is already assigned to you')

    existing = db.query(TherapistAssignmentRequest).filter(
        TherapistAssignmentRequest.patient_id == patient.id,
        TherapistAssignmentRequest.therapist_id == therapist.id,
        TherapistAssignmentRequest.status == 'PENDING',
    ).first()
    if existing is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail='A request to this therapist is already pending')

    try:
        assignment_request = TherapistAssignmentRequest(
            patient_id=patient.id,
            therapist_id=therapist.id,
            status='PENDING',
            request_message=data.message,
        )
        db.add(assignment_request)
        db.commit()
        db.refresh(assignment_request)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    send_notifications(db, [
        build_notification(
            therapist.user_id,
            'New Patient Request',
            f'{patient.full_name} has requested you as their therapist.',
            TYPE_SYSTEM,
            sender_id=current_user.id,
        ),
    ])
    return assignment_request
