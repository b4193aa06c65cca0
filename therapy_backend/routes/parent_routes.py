from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from therapy_backend.auth.dependencies import require_roles
from therapy_backend.database import get_db
from therapy_backend.models.patient import ParentGuardian, Patient
from therapy_backend.models.therapist import Therapist
from therapy_backend.models.therapy_session import TherapySession
from therapy_backend.models.user import ROLE_PARENT, User
from therapy_backend.routes.common import (
    CamelModel,
    database_unavailable,
    ensure_database_ready,
    get_child_for_parent,
)
from therapy_backend.routes.patient_routes import (
    AvailableSlotsResponse,
    CancelSessionRequest,
    CancelSessionResponse,
    InitiatePaymentRequest,
    PaymentInitiationResponse,
    RescheduleCheckRequest,
    RescheduleCheckResponse,
    RescheduleSessionRequest,
    RescheduleSessionResponse,
    SessionResponse,
    build_available_slots,
    build_payment_response,
    build_reschedule_check,
    cancel_patient_session,
    reschedule_patient_session,
    serialize_session,
)
from therapy_backend.services import booking

router = APIRouter(tags=['parent'])


class ChildCreateRequest(CamelModel):
    first_name: str
    last_name: str
    date_of_birth: date | None = None
    gender: str | None = None
    primary_therapist_id: int | None = None
    relationship: str = 'parent'

    @field_validator('first_name', 'last_name')
    @classmethod
    def validate_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('First and last name are required.')
        return normalized


class ChildResponse(CamelModel):
    id: int
    first_name: str
    last_name: str
    date_of_birth: date | None = None
    gender: str | None = None
    primary_therapist_id: int | None = None


class ChildPaymentRequest(InitiatePaymentRequest):
    child_id: int


class ChildCancelSessionRequest(CancelSessionRequest):
    child_id: int | None = None


class ChildRescheduleCheckRequest(RescheduleCheckRequest):
    child_id: int | None = None


class ChildRescheduleSessionRequest(RescheduleSessionRequest):
    child_id: int | None = None


def find_child_session(db: Session, current_user: User, session_id: int, child_id: int | None) -> TherapySession:
    therapy_session = db.query(TherapySession).join(
        ParentGuardian, ParentGuardian.patient_id == TherapySession.patient_id,
    ).filter(
        TherapySession.id == session_id,
        ParentGuardian.user_id == current_user.id,
    ).first()
    if therapy_session is None or (child_id is not None and therapy_session.patient_id != child_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Session not found or unauthorized')
    return therapy_session


@router.get('/children', response_model=list[ChildResponse])
def list_children(
    current_user: User = Depends(require_roles(ROLE_PARENT)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        return db.query(Patient).join(ParentGuardian, ParentGuardian.patient_id == Patient.id).filter(
            ParentGuardian.user_id == current_user.id,
        ).order_by(Patient.first_name.asc()).all()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/children', response_model=ChildResponse, status_code=status.HTTP_201_CREATED)
def add_child(
    data: ChildCreateRequest,
    current_user: User = Depends(require_roles(ROLE_PARENT)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    if data.primary_therapist_id is not None:
        therapist = db.query(Therapist).filter(Therapist.id == data.primary_therapist_id).first()
        if therapist is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Therapist not found')

    try:
        child = Patient(
            first_name=data.first_name,
            last_name=data.last_name,
            date_of_birth=data.date_of_birth,
            gender=data.gender,
            primary_therapist_id=data.primary_therapist_id,
        )
        db.add(child)
        db.flush()
        db.add(ParentGuardian(user_id=current_user.id, patient_id=child.id, relationship_type=data.relationship))
        db.commit()
        db.refresh(child)
        return child
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('/sessions/available-slots', response_model=AvailableSlotsResponse, response_model_exclude_none=True)
def list_child_available_slots(
    child_id: int = Query(..., alias='childId'),
    slot_date: date = Query(..., alias='date'),
    current_user: User = Depends(require_roles(ROLE_PARENT)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        child = get_child_for_parent(db, current_user, child_id)
        return build_available_slots(db, child, slot_date)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/payment/initiate', response_model=PaymentInitiationResponse, response_model_exclude_none=True)
def initiate_child_payment(
    data: ChildPaymentRequest,
    current_user: User = Depends(require_roles(ROLE_PARENT)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    child = get_child_for_parent(db, current_user, data.child_id)
    result = booking.book_session(
        db,
        patient=child,
        booking_user=current_user,
        slot_date=data.slot_date,
        time_slot=data.time_slot,
        session_type=data.session_type,
        meeting_type=data.meeting_type,
        return_path='/parent/appointments',
    )
    return build_payment_response(result)


@router.get('/children/{child_id}/sessions', response_model=list[SessionResponse])
def list_child_sessions(
    child_id: int,
    current_user: User = Depends(require_roles(ROLE_PARENT)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    child = get_child_for_parent(db, current_user, child_id)
    try:
        sessions = db.query(TherapySession).filter(
            TherapySession.patient_id == child.id,
        ).order_by(TherapySession.scheduled_at.desc()).all()
        return [serialize_session(therapy_session) for therapy_session in sessions]
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/sessions/cancel', response_model=CancelSessionResponse)
def cancel_child_session(
    data: ChildCancelSessionRequest,
    current_user: User = Depends(require_roles(ROLE_PARENT)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    therapy_session = find_child_session(db, current_user, data.session_id, data.child_id)
    return cancel_patient_session(db, therapy_session, current_user, data.cancel_reason, 'parent')


@router.post('/sessions/check-reschedule', response_model=RescheduleCheckResponse, response_model_exclude_none=True)
def check_child_reschedule(
    data: ChildRescheduleCheckRequest,
    current_user: User = Depends(require_roles(ROLE_PARENT)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    return build_reschedule_check(find_child_session(db, current_user, data.session_id, data.child_id))


@router.post('/sessions/reschedule', response_model=RescheduleSessionResponse)
def reschedule_child_session(
    data: ChildRescheduleSessionRequest,
    current_user: User = Depends(require_roles(ROLE_PARENT)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    therapy_session = find_child_session(db, current_user, data.session_id, data.child_id)
    return reschedule_patient_session(db, therapy_session, current_user, data.slot_date, data.time_slot)
