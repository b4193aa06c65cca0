import logging
from datetime import date, datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import Field, field_validator
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from therapy_backend.auth.dependencies import require_roles
from therapy_backend.database import get_db
from therapy_backend.models.availability import TherapistAvailability
from therapy_backend.models.notification import TYPE_APPOINTMENT, TYPE_SYSTEM
from therapy_backend.models.patient import ParentGuardian, Patient
from therapy_backend.models.therapist import (
    VERIFICATION_PENDING,
    VERIFICATION_RESUBMIT,
    TherapistAssignmentRequest,
    TherapistVerification,
)
from therapy_backend.models.therapy_session import (
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_SCHEDULED,
    TherapySession,
)
from therapy_backend.models.user import ROLE_THERAPIST, User
from therapy_backend.routes.common import (
    CamelModel,
    database_unavailable,
    ensure_database_ready,
    get_therapist_for_user,
)
from therapy_backend.services import booking
from therapy_backend.services.notifications import build_notification, send_notifications
from therapy_backend.services.scheduling import (
    RECURRENCE_CUSTOM,
    RECURRENCE_NONE,
    RECURRENCE_TYPES,
    applicable_dates,
    format_utc_iso,
    hourly_start_times,
    normalize_start_time,
    slot_label,
    to_minutes,
)

router = APIRouter(tags=['therapist'])

logger = logging.getLogger(__name__)

MAX_REPORTED_CONFLICTS = 5
SESSION_STATUS_TRANSITIONS = {
    STATUS_SCHEDULED: (STATUS_COMPLETED, STATUS_CANCELLED),
}


class AvailabilitySlotResponse(CamelModel):
    id: int
    date: date
    start_time: str
    slot: str
    is_booked: bool
    is_free: bool


class AddSlotRequest(CamelModel):
    slot_date: date = Field(alias='date')
    start_time: str
    is_free: bool = False

    @field_validator('start_time')
    @classmethod
    def validate_start_time(cls, value: str) -> str:
        return normalize_start_time(value)


class BulkAddSlotsRequest(CamelModel):
    start_date: date
    end_date: date
    start_time: str
    end_time: str
    recurrence_type: str = RECURRENCE_NONE
    selected_days: list[int] | None = None
    is_free: bool = False

    @field_validator('start_time', 'end_time')
    @classmethod
    def validate_times(cls, value: str) -> str:
        return normalize_start_time(value)

    @field_validator('recurrence_type')
    @classmethod
    def validate_recurrence_type(cls, value: str) -> str:
        if value not in RECURRENCE_TYPES:
            raise ValueError(f'recurrenceType must be one of {", ".join(RECURRENCE_TYPES)}')
        return value

    @field_validator('selected_days')
    @classmethod
    def validate_selected_days(cls, value: list[int] | None) -> list[int] | None:
        if value is None:
            return None
        if any(day < 0 or day > 6 for day in value):
            raise ValueError('selectedDays must contain weekday numbers from 0 (Sunday) to 6.')
        return value


class BulkAddSlotsResponse(CamelModel):
    message: str
    created_count: int
    dates: list[date]
    start_times: list[str]


class TherapistSessionResponse(CamelModel):
    id: int
    patient_id: int
    patient_name: str
    scheduled_at: str
    duration: int
    status: str
    type: str | None = None
    session_type: str | None = None
    booked_rate: float
    meeting_link: str | None = None
    cancel_reason: str | None = None


class SessionStatusUpdate(CamelModel):
    status: str
    reason: str | None = None

    @field_validator('status')
    @classmethod
    def normalize_status(cls, value: str) -> str:
        return value.strip().upper()


class PatientRequestResponse(CamelModel):
    id: int
    patient_id: int
    patient_name: str
    status: str
    request_message: str | None = None
    created_at: datetime


class PatientRequestAction(CamelModel):
    request_id: int
    action: str
    message: str | None = None

    @field_validator('action')
    @classmethod
    def validate_action(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in ('accept', 'reject'):
            raise ValueError('action must be accept or reject')
        return normalized


class VerificationPayload(CamelModel):
    license_number: str
    primary_specialty: str
    years_of_experience: int = Field(ge=0)
    highest_education: str
    institution: str | None = None

    @field_validator('license_number', 'primary_specialty', 'highest_education')
    @classmethod
    def validate_required_text(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Field is required.')
        return normalized


class VerificationResponse(CamelModel):
    id: int
    status: str
    license_number: str | None = None
    primary_specialty: str | None = None
    years_of_experience: int | None = None
    highest_education: str | None = None
    institution: str | None = None
    submitted_at: datetime | None = None
    reviewed_at: datetime | None = None
    review_notes: str | None = None


class VerificationStatusResponse(CamelModel):
    status: str
    verification: VerificationResponse | None = None


class TherapistProfileUpdate(CamelModel):
    session_rate: float | None = Field(default=None, ge=0)
    bio: str | None = None
    specialization: str | None = None


class TherapistProfileResponse(CamelModel):
    id: int
    name: str | None = None
    email: str
    session_rate: float
    bio: str | None = None
    specialization: str | None = None


def serialize_slot(slot: TherapistAvailability) -> AvailabilitySlotResponse:
    return AvailabilitySlotResponse(
        id=slot.id,
        date=slot.date,
        start_time=slot.start_time,
        slot=slot_label(slot.start_time),
        is_booked=slot.is_booked,
        is_free=slot.is_free,
    )


def serialize_profile(therapist) -> TherapistProfileResponse:
    return TherapistProfileResponse(
        id=therapist.id,
        name=therapist.user.name,
        email=therapist.user.email,
        session_rate=therapist.session_rate or 0,
        bio=therapist.bio,
        specialization=therapist.specialization,
    )


@router.get('/availability/slots', response_model=list[AvailabilitySlotResponse])
def list_availability_slots(
    start_date: date | None = Query(default=None, alias='startDate'),
    end_date: date | None = Query(default=None, alias='endDate'),
    current_user: User = Depends(require_roles(ROLE_THERAPIST)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    if start_date and end_date and end_date < start_date:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='endDate must be on or after startDate')

    try:
        therapist = get_therapist_for_user(db, current_user)
        query = db.query(TherapistAvailability).filter(TherapistAvailability.therapist_id == therapist.id)
        if start_date:
            query = query.filter(TherapistAvailability.date >= start_date)
        if end_date:
            query = query.filter(TherapistAvailability.date <= end_date)
        slots = query.order_by(TherapistAvailability.date.asc(), TherapistAvailability.start_time.asc()).all()
        return [serialize_slot(slot) for slot in slots]
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/availability/add', response_model=AvailabilitySlotResponse, status_code=status.HTTP_201_CREATED)
def add_availability_slot(
    data: AddSlotRequest,
    current_user: User = Depends(require_roles(ROLE_THERAPIST)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    therapist = get_therapist_for_user(db, current_user)
    existing = db.query(TherapistAvailability).filter(
        TherapistAvailability.therapist_id == therapist.id,
        TherapistAvailability.date == data.slot_date,
        TherapistAvailability.start_time == data.start_time,
    ).first()
    if existing is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail='A slot already exists at this date and time')

    try:
        slot = TherapistAvailability(
            therapist_id=therapist.id,
            date=data.slot_date,
            start_time=data.start_time,
            is_booked=False,
            is_free=data.is_free,
        )
        db.add(slot)
        db.commit()
        db.refresh(slot)
    except IntegrityError as exc:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail='A slot already exists at this date and time',
        ) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    logger.info('Therapist %s added slot %s on %s', therapist.id, data.start_time, data.slot_date)
    return serialize_slot(slot)


@router.post('/availability/bulk-add', response_model=BulkAddSlotsResponse, status_code=status.HTTP_201_CREATED)
def bulk_add_availability_slots(
    data: BulkAddSlotsRequest,
    current_user: User = Depends(require_roles(ROLE_THERAPIST)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    if data.end_date < data.start_date:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='endDate must be on or after startDate')
    if to_minutes(data.end_time) <= to_minutes(data.start_time):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='endTime must be after startTime')
    if data.recurrence_type == RECURRENCE_CUSTOM and not data.selected_days:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='selectedDays is required for Custom recurrence',
        )

    start_times = hourly_start_times(data.start_time, data.end_time)
    dates = applicable_dates(data.start_date, data.end_date, data.recurrence_type, data.selected_days)
    if not start_times or not dates:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='No valid time slots could be generated for the given range',
        )

    therapist = get_therapist_for_user(db, current_user)
    wanted = {(slot_date, start_time) for slot_date in dates for start_time in start_times}

    try:
        existing = db.query(TherapistAvailability.date, TherapistAvailability.start_time).filter(
            TherapistAvailability.therapist_id == therapist.id,
            TherapistAvailability.date.in_(dates),
            TherapistAvailability.start_time.in_(start_times),
        ).all()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    conflicts = sorted((row[0], row[1]) for row in existing if (row[0], row[1]) in wanted)
    if conflicts:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                'message': 'Some slots conflict with existing availability',
                'conflicts': [
                    {'date': slot_date.isoformat(), 'startTime': start_time}
                    for slot_date, start_time in conflicts[:MAX_REPORTED_CONFLICTS]
                ],
                'totalConflicts': len(conflicts),
            },
        )

    try:
        db.add_all([
            TherapistAvailability(
                therapist_id=therapist.id,
                date=slot_date,
                start_time=start_time,
                is_booked=False,
                is_free=data.is_free,
            )
            for slot_date in dates
            for start_time in start_times
        ])
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail='Some slots conflict with existing availability',
        ) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    created_count = len(dates) * len(start_times)
    logger.info('Therapist %s bulk-added %d slots (%s)', therapist.id, created_count, data.recurrence_type)
    return BulkAddSlotsResponse(
        message=f'Successfully created {created_count} availability slots',
        created_count=created_count,
        dates=dates,
        start_times=start_times,
    )


@router.get('/sessions', response_model=list[TherapistSessionResponse])
def list_therapist_sessions(
    session_status: str | None = Query(default=None, alias='status'),
    current_user: User = Depends(require_roles(ROLE_THERAPIST)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        therapist = get_therapist_for_user(db, current_user)
        query = db.query(TherapySession).filter(TherapySession.therapist_id == therapist.id)
        if session_status:
            query = query.filter(TherapySession.status == session_status.upper())
        sessions = query.order_by(TherapySession.scheduled_at.asc()).all()
        return [
            TherapistSessionResponse(
                id=therapy_session.id,
                patient_id=therapy_session.patient_id,
                patient_name=therapy_session.patient.full_name,
                scheduled_at=format_utc_iso(therapy_session.scheduled_at),
                duration=therapy_session.duration,
                status=therapy_session.status,
                type=therapy_session.type,
                session_type=therapy_session.session_type,
                booked_rate=therapy_session.booked_rate or 0,
                meeting_link=therapy_session.meeting_link,
                cancel_reason=therapy_session.cancel_reason,
            )
            for therapy_session in sessions
        ]
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.put('/sessions/{session_id}/status')
def update_session_status(
    session_id: int,
    data: SessionStatusUpdate,
    current_user: User = Depends(require_roles(ROLE_THERAPIST)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    therapist = get_therapist_for_user(db, current_user)
    therapy_session = db.query(TherapySession).filter(
        TherapySession.id == session_id,
        TherapySession.therapist_id == therapist.id,
    ).first()
    if therapy_session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Session not found')

    allowed = SESSION_STATUS_TRANSITIONS.get(therapy_session.status, ())
    if data.status not in allowed:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f'Cannot change session status from {therapy_session.status} to {data.status}',
        )

    try:
        if data.status == STATUS_CANCELLED:
            booking.cancel_session(db, therapy_session, data.reason or 'Cancelled by therapist')
        else:
            therapy_session.status = data.status
            therapy_session.updated_at = datetime.utcnow()
        db.commit()
        db.refresh(therapy_session)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    if therapy_session.status == STATUS_CANCELLED and therapy_session.patient.user_id:
        send_notifications(db, [
            build_notification(
                therapy_session.patient.user_id,
                'Session Cancelled',
                f'Your session on {therapy_session.scheduled_at:%d/%m/%Y} was cancelled by your therapist.',
                TYPE_APPOINTMENT,
                sender_id=current_user.id,
                is_urgent=True,
            ),
        ])

    return {'id': therapy_session.id, 'status': therapy_session.status}


@router.get('/patient-requests', response_model=list[PatientRequestResponse])
def list_patient_requests(
    current_user: User = Depends(require_roles(ROLE_THERAPIST)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        therapist = get_therapist_for_user(db, current_user)
        requests = db.query(TherapistAssignmentRequest).filter(
            TherapistAssignmentRequest.therapist_id == therapist.id,
            TherapistAssignmentRequest.status == 'PENDING',
        ).order_by(TherapistAssignmentRequest.created_at.desc()).all()
        return [
            PatientRequestResponse(
                id=assignment_request.id,
                patient_id=assignment_request.patient_id,
                patient_name=assignment_request.patient.full_name,
                status=assignment_request.status,
                request_message=assignment_request.request_message,
                created_at=assignment_request.created_at,
            )
            for assignment_request in requests
        ]
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/patient-requests')
def respond_to_patient_request(
    data: PatientRequestAction,
    current_user: User = Depends(require_roles(ROLE_THERAPIST)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    therapist = get_therapist_for_user(db, current_user)
    assignment_request = db.query(TherapistAssignmentRequest).filter(
        TherapistAssignmentRequest.id == data.request_id,
        TherapistAssignmentRequest.therapist_id == therapist.id,
    ).first()
    if assignment_request is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Request not found')
    if assignment_request.status != 'PENDING':
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Request has already been processed')

    accepted = data.action == 'accept'
    try:
        assignment_request.status = 'ACCEPTED' if accepted else 'REJECTED'
        assignment_request.response_message = data.message
        assignment_request.updated_at = datetime.utcnow()
        patient = db.query(Patient).filter(Patient.id == assignment_request.patient_id).first()
        if accepted:
            patient.primary_therapist_id = therapist.id
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    receiver_ids = [link.user_id for link in db.query(ParentGuardian).filter(ParentGuardian.patient_id == patient.id)]
    if patient.user_id:
        receiver_ids.insert(0, patient.user_id)
    outcome = 'accepted' if accepted else 'declined'
    send_notifications(db, [
        build_notification(
            receiver_id,
            f'Therapist Request {outcome.capitalize()}',
            f'{current_user.name or "The therapist"} has {outcome} the request for {patient.full_name}.',
            TYPE_SYSTEM,
            sender_id=current_user.id,
        )
        for receiver_id in receiver_ids
    ])

    return {'success': True, 'status': assignment_request.status}


@router.get('/verification', response_model=VerificationStatusResponse, response_model_exclude_none=True)
def get_verification(
    current_user: User = Depends(require_roles(ROLE_THERAPIST)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    therapist = get_therapist_for_user(db, current_user)
    verification = db.query(TherapistVerification).filter(
        TherapistVerification.therapist_id == therapist.id,
    ).first()
    if verification is None:
        return VerificationStatusResponse(status='NOT_SUBMITTED')
    return VerificationStatusResponse(
        status=verification.status,
        verification=VerificationResponse.model_validate(verification),
    )


@router.post('/verification', response_model=VerificationResponse, status_code=status.HTTP_201_CREATED)
def submit_verification(
    data: VerificationPayload,
    current_user: User = Depends(require_roles(ROLE_THERAPIST)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    therapist = get_therapist_for_user(db, current_user)
    verification = db.query(TherapistVerification).filter(
        TherapistVerification.therapist_id == therapist.id,
    ).first()
    if verification is not None and verification.status != VERIFICATION_RESUBMIT:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail='Verification already submitted')

    try:
        if verification is None:
            verification = TherapistVerification(therapist_id=therapist.id)
            db.add(verification)
        _apply_verification(verification, data)
        db.commit()
        db.refresh(verification)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return verification


@router.put('/verification', response_model=VerificationResponse)
def update_verification(
    data: VerificationPayload,
    current_user: User = Depends(require_roles(ROLE_THERAPIST)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    therapist = get_therapist_for_user(db, current_user)
    verification = db.query(TherapistVerification).filter(
        TherapistVerification.therapist_id == therapist.id,
    ).first()
    if verification is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='No verification found to update')

    try:
        _apply_verification(verification, data)
        db.commit()
        db.refresh(verification)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return verification


def _apply_verification(verification: TherapistVerification, data: VerificationPayload) -> None:
    verification.license_number = data.license_number
    verification.primary_specialty = data.primary_specialty
    verification.years_of_experience = data.years_of_experience
    verification.highest_education = data.highest_education
    verification.institution = data.institution
    verification.status = VERIFICATION_PENDING
    verification.submitted_at = datetime.utcnow()
    verification.reviewed_at = None
    verification.review_notes = None


@router.get('/profile', response_model=TherapistProfileResponse)
def get_therapist_profile(
    current_user: User = Depends(require_roles(ROLE_THERAPIST)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    return serialize_profile(get_therapist_for_user(db, current_user))


@router.put('/profile', response_model=TherapistProfileResponse)
def update_therapist_profile(
    data: TherapistProfileUpdate,
    current_user: User = Depends(require_roles(ROLE_THERAPIST)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    therapist = get_therapist_for_user(db, current_user)
    try:
        if data.session_rate is not None:
            therapist.session_rate = data.session_rate
        if data.bio is not None:
            therapist.bio = data.bio.strip() or None
        if data.specialization is not None:
            therapist.specialization = data.specialization.strip() or None
        db.commit()
        db.refresh(therapist)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return serialize_profile(therapist)
