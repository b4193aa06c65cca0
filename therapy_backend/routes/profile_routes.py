from datetime import date

from fastapi import APIRouter, Depends
from pydantic import field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from therapy_backend.auth.dependencies import get_current_user, require_roles
from therapy_backend.database import get_db
from therapy_backend.models.patient import Patient
from therapy_backend.models.therapist import Therapist
from therapy_backend.models.user import ROLE_PATIENT, User
from therapy_backend.routes.common import (
    CamelModel,
    database_unavailable,
    ensure_database_ready,
    get_patient_for_user,
)

router = APIRouter(tags=['profile'])


class PatientProfileRequest(CamelModel):
    first_name: str
    last_name: str
    date_of_birth: date | None = None
    gender: str | None = None
    phone: str | None = None

    @field_validator('first_name', 'last_name')
    @classmethod
    def validate_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('First and last name are required.')
        return normalized


class PatientProfileResponse(CamelModel):
    id: int
    first_name: str
    last_name: str
    date_of_birth: date | None = None
    gender: str | None = None
    phone: str | None = None
    primary_therapist_id: int | None = None


class TherapistDirectoryEntry(CamelModel):
    id: int
    name: str | None = None
    specialization: str | None = None
    bio: str | None = None
    session_rate: float


@router.get('/profile', response_model=PatientProfileResponse)
def get_profile(
    current_user: User = Depends(require_roles(ROLE_PATIENT)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    return get_patient_for_user(db, current_user)


@router.post('/profile', response_model=PatientProfileResponse)
def save_profile(
    data: PatientProfileRequest,
    current_user: User = Depends(require_roles(ROLE_PATIENT)),
    db: Session = Depends(get_db),
):
    """Create the caller's patient profile, or update it when one exists."""
    ensure_database_ready()

    try:
        patient = db.query(Patient).filter(Patient.user_id == current_user.id).first()
        if patient is None:
            patient = Patient(user_id=current_user.id)
            db.add(patient)
        patient.first_name = data.first_name
        patient.last_name = data.last_name
        patient.date_of_birth = data.date_of_birth
        patient.gender = data.gender
        patient.phone = data.phone
        db.commit()
        db.refresh(patient)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return patient


@router.get('/therapists', response_model=list[TherapistDirectoryEntry])
def list_therapists(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        therapists = db.query(Therapist).all()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    return [
        TherapistDirectoryEntry(
            id=therapist.id,
            name=therapist.user.name,
            specialization=therapist.specialization,
            bio=therapist.bio,
            session_rate=therapist.session_rate or 0,
        )
        for therapist in sorted(therapists, key=lambda therapist: (therapist.user.name or '').lower())
    ]
