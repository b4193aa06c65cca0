from fastapi import HTTPException, status
from pydantic import BaseModel
from pydantic.alias_generators import to_camel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from therapy_backend.database import ensure_schema
from therapy_backend.models.patient import ParentGuardian, Patient
from therapy_backend.models.therapist import Therapist
from therapy_backend.models.user import User
from therapy_backend.services.booking import DATABASE_UNAVAILABLE_DETAIL


class CamelModel(BaseModel):
    """Body and response models exchanged with the web and mobile clients in camelCase."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


def database_unavailable() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=DATABASE_UNAVAILABLE_DETAIL,
    )


def ensure_database_ready() -> None:
    try:
        ensure_schema()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


def get_patient_for_user(db: Session, user: User) -> Patient:
    patient = db.query(Patient).filter(Patient.user_id == user.id).first()
    if patient is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail='Patient profile not found. Please create a profile first.',
        )
    return patient


def get_therapist_for_user(db: Session, user: User) -> Therapist:
    therapist = db.query(Therapist).filter(Therapist.user_id == user.id).first()
    if therapist is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail='Therapist profile not found',
        )
    return therapist


def get_child_for_parent(db: Session, parent: User, child_id: int) -> Patient:
    child = db.query(Patient).join(ParentGuardian, ParentGuardian.patient_id == Patient.id).filter(
        Patient.id == child_id,
        ParentGuardian.user_id == parent.id,
    ).first()
    if child is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail='Child not found',
        )
    return child
