import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from therapy_backend.auth.dependencies import require_roles
from therapy_backend.database import get_db
from therapy_backend.models.blog import Blog
from therapy_backend.models.notification import TYPE_SYSTEM, TYPE_VERIFICATION
from therapy_backend.models.therapist import (
    VERIFICATION_APPROVED,
    VERIFICATION_REJECTED,
    VERIFICATION_RESUBMIT,
    TherapistVerification,
)
from therapy_backend.models.user import ROLE_ADMIN, ROLE_MANAGER, User
from therapy_backend.routes.blog_routes import BLOG_STATUSES, BlogResponse, serialize_blog
from therapy_backend.routes.common import CamelModel, database_unavailable, ensure_database_ready
from therapy_backend.services.notifications import build_notification, send_notifications

router = APIRouter(tags=['manager'])

logger = logging.getLogger(__name__)

REVIEW_OUTCOMES = {
    'approve': VERIFICATION_APPROVED,
    'reject': VERIFICATION_REJECTED,
    'request_resubmission': VERIFICATION_RESUBMIT,
}

REVIEW_MESSAGES = {
    VERIFICATION_APPROVED: 'Your professional verification has been approved.',
    VERIFICATION_REJECTED: 'Your professional verification has been rejected.',
    VERIFICATION_RESUBMIT: 'Your professional verification needs changes. Please resubmit your details.',
}


class VerificationRequestResponse(CamelModel):
    id: int
    therapist_id: int
    therapist_name: str | None = None
    therapist_email: str
    status: str
    license_number: str | None = None
    primary_specialty: str | None = None
    years_of_experience: int | None = None
    highest_education: str | None = None
    institution: str | None = None
    submitted_at: datetime | None = None
    reviewed_at: datetime | None = None
    review_notes: str | None = None


class ReviewRequest(CamelModel):
    action: str
    notes: str | None = None

    @field_validator('action')
    @classmethod
    def validate_action(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in REVIEW_OUTCOMES:
            raise ValueError('action must be approve, reject or request_resubmission')
        return normalized


def serialize_verification(verification: TherapistVerification) -> VerificationRequestResponse:
    therapist_user = verification.therapist.user
    return VerificationRequestResponse(
        id=verification.id,
        therapist_id=verification.therapist_id,
        therapist_name=therapist_user.name,
        therapist_email=therapist_user.email,
        status=verification.status,
        license_number=verification.license_number,
        primary_specialty=verification.primary_specialty,
        years_of_experience=verification.years_of_experience,
        highest_education=verification.highest_education,
        institution=verification.institution,
        submitted_at=verification.submitted_at,
        reviewed_at=verification.reviewed_at,
        review_notes=verification.review_notes,
    )


@router.get('/verification-requests', response_model=list[VerificationRequestResponse])
def list_verification_requests(
    verification_status: str | None = Query(default=None, alias='status'),
    current_user: User = Depends(require_roles(ROLE_MANAGER, ROLE_ADMIN)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        query = db.query(TherapistVerification)
        if verification_status:
            query = query.filter(TherapistVerification.status == verification_status.upper())
        verifications = query.order_by(TherapistVerification.submitted_at.desc()).all()
        return [serialize_verification(verification) for verification in verifications]
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/verification-requests/{verification_id}/review', response_model=VerificationRequestResponse)
def review_verification_request(
    verification_id: int,
    data: ReviewRequest,
    current_user: User = Depends(require_roles(ROLE_MANAGER, ROLE_ADMIN)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    verification = db.query(TherapistVerification).filter(TherapistVerification.id == verification_id).first()
    if verification is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Verification request not found')

    outcome = REVIEW_OUTCOMES[data.action]
    try:
        verification.status = outcome
        verification.review_notes = data.notes
        verification.reviewed_at = datetime.utcnow()
        verification.reviewed_by = current_user.id
        db.commit()
        db.refresh(verification)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    logger.info('Verification %s reviewed by %s: %s', verification.id, current_user.id, outcome)
    message = REVIEW_MESSAGES[outcome]
    if data.notes:
        message = f'{message} Notes: {data.notes}'
    send_notifications(db, [
        build_notification(
            verification.therapist.user_id,
            'Verification Update',
            message,
            TYPE_VERIFICATION,
            sender_id=current_user.id,
        ),
    ])

    return serialize_verification(verification)


class ResourceUpdateRequest(CamelModel):
    title: str | None = None
    summary: str | None = None
    content: str | None = None
    category: str | None = None
    status: str | None = None

    @field_validator('title', 'content')
    @classmethod
    def validate_not_blank(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            raise ValueError('Title and content cannot be blank.')
        return value.strip() if value is not None else None

    @field_validator('status')
    @classmethod
    def validate_status(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip().lower()
        if normalized not in BLOG_STATUSES:
            raise ValueError('status must be draft or published')
        return normalized


def get_resource(db: Session, resource_id: int) -> Blog:
    blog = db.query(Blog).filter(Blog.id == resource_id).first()
    if blog is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Resource not found')
    return blog


@router.get('/resources', response_model=list[BlogResponse])
def list_resources(
    resource_filter: str = Query(default='all', alias='filter'),
    current_user: User = Depends(require_roles(ROLE_MANAGER, ROLE_ADMIN)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    resource_filter = resource_filter.strip().lower()
    if resource_filter != 'all' and resource_filter not in BLOG_STATUSES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='filter must be all, published or draft')

    try:
        query = db.query(Blog)
        if resource_filter != 'all':
            query = query.filter(Blog.status == resource_filter)
        return [serialize_blog(blog) for blog in query.order_by(Blog.updated_at.desc()).all()]
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.get('/resources/{resource_id}', response_model=BlogResponse)
def get_resource_detail(
    resource_id: int,
    current_user: User = Depends(require_roles(ROLE_MANAGER, ROLE_ADMIN)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    return serialize_blog(get_resource(db, resource_id))


@router.patch('/resources/{resource_id}', response_model=BlogResponse)
def moderate_resource(
    resource_id: int,
    data: ResourceUpdateRequest,
    current_user: User = Depends(require_roles(ROLE_MANAGER, ROLE_ADMIN)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    blog = get_resource(db, resource_id)
    previous_status = blog.status
    try:
        for name, value in data.model_dump(exclude_none=True).items():
            setattr(blog, name, value)
        db.commit()
        db.refresh(blog)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    if blog.status != previous_status:
        logger.info('Resource %s moved from %s to %s by %s', blog.id, previous_status, blog.status, current_user.id)
        if blog.author_id != current_user.id:
            send_notifications(db, [
                build_notification(
                    blog.author_id,
                    'Resource Status Updated',
                    f'Your post "{blog.title}" is now {blog.status}.',
                    TYPE_SYSTEM,
                    sender_id=current_user.id,
                ),
            ])

    return serialize_blog(blog)


@router.delete('/resources/{resource_id}', status_code=status.HTTP_204_NO_CONTENT)
def delete_resource(
    resource_id: int,
    current_user: User = Depends(require_roles(ROLE_MANAGER, ROLE_ADMIN)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    blog = get_resource(db, resource_id)
    try:
        db.delete(blog)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    logger.info('Resource %s deleted by %s', resource_id, current_user.id)
