import logging

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from therapy_backend.auth import jwt_handler
from therapy_backend.auth.dependencies import get_current_user
from therapy_backend.auth.passwords import hash_password, password_problems, verify_password
from therapy_backend.core import config
from therapy_backend.database import get_db
from therapy_backend.middleware.role_access import dashboard_for_role
from therapy_backend.models.therapist import Therapist
from therapy_backend.models.user import ROLE_THERAPIST, SELF_SIGNUP_ROLES, User
from therapy_backend.routes.common import database_unavailable, ensure_database_ready

router = APIRouter(tags=['auth'])

logger = logging.getLogger(__name__)


def normalize_email(value: str) -> str:
    normalized = value.strip().lower()
    if '@' not in normalized or normalized.startswith('@') or normalized.endswith('@'):
        raise ValueError('A valid email address is required.')
    return normalized


class SignupRequest(BaseModel):
    email: str
    password: str
    name: str
    role: str

    @field_validator('email')
    @classmethod
    def validate_email(cls, value: str) -> str:
        return normalize_email(value)

    @field_validator('name')
    @classmethod
    def validate_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Name is required.')
        return normalized

    @field_validator('role')
    @classmethod
    def validate_role(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in SELF_SIGNUP_ROLES:
            raise ValueError(f'role must be one of {", ".join(SELF_SIGNUP_ROLES)}')
        return normalized


class LoginRequest(BaseModel):
    email: str
    password: str

    @field_validator('email')
    @classmethod
    def validate_email(cls, value: str) -> str:
        return normalize_email(value)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = 'bearer'
    role: str
    redirect: str


class UserResponse(BaseModel):
    id: int
    email: str
    name: str | None = None
    role: str

    class Config:
        from_attributes = True


def token_response(user: User) -> JSONResponse:
    token = jwt_handler.create_access_token(subject=user.email, role=user.role)
    body = TokenResponse(access_token=token, role=user.role, redirect=dashboard_for_role(user.role))
    response = JSONResponse(content=body.model_dump())
    response.set_cookie(
        config.ACCESS_TOKEN_COOKIE,
        token,
        httponly=True,
        samesite='lax',
        secure=config.APP_ENV == 'production',
        max_age=config.JWT_EXPIRES_MINUTES * 60,
    )
    return response


@router.post('/signup', status_code=status.HTTP_201_CREATED)
def signup(data: SignupRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    problems = password_problems(data.password)
    if problems:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=' '.join(problems))

    if db.query(User).filter(User.email == data.email).first() is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail='An account with this email already exists')

    try:
        user = User(
            email=data.email,
            name=data.name,
            hashed_password=hash_password(data.password),
            role=data.role,
        )
        db.add(user)
        db.flush()
        if data.role == ROLE_THERAPIST:
            db.add(Therapist(user_id=user.id, session_rate=0))
        db.commit()
        db.refresh(user)
    except IntegrityError as exc:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail='An account with this email already exists',
        ) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    logger.info('Created %s account %s', user.role, user.id)
    response = token_response(user)
    response.status_code = status.HTTP_201_CREATED
    return response


@router.post('/login')
def login(data: LoginRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        user = db.query(User).filter(User.email == data.email).first()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    if user is None or not verify_password(data.password, user.hashed_password):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail='Invalid email or password')

    return token_response(user)


@router.get('/me', response_model=UserResponse)
def me(current_user: User = Depends(get_current_user)):
    return current_user


@router.get('/dashboard-redirect')
def dashboard_redirect(current_user: User = Depends(get_current_user)):
    return {'redirect': dashboard_for_role(current_user.role)}
