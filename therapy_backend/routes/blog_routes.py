from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from therapy_backend.auth.dependencies import get_current_user, require_roles
from therapy_backend.database import get_db
from therapy_backend.models.blog import Blog
from therapy_backend.models.user import ROLE_ADMIN, ROLE_MANAGER, ROLE_THERAPIST, User
from therapy_backend.routes.common import CamelModel, database_unavailable, ensure_database_ready

router = APIRouter(tags=['blogs'])

BLOG_STATUSES = ('draft', 'published')
MAX_TITLE_LENGTH = 200


class BlogPayload(CamelModel):
    title: str
    summary: str | None = None
    content: str
    category: str | None = None
    status: str = 'draft'

    @field_validator('title')
    @classmethod
    def validate_title(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Title is required.')
        if len(normalized) > MAX_TITLE_LENGTH:
            raise ValueError(f'Title must be {MAX_TITLE_LENGTH} characters or fewer.')
        return normalized

    @field_validator('content')
    @classmethod
    def validate_content(cls, value: str) -> str:
        if not value.strip():
            raise ValueError('Content is required.')
        return value

    @field_validator('status')
    @classmethod
    def validate_status(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in BLOG_STATUSES:
            raise ValueError('status must be draft or published')
        return normalized


class BlogResponse(CamelModel):
    id: int
    author_id: int
    author_name: str | None = None
    title: str
    summary: str | None = None
    content: str
    category: str | None = None
    status: str
    created_at: datetime
    updated_at: datetime | None = None


def serialize_blog(blog: Blog) -> BlogResponse:
    return BlogResponse(
        id=blog.id,
        author_id=blog.author_id,
        author_name=blog.author.name if blog.author else None,
        title=blog.title,
        summary=blog.summary,
        content=blog.content,
        category=blog.category,
        status=blog.status,
        created_at=blog.created_at,
        updated_at=blog.updated_at,
    )


def get_visible_blog(db: Session, blog_id: int, user: User) -> Blog:
    blog = db.query(Blog).filter(Blog.id == blog_id).first()
    if blog is None or (blog.status != 'published' and blog.author_id != user.id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Blog not found')
    return blog


def get_owned_blog(db: Session, blog_id: int, user: User) -> Blog:
    blog = db.query(Blog).filter(Blog.id == blog_id).first()
    if blog is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Blog not found')
    if blog.author_id != user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='You can only modify your own posts')
    return blog


@router.get('', response_model=list[BlogResponse])
def list_blogs(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        query = db.query(Blog)
        if current_user.role == ROLE_THERAPIST:
            query = query.filter(Blog.author_id == current_user.id)
        else:
            query = query.filter(Blog.status == 'published')
        return [serialize_blog(blog) for blog in query.order_by(Blog.created_at.desc()).all()]
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('', response_model=BlogResponse, status_code=status.HTTP_201_CREATED)
def create_blog(
    data: BlogPayload,
    current_user: User = Depends(require_roles(ROLE_THERAPIST, ROLE_MANAGER, ROLE_ADMIN)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        blog = Blog(
            author_id=current_user.id,
            title=data.title,
            summary=data.summary,
            content=data.content,
            category=data.category,
            status=data.status,
        )
        db.add(blog)
        db.commit()
        db.refresh(blog)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return serialize_blog(blog)


@router.get('/{blog_id}', response_model=BlogResponse)
def get_blog(blog_id: int, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    ensure_database_ready()
    return serialize_blog(get_visible_blog(db, blog_id, current_user))


@router.put('/{blog_id}', response_model=BlogResponse)
def update_blog(
    blog_id: int,
    data: BlogPayload,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    blog = get_owned_blog(db, blog_id, current_user)
    try:
        blog.title = data.title
        blog.summary = data.summary
        blog.content = data.content
        blog.category = data.category
        blog.status = data.status
        db.commit()
        db.refresh(blog)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return serialize_blog(blog)


@router.delete('/{blog_id}', status_code=status.HTTP_204_NO_CONTENT)
def delete_blog(blog_id: int, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    ensure_database_ready()

    blog = get_owned_blog(db, blog_id, current_user)
    try:
        db.delete(blog)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc
