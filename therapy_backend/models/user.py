"""User model definitions."""

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from therapy_backend.database import Base

ROLE_PATIENT = "NORMAL_USER"
ROLE_PARENT = "PARENT_GUARDIAN"
ROLE_THERAPIST = "THERAPIST"
ROLE_MANAGER = "MANAGER"
ROLE_ADMIN = "ADMIN"

ALL_ROLES = (ROLE_PATIENT, ROLE_PARENT, ROLE_THERAPIST, ROLE_MANAGER, ROLE_ADMIN)
SELF_SIGNUP_ROLES = (ROLE_PATIENT, ROLE_PARENT, ROLE_THERAPIST)


class User(Base):
    """Represents an application user."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String)
    hashed_password = Column(String)
    role = Column(String, nullable=False, default=ROLE_PATIENT)
    created_at = Column(DateTime, default=datetime.utcnow)

    patient_profile = relationship("Patient", back_populates="user", uselist=False)
    therapist_profile = relationship("Therapist", back_populates="user", uselist=False)


class OAuthAccount(Base):
    """Third-party OAuth tokens linked to a user (Google for calendar events)."""
    __tablename__ = "oauth_accounts"
    __table_args__ = (UniqueConstraint("user_id", "provider", name="uq_oauth_user_provider"),)

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    provider = Column(String, nullable=False)
    access_token = Column(Text)
    refresh_token = Column(Text)
