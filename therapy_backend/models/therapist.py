"""Therapist model definitions."""

from datetime import datetime

from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from therapy_backend.database import Base

VERIFICATION_PENDING = "PENDING"
VERIFICATION_APPROVED = "APPROVED"
VERIFICATION_REJECTED = "REJECTED"
VERIFICATION_RESUBMIT = "REQUIRES_RESUBMISSION"


class Therapist(Base):
    """Represents a therapist and their booking rate."""
    __tablename__ = "therapists"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    session_rate = Column(Float, default=0)
    bio = Column(Text)
    specialization = Column(String)

    user = relationship("User", back_populates="therapist_profile")


class TherapistVerification(Base):
    """Professional credentials submitted by a therapist for manager review."""
    __tablename__ = "therapist_verifications"

    id = Column(Integer, primary_key=True)
    therapist_id = Column(Integer, ForeignKey("therapists.id"), unique=True, nullable=False)
    status = Column(String, nullable=False, default=VERIFICATION_PENDING)
    license_number = Column(String)
    primary_specialty = Column(String)
    years_of_experience = Column(Integer)
    highest_education = Column(String)
    institution = Column(String)
    submitted_at = Column(DateTime)
    reviewed_at = Column(DateTime)
    reviewed_by = Column(Integer, ForeignKey("users.id"))
    review_notes = Column(Text)

    therapist = relationship("Therapist")


class TherapistAssignmentRequest(Base):
    """A patient's request to be taken on by a therapist."""
    __tablename__ = "therapist_assignment_requests"

    id = Column(Integer, primary_key=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False, index=True)
    therapist_id = Column(Integer, ForeignKey("therapists.id"), nullable=False, index=True)
    status = Column(String, nullable=False, default="PENDING")
    request_message = Column(Text)
    response_message = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    patient = relationship("Patient")
