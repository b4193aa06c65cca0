"""Therapy session model definitions."""

from datetime import datetime

from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from therapy_backend.database import Base

STATUS_SCHEDULED = "SCHEDULED"
STATUS_COMPLETED = "COMPLETED"
STATUS_CANCELLED = "CANCELLED"

MEETING_TYPES = ("IN_PERSON", "ONLINE", "HYBRID")


class TherapySession(Base):
    """Represents a scheduled therapy appointment backed by one availability slot."""
    __tablename__ = "therapy_sessions"

    id = Column(Integer, primary_key=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False, index=True)
    therapist_id = Column(Integer, ForeignKey("therapists.id"), nullable=False)
    availability_slot_id = Column(Integer, ForeignKey("therapist_availability.id"))
    scheduled_at = Column(DateTime, nullable=False)  # naive UTC
    duration = Column(Integer, nullable=False, default=45)
    status = Column(String, nullable=False, default=STATUS_SCHEDULED)
    type = Column(String, default="Individual")
    session_type = Column(String, default="IN_PERSON")
    booked_rate = Column(Float, default=0)
    meeting_link = Column(String)
    calendar_event_id = Column(String)
    cancel_reason = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    patient = relationship("Patient")
    therapist = relationship("Therapist")
    availability_slot = relationship("TherapistAvailability")
    payment = relationship("Payment", back_populates="session", uselist=False)
