"""Availability model definitions."""

from datetime import datetime

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, String, UniqueConstraint

from therapy_backend.database import Base


class TherapistAvailability(Base):
    """A bookable slot on a therapist's calendar. Rows are never deleted."""
    __tablename__ = "therapist_availability"
    __table_args__ = (
        UniqueConstraint("therapist_id", "date", "start_time", name="uq_availability_therapist_slot"),
    )

    id = Column(Integer, primary_key=True)
    therapist_id = Column(Integer, ForeignKey("therapists.id"), nullable=False)
    date = Column(Date, nullable=False)
    start_time = Column(String(5), nullable=False)  # HH:MM
    is_booked = Column(Boolean, nullable=False, default=False)
    is_free = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)
