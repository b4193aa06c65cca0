"""Payment model definitions."""

from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, Float, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from therapy_backend.database import Base

PAYMENT_PENDING = "PENDING"
PAYMENT_COMPLETE = "COMPLETE"
PAYMENT_FAILED = "FAILED"
PAYMENT_CANCELLED = "CANCELLED"
PAYMENT_CHARGEDBACK = "CHARGEDBACK"


class Payment(Base):
    """A PayHere checkout for one paid therapy session."""
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True)
    order_id = Column(String, unique=True, nullable=False, index=True)
    session_id = Column(Integer, ForeignKey("therapy_sessions.id"), unique=True, nullable=False)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    amount = Column(Float, nullable=False)
    currency = Column(String, nullable=False, default="LKR")
    status = Column(String, nullable=False, default=PAYMENT_PENDING)
    payment_id = Column(String)
    payment_method = Column(String)
    status_message = Column(String)
    # "metadata" is reserved on declarative classes.
    details = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    session = relationship("TherapySession", back_populates="payment")
