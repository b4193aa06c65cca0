"""Notification model definitions."""

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from therapy_backend.database import Base

TYPE_APPOINTMENT = "APPOINTMENT"
TYPE_PAYMENT = "PAYMENT"
TYPE_SYSTEM = "SYSTEM"
TYPE_VERIFICATION = "VERIFICATION"


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    receiver_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    type = Column(String, nullable=False, default=TYPE_SYSTEM)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    is_read = Column(Boolean, nullable=False, default=False)
    is_urgent = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    sender = relationship("User", foreign_keys=[sender_id])
