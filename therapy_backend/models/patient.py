"""Patient and parent/guardian model definitions."""

from sqlalchemy import Column, Date, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from therapy_backend.database import Base


class Patient(Base):
    """A person receiving therapy. Children managed by a parent have no user account."""
    __tablename__ = "patients"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=True)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False)
    date_of_birth = Column(Date)
    gender = Column(String)
    phone = Column(String)
    primary_therapist_id = Column(Integer, ForeignKey("therapists.id"), nullable=True, index=True)

    user = relationship("User", back_populates="patient_profile")
    primary_therapist = relationship("Therapist")
    guardians = relationship("ParentGuardian", back_populates="patient")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class ParentGuardian(Base):
    """Links a parent/guardian user to a child patient."""
    __tablename__ = "parent_guardians"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False, index=True)
    relationship_type = Column("relationship", String, default="parent")

    patient = relationship("Patient", back_populates="guardians")
