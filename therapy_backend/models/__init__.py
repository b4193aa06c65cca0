"""Importing the package registers every mapped class on ``Base.metadata``."""

from therapy_backend.models import availability, blog, notification, patient, payment, therapist, therapy_session, user

__all__ = [
    "availability",
    "blog",
    "notification",
    "patient",
    "payment",
    "therapist",
    "therapy_session",
    "user",
]
