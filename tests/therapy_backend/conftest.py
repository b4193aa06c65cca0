import os
from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

import therapy_backend.models  # noqa: E402,F401
from therapy_backend.core import config  # noqa: E402
from therapy_backend.database import Base  # noqa: E402
from therapy_backend.models.availability import TherapistAvailability  # noqa: E402
from therapy_backend.models.patient import ParentGuardian, Patient  # noqa: E402
from therapy_backend.models.therapist import Therapist  # noqa: E402
from therapy_backend.models.user import ROLE_PARENT, ROLE_PATIENT, ROLE_THERAPIST, User  # noqa: E402


@pytest.fixture
def db():
    # One shared connection so TestClient worker threads see the same in-memory database.
    engine = create_engine(
        'sqlite:///:memory:',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    session = testing_session_local()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def skip_schema_check(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr('therapy_backend.routes.common.ensure_schema', lambda: None)


@pytest.fixture
def payhere_credentials(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, 'PAYHERE_MERCHANT_ID', '1211149')
    monkeypatch.setattr(config, 'PAYHERE_MERCHANT_SECRET', 'test-secret')
    monkeypatch.setattr(config, 'APP_URL', 'https://therapy.example.com')


@pytest.fixture
def therapist(db) -> Therapist:
    user = User(email='therapist@example.com', name='Dr. Silva', role=ROLE_THERAPIST)
    db.add(user)
    db.flush()
    therapist = Therapist(user_id=user.id, session_rate=2500.0)
    db.add(therapist)
    db.commit()
    db.refresh(therapist)
    return therapist


@pytest.fixture
def patient_user(db) -> User:
    user = User(email='patient@example.com', name='Nimal Perera', role=ROLE_PATIENT)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def patient(db, patient_user, therapist) -> Patient:
    patient = Patient(
        user_id=patient_user.id,
        first_name='Nimal',
        last_name='Perera',
        primary_therapist_id=therapist.id,
    )
    db.add(patient)
    db.commit()
    db.refresh(patient)
    return patient


@pytest.fixture
def parent_user(db) -> User:
    user = User(email='parent@example.com', name='Kamala Fernando', role=ROLE_PARENT)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def child(db, parent_user, therapist) -> Patient:
    child = Patient(first_name='Ayesha', last_name='Fernando', primary_therapist_id=therapist.id)
    db.add(child)
    db.flush()
    db.add(ParentGuardian(user_id=parent_user.id, patient_id=child.id))
    db.commit()
    db.refresh(child)
    return child


@pytest.fixture
def add_slot(db, therapist):
    def _add_slot(slot_date: date = date(2024, 7, 22), start_time: str = '09:00', is_free: bool = False,
                  is_booked: bool = False) -> TherapistAvailability:
        slot = TherapistAvailability(
            therapist_id=therapist.id,
            date=slot_date,
            start_time=start_time,
            is_free=is_free,
            is_booked=is_booked,
        )
        db.add(slot)
        db.commit()
        db.refresh(slot)
        return slot

    return _add_slot


@pytest.fixture
def client(db):
    from fastapi.testclient import TestClient

    from therapy_backend.database import get_db
    from therapy_backend.main import app

    app.dependency_overrides[get_db] = lambda: db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    from therapy_backend.auth.jwt_handler import create_access_token

    def _auth_headers(user: User) -> dict:
        return {'Authorization': f'Bearer {create_access_token(subject=user.email, role=user.role)}'}

    return _auth_headers
