from datetime import date, datetime, timedelta

import pytest
from fastapi import HTTPException
from pydantic import ValidationError

from therapy_backend.models.availability import TherapistAvailability
from therapy_backend.models.patient import Patient
from therapy_backend.models.payment import Payment
from therapy_backend.models.therapist import TherapistAssignmentRequest
from therapy_backend.models.therapy_session import TherapySession
from therapy_backend.models.user import ROLE_PATIENT, User
from therapy_backend.routes.patient_routes import (
    CancelSessionRequest,
    InitiatePaymentRequest,
    RescheduleCheckRequest,
    RescheduleSessionRequest,
    TherapistRequestCreate,
    cancel_my_session,
    check_my_reschedule,
    initiate_payment,
    list_available_slots,
    list_my_sessions,
    request_therapist,
    reschedule_my_session,
)


def test_initiate_payment_request_accepts_camel_case_body() -> None:
    request = InitiatePaymentRequest.model_validate(
        {'date': '2024-07-22', 'timeSlot': ' 09:00-09:45 ', 'meetingType': 'online'}
    )

    assert request.slot_date == date(2024, 7, 22)
    assert request.time_slot == '09:00-09:45'
    assert request.meeting_type == 'ONLINE'
    assert request.session_type == 'Individual'


def test_initiate_payment_request_rejects_blank_time_slot() -> None:
    with pytest.raises(ValidationError):
        InitiatePaymentRequest.model_validate({'date': '2024-07-22', 'timeSlot': '   '})


def test_available_slots_lists_every_slot_with_cost(db, patient, patient_user, add_slot) -> None:
    add_slot(start_time='10:00')
    add_slot(start_time='09:00', is_free=True, is_booked=True)

    response = list_available_slots(slot_date=date(2024, 7, 22), current_user=patient_user, db=db)

    assert response.therapist_name == 'Dr. Silva'
    assert response.date == '2024-07-22'
    assert [slot.slot for slot in response.available_slots] == ['09:00-09:45', '10:00-10:45']
    free_slot, paid_slot = response.available_slots
    assert free_slot.is_booked and not free_slot.is_available and free_slot.cost == 0
    assert paid_slot.is_available and not paid_slot.is_free and paid_slot.cost == 2500.0
    assert not paid_slot.is_blocked


def test_available_slots_reports_day_without_availability(db, patient, patient_user) -> None:
    response = list_available_slots(slot_date=date(2024, 7, 23), current_user=patient_user, db=db)

    assert response.available_slots == []
    assert response.message == 'Therapist is not available on this day'
    assert response.date is None


def test_available_slots_requires_patient_profile(db, patient_user) -> None:
    with pytest.raises(HTTPException) as exception_info:
        list_available_slots(slot_date=date(2024, 7, 22), current_user=patient_user, db=db)

    assert exception_info.value.status_code == 404
    assert exception_info.value.detail == 'Patient profile not found. Please create a profile first.'


def test_available_slots_requires_assigned_therapist(db, patient_user) -> None:
    db.add(Patient(user_id=patient_user.id, first_name='Nimal', last_name='Perera'))
    db.commit()

    with pytest.raises(HTTPException) as exception_info:
        list_available_slots(slot_date=date(2024, 7, 22), current_user=patient_user, db=db)

    assert exception_info.value.status_code == 400


def test_initiate_payment_for_free_slot_returns_session(db, patient, patient_user, add_slot) -> None:
    add_slot(is_free=True)

    response = initiate_payment(
        data=InitiatePaymentRequest(date=date(2024, 7, 22), time_slot='09:00-09:45'),
        current_user=patient_user,
        db=db,
    )

    assert response.requires_payment is False
    assert response.message == 'Free session booked successfully'
    assert response.session.scheduled_at == '2024-07-22T09:00:00.000Z'
    assert response.payment_data is None


def test_initiate_payment_for_paid_slot_returns_checkout(
    db, patient, patient_user, add_slot, payhere_credentials,
) -> None:
    add_slot()

    response = initiate_payment(
        data=InitiatePaymentRequest(date=date(2024, 7, 22), time_slot='09:00-09:45'),
        current_user=patient_user,
        db=db,
    )

    assert response.requires_payment is True
    assert response.payment_data['merchant_id'] == '1211149'
    assert response.session_id == db.query(TherapySession).one().id


def test_initiate_payment_over_http_uses_camel_case(client, db, patient, patient_user, add_slot, auth_headers) -> None:
    add_slot(is_free=True)

    response = client.post(
        '/api/patient/payment/initiate',
        json={'date': '2024-07-22', 'timeSlot': '09:00-09:45'},
        headers=auth_headers(patient_user),
    )

    assert response.status_code == 200
    body = response.json()
    assert body['requiresPayment'] is False
    assert body['session']['scheduledAt'] == '2024-07-22T09:00:00.000Z'
    assert body['session']['sessionType'] == 'IN_PERSON'
    assert 'paymentData' not in body


def test_initiate_payment_over_http_reports_taken_slot(
    client, db, patient, patient_user, add_slot, auth_headers,
) -> None:
    add_slot(is_free=True, is_booked=True)

    response = client.post(
        '/api/patient/payment/initiate',
        json={'date': '2024-07-22', 'timeSlot': '09:00-09:45'},
        headers=auth_headers(patient_user),
    )

    assert response.status_code == 400
    assert response.json() == {'error': 'This time slot is not available or has already been booked'}


def test_initiate_payment_over_http_requires_token(client) -> None:
    response = client.post('/api/patient/payment/initiate', json={'date': '2024-07-22', 'timeSlot': '09:00-09:45'})

    assert response.status_code == 401
    assert response.json() == {'error': 'Unauthorized'}


def test_initiate_payment_over_http_rejects_missing_fields(client, patient_user, auth_headers) -> None:
    response = client.post('/api/patient/payment/initiate', json={}, headers=auth_headers(patient_user))

    assert response.status_code == 400
    assert response.json()['error'] == 'Invalid request'


def test_list_my_sessions_newest_first(db, patient, patient_user, therapist) -> None:
    for day in (1, 3, 2):
        db.add(TherapySession(
            patient_id=patient.id,
            therapist_id=therapist.id,
            scheduled_at=datetime(2024, 7, day, 9, 0),
            booked_rate=0,
        ))
    db.commit()

    sessions = list_my_sessions(current_user=patient_user, db=db)

    assert [session.scheduled_at for session in sessions] == [
        '2024-07-03T09:00:00.000Z',
        '2024-07-02T09:00:00.000Z',
        '2024-07-01T09:00:00.000Z',
    ]
    assert sessions[0].therapist_name == 'Dr. Silva'


def _paid_session(db, patient, therapist, slot, hours_ahead: float) -> TherapySession:
    slot.is_booked = True
    therapy_session = TherapySession(
        patient_id=patient.id,
        therapist_id=therapist.id,
        availability_slot_id=slot.id,
        scheduled_at=datetime.utcnow() + timedelta(hours=hours_ahead),
        booked_rate=2500.0,
    )
    db.add(therapy_session)
    db.flush()
    db.add(Payment(
        order_id=f'ORDER-{therapy_session.id}',
        session_id=therapy_session.id,
        patient_id=patient.id,
        amount=2500.0,
        status='COMPLETE',
    ))
    db.commit()
    return therapy_session


def test_cancel_my_session_releases_slot_and_refunds(db, patient, patient_user, therapist, add_slot) -> None:
    slot = add_slot()
    therapy_session = _paid_session(db, patient, therapist, slot, hours_ahead=48)

    response = cancel_my_session(
        data=CancelSessionRequest(session_id=therapy_session.id, cancel_reason='Travelling'),
        current_user=patient_user,
        db=db,
    )

    assert response.status == 'CANCELLED'
    assert response.refund.refund_percentage == 90
    assert response.refund.refund_amount == 2250.0
    db.refresh(slot)
    assert not slot.is_booked
    db.refresh(therapy_session)
    assert therapy_session.cancel_reason == 'Cancelled by patient. Reason: Travelling'


def test_cancel_my_session_rejects_already_cancelled(db, patient, patient_user, therapist, add_slot) -> None:
    therapy_session = _paid_session(db, patient, therapist, add_slot(), hours_ahead=2)
    therapy_session.status = 'CANCELLED'
    db.commit()

    with pytest.raises(HTTPException) as exception_info:
        cancel_my_session(data=CancelSessionRequest(session_id=therapy_session.id), current_user=patient_user, db=db)

    assert exception_info.value.status_code == 400
    assert exception_info.value.detail == 'Session is already cancelled'


def test_cancel_my_session_hides_other_patients_sessions(db, patient, therapist, add_slot) -> None:
    therapy_session = _paid_session(db, patient, therapist, add_slot(), hours_ahead=2)
    other_user = User(email='other@example.com', name='Other', role=ROLE_PATIENT)
    db.add(other_user)
    db.flush()
    db.add(Patient(user_id=other_user.id, first_name='Other', last_name='Patient'))
    db.commit()

    with pytest.raises(HTTPException) as exception_info:
        cancel_my_session(data=CancelSessionRequest(session_id=therapy_session.id), current_user=other_user, db=db)

    assert exception_info.value.status_code == 404


def test_request_therapist_creates_pending_request(db, patient_user, therapist) -> None:
    db.add(Patient(user_id=patient_user.id, first_name='Nimal', last_name='Perera'))
    db.commit()

    created = request_therapist(
        data=TherapistRequestCreate(therapist_id=therapist.id, message='  Looking for weekly sessions  '),
        current_user=patient_user,
        db=db,
    )

    assert created.status == 'PENDING'
    assert created.request_message == 'Looking for weekly sessions'

    with pytest.raises(HTTPException) as exception_info:
        request_therapist(
            data=TherapistRequestCreate(therapist_id=therapist.id),
            current_user=patient_user,
            db=db,
        )

    assert exception_info.value.status_code == 409
    assert db.query(TherapistAssignmentRequest).count() == 1


def test_reschedule_my_session_over_http(client, db, patient, patient_user, add_slot, auth_headers) -> None:
    upcoming = date.today() + timedelta(days=5)
    old_slot = add_slot(slot_date=upcoming, start_time='09:00', is_free=True)
    new_slot = add_slot(slot_date=upcoming, start_time='15:00', is_free=True)
    booked = initiate_payment(
        data=InitiatePaymentRequest.model_validate({'date': upcoming.isoformat(), 'timeSlot': '09:00-09:45'}),
        current_user=patient_user,
        db=db,
    )

    response = client.post(
        '/api/patient/sessions/reschedule',
        json={'sessionId': booked.session.id, 'date': upcoming.isoformat(), 'timeSlot': '15:00-15:45'},
        headers=auth_headers(patient_user),
    )

    assert response.status_code == 200
    body = response.json()
    assert body['success'] is True
    assert body['session']['scheduledAt'] == f'{upcoming.isoformat()}T15:00:00.000Z'
    db.expire_all()
    assert not db.query(TherapistAvailability).filter(TherapistAvailability.id == old_slot.id).one().is_booked
    assert db.query(TherapistAvailability).filter(TherapistAvailability.id == new_slot.id).one().is_booked


def test_reschedule_my_session_rejects_cancelled(db, patient, patient_user, therapist, add_slot) -> None:
    therapy_session = _paid_session(db, patient, therapist, add_slot(), hours_ahead=48)
    therapy_session.status = 'CANCELLED'
    db.commit()

    with pytest.raises(HTTPException) as exception_info:
        reschedule_my_session(
            data=RescheduleSessionRequest.model_validate({
                'sessionId': therapy_session.id,
                'date': (date.today() + timedelta(days=3)).isoformat(),
                'timeSlot': '10:00',
            }),
            current_user=patient_user,
            db=db,
        )

    assert exception_info.value.status_code == 400
    assert exception_info.value.detail == 'Cannot reschedule a cancelled session'


def test_check_my_reschedule_flags_rate_change(db, patient, patient_user, therapist, add_slot) -> None:
    therapy_session = _paid_session(db, patient, therapist, add_slot(), hours_ahead=48)
    therapist.session_rate = 3000.0
    db.commit()

    response = check_my_reschedule(
        data=RescheduleCheckRequest(session_id=therapy_session.id),
        current_user=patient_user,
        db=db,
    )

    assert not response.can_reschedule
    assert response.reason == 'RATE_CHANGED'
    assert response.current_rate == 3000.0
