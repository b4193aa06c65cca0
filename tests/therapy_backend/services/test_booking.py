from datetime import date, datetime, timedelta

import pytest
from fastapi import HTTPException

from therapy_backend.models.availability import TherapistAvailability
from therapy_backend.models.notification import Notification
from therapy_backend.models.payment import Payment
from therapy_backend.models.therapy_session import TherapySession
from therapy_backend.services import booking
from therapy_backend.services.booking import SLOT_UNAVAILABLE_DETAIL, book_session
from therapy_backend.services.scheduling import format_utc_iso


def test_free_slot_booking_creates_session_and_marks_slot(db, patient, patient_user, add_slot) -> None:
    slot = add_slot(is_free=True)

    result = book_session(
        db,
        patient=patient,
        booking_user=patient_user,
        slot_date=date(2024, 7, 22),
        time_slot='09:00-09:45',
    )

    assert not result.requires_payment
    assert format_utc_iso(result.session.scheduled_at) == '2024-07-22T09:00:00.000Z'
    assert result.session.booked_rate == 0
    assert result.session.availability_slot_id == slot.id
    db.refresh(slot)
    assert slot.is_booked
    assert db.query(Payment).count() == 0
    assert db.query(Notification).count() == 2


def test_second_booking_of_same_slot_is_rejected(db, patient, patient_user, add_slot) -> None:
    add_slot(is_free=True)
    book_session(db, patient=patient, booking_user=patient_user, slot_date=date(2024, 7, 22), time_slot='09:00-09:45')

    with pytest.raises(HTTPException) as exception_info:
        book_session(
            db,
            patient=patient,
            booking_user=patient_user,
            slot_date=date(2024, 7, 22),
            time_slot='09:00-09:45',
        )

    assert exception_info.value.status_code == 400
    assert exception_info.value.detail == SLOT_UNAVAILABLE_DETAIL
    assert db.query(TherapySession).count() == 1


def test_lost_claim_rolls_back_without_session(db, patient, patient_user, add_slot, monkeypatch) -> None:
    add_slot(is_free=True)
    monkeypatch.setattr(booking, 'claim_slot', lambda _db, _slot_id: False)

    with pytest.raises(HTTPException) as exception_info:
        book_session(
            db,
            patient=patient,
            booking_user=patient_user,
            slot_date=date(2024, 7, 22),
            time_slot='09:00-09:45',
        )

    assert exception_info.value.status_code == 400
    assert db.query(TherapySession).count() == 0


def test_paid_slot_booking_creates_pending_payment(
    db, patient, patient_user, therapist, add_slot, payhere_credentials,
) -> None:
    slot = add_slot()

    result = book_session(
        db,
        patient=patient,
        booking_user=patient_user,
        slot_date=date(2024, 7, 22),
        time_slot='09:00-09:45',
    )

    assert result.requires_payment
    payments = db.query(Payment).all()
    assert len(payments) == 1
    assert payments[0].status == 'PENDING'
    assert payments[0].amount == therapist.session_rate
    assert payments[0].session_id == result.session.id
    assert payments[0].details['bookingDetails']['availabilitySlotId'] == slot.id
    assert result.payment_data['order_id'] == payments[0].order_id
    assert result.payment_data['amount'] == '2500.00'
    assert result.payment_data['return_url'].endswith('/patient/appointments?payment=success')
    db.refresh(slot)
    assert slot.is_booked
    assert db.query(Notification).count() == 0


def test_paid_booking_without_credentials_changes_nothing(db, patient, patient_user, add_slot, monkeypatch) -> None:
    from therapy_backend.core import config

    monkeypatch.setattr(config, 'PAYHERE_MERCHANT_ID', '')
    monkeypatch.setattr(config, 'PAYHERE_MERCHANT_SECRET', '')
    slot = add_slot()

    with pytest.raises(HTTPException) as exception_info:
        book_session(
            db,
            patient=patient,
            booking_user=patient_user,
            slot_date=date(2024, 7, 22),
            time_slot='09:00-09:45',
        )

    assert exception_info.value.status_code == 500
    assert exception_info.value.detail == 'PayHere credentials not configured'
    db.refresh(slot)
    assert not slot.is_booked
    assert db.query(TherapySession).count() == 0


def test_booking_without_assigned_therapist_is_rejected(db, patient, patient_user) -> None:
    patient.primary_therapist_id = None
    db.commit()

    with pytest.raises(HTTPException) as exception_info:
        book_session(
            db,
            patient=patient,
            booking_user=patient_user,
            slot_date=date(2024, 7, 22),
            time_slot='09:00-09:45',
        )

    assert exception_info.value.status_code == 400
    assert exception_info.value.detail == 'No assigned therapist. Please select a therapist first.'


def test_booking_missing_slot_is_rejected(db, patient, patient_user, add_slot) -> None:
    add_slot(start_time='10:00', is_free=True)

    with pytest.raises(HTTPException) as exception_info:
        book_session(
            db,
            patient=patient,
            booking_user=patient_user,
            slot_date=date(2024, 7, 22),
            time_slot='09:00-09:45',
        )

    assert exception_info.value.status_code == 400
    assert exception_info.value.detail == SLOT_UNAVAILABLE_DETAIL


@pytest.mark.parametrize('time_slot', ['nine', '25:00-25:45', ''])
def test_booking_rejects_unparseable_time(db, patient, patient_user, time_slot: str) -> None:
    with pytest.raises(HTTPException) as exception_info:
        book_session(db, patient=patient, booking_user=patient_user, slot_date=date(2024, 7, 22), time_slot=time_slot)

    assert exception_info.value.status_code == 400
    assert exception_info.value.detail == 'Invalid date or time provided'


def test_booking_rejects_unknown_meeting_type(db, patient, patient_user) -> None:
    with pytest.raises(HTTPException) as exception_info:
        book_session(
            db,
            patient=patient,
            booking_user=patient_user,
            slot_date=date(2024, 7, 22),
            time_slot='09:00-09:45',
            meeting_type='PHONE',
        )

    assert exception_info.value.status_code == 400


def test_online_booking_without_google_falls_back_to_generated_link(
    db, patient, patient_user, add_slot, monkeypatch,
) -> None:
    from therapy_backend.core import config

    monkeypatch.setattr(config, 'APP_URL', 'https://therapy.example.com')
    slot = add_slot(is_free=True)

    result = book_session(
        db,
        patient=patient,
        booking_user=patient_user,
        slot_date=date(2024, 7, 22),
        time_slot='09:00-09:45',
        meeting_type='ONLINE',
    )

    assert result.meeting_link.startswith('https://therapy.example.com/meeting/')
    assert result.meeting_link.endswith(f'?session={patient.id}-{slot.id}')
    assert result.session.meeting_link == result.meeting_link
    assert result.session.session_type == 'ONLINE'


def test_google_failure_still_books_with_fallback_link(db, patient, patient_user, add_slot, monkeypatch) -> None:
    from therapy_backend.models.user import OAuthAccount
    from therapy_backend.services import meetings

    db.add(OAuthAccount(user_id=patient.primary_therapist.user_id, provider='google',
                        access_token='access', refresh_token='refresh'))
    db.commit()
    add_slot(is_free=True)

    def failing_google_meet_event(**_kwargs):
        raise meetings.MeetingProviderError('calendar unavailable')

    monkeypatch.setattr(meetings, 'create_google_meet_event', failing_google_meet_event)

    result = book_session(
        db,
        patient=patient,
        booking_user=patient_user,
        slot_date=date(2024, 7, 22),
        time_slot='09:00-09:45',
        meeting_type='HYBRID',
    )

    assert '/meeting/' in result.meeting_link
    assert result.session.calendar_event_id is None


def test_cancel_session_reopens_slot(db, patient, patient_user, add_slot) -> None:
    slot = add_slot(is_free=True)
    result = book_session(
        db,
        patient=patient,
        booking_user=patient_user,
        slot_date=date(2024, 7, 22),
        time_slot='09:00-09:45',
    )

    booking.cancel_session(db, result.session, 'Patient unavailable')
    db.commit()

    reopened = db.query(TherapistAvailability).filter(TherapistAvailability.id == slot.id).one()
    assert not reopened.is_booked
    assert result.session.status == 'CANCELLED'
    assert result.session.cancel_reason == 'Patient unavailable'


def test_lost_claim_creates_no_calendar_event(db, patient, patient_user, add_slot, monkeypatch) -> None:
    from therapy_backend.services import meetings

    add_slot(is_free=True)
    created = []
    monkeypatch.setattr(booking, 'claim_slot', lambda _db, _slot_id: False)
    monkeypatch.setattr(meetings, 'create_session_meeting', lambda *args, **kwargs: created.append(kwargs))

    with pytest.raises(HTTPException) as exception_info:
        book_session(
            db,
            patient=patient,
            booking_user=patient_user,
            slot_date=date(2024, 7, 22),
            time_slot='09:00-09:45',
            meeting_type='ONLINE',
        )

    assert exception_info.value.detail == SLOT_UNAVAILABLE_DETAIL
    assert created == []


def test_delete_session_meeting_uses_linked_google_account(db, therapist, monkeypatch) -> None:
    from therapy_backend.models.user import OAuthAccount
    from therapy_backend.services import meetings

    db.add(OAuthAccount(user_id=therapist.user_id, provider='google', access_token='access', refresh_token='refresh'))
    db.commit()
    deleted = []
    monkeypatch.setattr(meetings, 'delete_google_meet_event', lambda **kwargs: deleted.append(kwargs['event_id']))

    meetings.delete_session_meeting(db, therapist_user_id=therapist.user_id, patient_user_id=None, event_id='evt-1')

    assert deleted == ['evt-1']


def _upcoming_free_booking(db, patient, patient_user, add_slot, days_ahead: int = 7):
    upcoming = date.today() + timedelta(days=days_ahead)
    old_slot = add_slot(slot_date=upcoming, start_time='09:00', is_free=True)
    new_slot = add_slot(slot_date=upcoming, start_time='11:00', is_free=True)
    result = book_session(db, patient=patient, booking_user=patient_user, slot_date=upcoming, time_slot='09:00-09:45')
    return result.session, old_slot, new_slot


def test_reschedule_moves_session_and_swaps_slots(db, patient, patient_user, add_slot) -> None:
    therapy_session, old_slot, new_slot = _upcoming_free_booking(db, patient, patient_user, add_slot)

    moved = booking.reschedule_session(
        db,
        therapy_session,
        new_date=new_slot.date,
        time_slot='11:00-11:45',
        rescheduled_by=patient_user,
    )

    assert moved.availability_slot_id == new_slot.id
    assert moved.scheduled_at == datetime(new_slot.date.year, new_slot.date.month, new_slot.date.day, 11, 0)
    assert moved.status == 'SCHEDULED'
    db.refresh(old_slot)
    db.refresh(new_slot)
    assert not old_slot.is_booked
    assert new_slot.is_booked
    assert db.query(Notification).filter(Notification.title == 'Session Rescheduled').count() == 1


@pytest.mark.parametrize(
    ('session_status', 'detail'),
    [
        ('CANCELLED', 'Cannot reschedule a cancelled session'),
        ('COMPLETED', 'Cannot reschedule a completed session'),
    ],
)
def test_reschedule_rejects_finished_sessions(db, patient, patient_user, add_slot, session_status, detail) -> None:
    therapy_session, old_slot, new_slot = _upcoming_free_booking(db, patient, patient_user, add_slot)
    therapy_session.status = session_status
    db.commit()

    with pytest.raises(HTTPException) as exception_info:
        booking.reschedule_session(
            db, therapy_session, new_date=new_slot.date, time_slot='11:00-11:45', rescheduled_by=patient_user,
        )

    assert exception_info.value.detail == detail
    db.refresh(new_slot)
    assert not new_slot.is_booked


def test_reschedule_rejects_time_in_the_past(db, patient, patient_user, add_slot) -> None:
    therapy_session, old_slot, _new_slot = _upcoming_free_booking(db, patient, patient_user, add_slot)
    past_slot = add_slot(slot_date=date(2024, 7, 22), start_time='10:00', is_free=True)

    with pytest.raises(HTTPException) as exception_info:
        booking.reschedule_session(
            db, therapy_session, new_date=past_slot.date, time_slot='10:00-10:45', rescheduled_by=patient_user,
        )

    assert exception_info.value.detail == 'New session time must be in the future'
    db.refresh(past_slot)
    db.refresh(old_slot)
    assert not past_slot.is_booked
    assert old_slot.is_booked


def test_reschedule_lost_claim_keeps_original_slot(db, patient, patient_user, add_slot, monkeypatch) -> None:
    therapy_session, old_slot, new_slot = _upcoming_free_booking(db, patient, patient_user, add_slot)
    original_start = therapy_session.scheduled_at
    monkeypatch.setattr(booking, 'claim_slot', lambda _db, _slot_id: False)

    with pytest.raises(HTTPException) as exception_info:
        booking.reschedule_session(
            db, therapy_session, new_date=new_slot.date, time_slot='11:00-11:45', rescheduled_by=patient_user,
        )

    assert exception_info.value.detail == SLOT_UNAVAILABLE_DETAIL
    stored = db.query(TherapySession).one()
    assert stored.availability_slot_id == old_slot.id
    assert stored.scheduled_at == original_start
    db.refresh(old_slot)
    assert old_slot.is_booked


def test_reschedule_rejects_slot_with_different_price(db, patient, patient_user, add_slot) -> None:
    therapy_session, _old_slot, new_slot = _upcoming_free_booking(db, patient, patient_user, add_slot)
    paid_slot = add_slot(slot_date=new_slot.date, start_time='14:00')

    with pytest.raises(HTTPException) as exception_info:
        booking.reschedule_session(
            db, therapy_session, new_date=paid_slot.date, time_slot='14:00-14:45', rescheduled_by=patient_user,
        )

    assert exception_info.value.status_code == 400
    db.refresh(paid_slot)
    assert not paid_slot.is_booked


def test_check_reschedule_reports_rate_change(db, patient, patient_user, therapist, add_slot) -> None:
    therapy_session, _old_slot, _new_slot = _upcoming_free_booking(db, patient, patient_user, add_slot)
    therapy_session.booked_rate = 2000.0
    db.commit()

    check = booking.check_reschedule(therapy_session)

    assert not check.can_reschedule
    assert check.reason == 'RATE_CHANGED'
    assert (check.original_rate, check.current_rate) == (2000.0, 2500.0)
