from datetime import date, timedelta

import pytest
from fastapi import HTTPException

from therapy_backend.models.patient import ParentGuardian
from therapy_backend.models.payment import Payment
from therapy_backend.models.therapy_session import TherapySession
from therapy_backend.models.user import ROLE_PARENT, User
from therapy_backend.routes.parent_routes import (
    ChildCreateRequest,
    ChildPaymentRequest,
    ChildRescheduleCheckRequest,
    ChildRescheduleSessionRequest,
    add_child,
    check_child_reschedule,
    initiate_child_payment,
    list_child_available_slots,
    list_child_sessions,
    list_children,
    reschedule_child_session,
)


def test_add_child_links_child_to_parent(db, parent_user, therapist) -> None:
    child = add_child(
        data=ChildCreateRequest(first_name=' Ayesha ', last_name='Fernando', primary_therapist_id=therapist.id),
        current_user=parent_user,
        db=db,
    )

    assert child.first_name == 'Ayesha'
    assert child.user_id is None
    link = db.query(ParentGuardian).one()
    assert link.user_id == parent_user.id
    assert link.patient_id == child.id
    assert [listed.id for listed in list_children(current_user=parent_user, db=db)] == [child.id]


def test_add_child_rejects_unknown_therapist(db, parent_user) -> None:
    with pytest.raises(HTTPException) as exception_info:
        add_child(
            data=ChildCreateRequest(first_name='Ayesha', last_name='Fernando', primary_therapist_id=999),
            current_user=parent_user,
            db=db,
        )

    assert exception_info.value.status_code == 404


def test_child_slots_use_childs_therapist(db, child, parent_user, add_slot) -> None:
    add_slot(start_time='11:00')

    response = list_child_available_slots(child_id=child.id, slot_date=date(2024, 7, 22), current_user=parent_user, db=db)

    assert [slot.start_time for slot in response.available_slots] == ['11:00']


def test_other_parent_cannot_see_child(db, child, add_slot) -> None:
    stranger = User(email='stranger@example.com', name='Stranger', role=ROLE_PARENT)
    db.add(stranger)
    db.commit()

    with pytest.raises(HTTPException) as exception_info:
        list_child_available_slots(child_id=child.id, slot_date=date(2024, 7, 22), current_user=stranger, db=db)

    assert exception_info.value.status_code == 404
    assert exception_info.value.detail == 'Child not found'


def test_parent_books_paid_session_for_child(db, child, parent_user, add_slot, payhere_credentials) -> None:
    add_slot()

    response = initiate_child_payment(
        data=ChildPaymentRequest.model_validate({'childId': child.id, 'date': '2024-07-22', 'timeSlot': '09:00-09:45'}),
        current_user=parent_user,
        db=db,
    )

    assert response.requires_payment
    assert response.payment_data['return_url'].endswith('/parent/appointments?payment=success')
    payment = db.query(Payment).one()
    assert payment.patient_id == child.id
    assert payment.details['initiatedBy']['userId'] == parent_user.id

    sessions = list_child_sessions(child_id=child.id, current_user=parent_user, db=db)
    assert len(sessions) == 1
    assert sessions[0].payment_status == 'PENDING'


def _book_upcoming_child_session(db, child, parent_user, add_slot):
    upcoming = date.today() + timedelta(days=10)
    old_slot = add_slot(slot_date=upcoming, start_time='09:00', is_free=True)
    new_slot = add_slot(slot_date=upcoming + timedelta(days=1), start_time='09:00', is_free=True)
    response = initiate_child_payment(
        data=ChildPaymentRequest.model_validate({
            'childId': child.id,
            'date': upcoming.isoformat(),
            'timeSlot': '09:00-09:45',
        }),
        current_user=parent_user,
        db=db,
    )
    return response.session.id, old_slot, new_slot


def test_parent_reschedules_child_session(db, child, parent_user, add_slot) -> None:
    session_id, old_slot, new_slot = _book_upcoming_child_session(db, child, parent_user, add_slot)

    response = reschedule_child_session(
        data=ChildRescheduleSessionRequest.model_validate({
            'sessionId': session_id,
            'childId': child.id,
            'date': new_slot.date.isoformat(),
            'timeSlot': '09:00-09:45',
        }),
        current_user=parent_user,
        db=db,
    )

    assert response.message == 'Session rescheduled successfully'
    assert db.query(TherapySession).one().availability_slot_id == new_slot.id
    db.refresh(old_slot)
    db.refresh(new_slot)
    assert not old_slot.is_booked
    assert new_slot.is_booked


def test_other_parent_cannot_reschedule_child_session(db, child, parent_user, add_slot) -> None:
    session_id, old_slot, new_slot = _book_upcoming_child_session(db, child, parent_user, add_slot)
    stranger = User(email='stranger@example.com', name='Stranger', role=ROLE_PARENT)
    db.add(stranger)
    db.commit()

    with pytest.raises(HTTPException) as exception_info:
        reschedule_child_session(
            data=ChildRescheduleSessionRequest.model_validate({
                'sessionId': session_id,
                'date': new_slot.date.isoformat(),
                'timeSlot': '09:00-09:45',
            }),
            current_user=stranger,
            db=db,
        )

    assert exception_info.value.status_code == 404
    db.refresh(new_slot)
    assert not new_slot.is_booked


def test_check_child_reschedule_rejects_cancelled_session(db, child, parent_user, add_slot) -> None:
    session_id, _old_slot, _new_slot = _book_upcoming_child_session(db, child, parent_user, add_slot)
    db.query(TherapySession).one().status = 'CANCELLED'
    db.commit()

    response = check_child_reschedule(
        data=ChildRescheduleCheckRequest.model_validate({'sessionId': session_id}),
        current_user=parent_user,
        db=db,
    )

    assert not response.can_reschedule
    assert response.reason == 'CANCELLED'
