"""Request lifecycle, donor responses and donor selection."""
import asyncio

import pytest
from sqlalchemy import func, select

from conftest import request_data
from lifestream.core.exceptions import (
    AuthorizationError,
    ConflictError,
    DuplicateResponseError,
    InvalidDonorError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from lifestream.models import BloodRequest, Donation, DonorResponse, RequestStatus, ResponseStatus, Urgency, UserRole
from lifestream.services.request_service import RequestService, request_service


@pytest.fixture
def active_request(call, requester):
    return call(request_service.create_request, requester, request_data())


def _rows(session_factory, model, **filters):
    async def _load():
        async with session_factory() as db:
            result = await db.execute(select(model).filter_by(**filters))
            return list(result.scalars().all())
    return asyncio.run(_load())


def test_create_request(call, requester):
    request = call(request_service.create_request, requester, request_data(blood_type="ab-"))

    assert request.id is not None
    assert request.status == RequestStatus.ACTIVE
    assert request.blood_type == "AB-"
    assert request.urgency == Urgency.HIGH
    assert request.requester_name == "Alice Requester"
    assert request.is_emergency is False


def test_create_emergency_forces_critical(call, requester):
    request = call(request_service.create_request, requester, request_data(urgency="low"), emergency=True)
    assert request.urgency == Urgency.CRITICAL
    assert request.is_emergency is True


@pytest.mark.parametrize("overrides", [
    {"patient_name": None},
    {"patient_name": "   "},
    {"blood_type": None},
    {"blood_type": "Z+"},
    {"units_needed": None},
    {"units_needed": 0},
    {"units_needed": -3},
])
def test_create_request_validation(call, requester, session_factory, overrides):
    with pytest.raises(ValidationError):
        call(request_service.create_request, requester, request_data(**overrides))
    assert _rows(session_factory, BloodRequest) == []


def test_active_requests_canonical_order(call, requester):
    low = call(request_service.create_request, requester, request_data(urgency="low"))
    critical_old = call(request_service.create_request, requester, request_data(urgency="critical"))
    medium = call(request_service.create_request, requester, request_data(urgency="medium"))
    critical_new = call(request_service.create_request, requester, request_data(urgency="critical"))
    cancelled = call(request_service.create_request, requester, request_data(urgency="critical"))
    call(request_service.cancel_request, requester, cancelled.id)

    listed = call(request_service.list_active_requests)

    assert [r.id for r in listed] == [critical_new.id, critical_old.id, medium.id, low.id]


def test_active_requests_filters(call, requester):
    call(request_service.create_request, requester, request_data(blood_type="A+"))
    o_neg = call(request_service.create_request, requester, request_data(blood_type="O-", urgency="low"))

    assert [r.id for r in call(request_service.list_active_requests, blood_type="o-")] == [o_neg.id]
    assert [r.id for r in call(request_service.list_active_requests, urgency=Urgency.LOW)] == [o_neg.id]


def test_respond_to_request(call, active_request, donor):
    response, request = call(request_service.respond_to_request, donor, active_request.id, "can help")

    assert response.status == ResponseStatus.PENDING
    assert response.donor_name == "Bob Donor"
    assert request.requester_id == active_request.requester_id


def test_recipient_cannot_respond(call, active_request, make_user):
    recipient = make_user(role=UserRole.RECIPIENT)
    with pytest.raises(AuthorizationError):
        call(request_service.respond_to_request, recipient, active_request.id, "hi")


def test_cannot_respond_to_own_request(call, make_user):
    both = make_user(role=UserRole.BOTH)
    request = call(request_service.create_request, both, request_data())
    with pytest.raises(ValidationError):
        call(request_service.respond_to_request, both, request.id, "me")


def test_respond_to_missing_or_closed_request(call, active_request, requester, donor):
    with pytest.raises(NotFoundError):
        call(request_service.respond_to_request, donor, 424242, "hi")

    call(request_service.cancel_request, requester, active_request.id)
    with pytest.raises(NotFoundError):
        call(request_service.respond_to_request, donor, active_request.id, "hi")


def test_duplicate_response_rejected(call, session_factory, active_request, donor):
    call(request_service.respond_to_request, donor, active_request.id, "can help")

    with pytest.raises(DuplicateResponseError) as excinfo:
        call(request_service.respond_to_request, donor, active_request.id, "can help")

    assert isinstance(excinfo.value, ConflictError)
    assert len(_rows(session_factory, DonorResponse, request_id=active_request.id, donor_id=donor.id)) == 1


def test_unique_constraint_decides_when_check_is_raced(call, session_factory, active_request, donor, monkeypatch):
    # Both submissions pass the existence check, as when they run concurrently
    async def nothing_found(db, request_id, donor_id):
        return None
    monkeypatch.setattr(RequestService, "_find_response", staticmethod(nothing_found))

    call(request_service.respond_to_request, donor, active_request.id, "first")
    with pytest.raises(DuplicateResponseError):
        call(request_service.respond_to_request, donor, active_request.id, "second")

    rows = _rows(session_factory, DonorResponse, request_id=active_request.id)
    assert [r.message for r in rows] == ["first"]


def test_select_donor_commits_all_effects(call, session_factory, active_request, requester, make_user):
    donors = [make_user(role=UserRole.DONOR) for _ in range(3)]
    for d in donors:
        call(request_service.respond_to_request, d, active_request.id, f"from {d.id}")
    chosen = donors[1]

    outcome = call(request_service.select_donor, requester, active_request.id, chosen.id)

    assert outcome.request.status == RequestStatus.FULFILLED
    assert outcome.accepted.donor_id == chosen.id
    assert sorted(outcome.rejected_donor_ids) == sorted([donors[0].id, donors[2].id])
    assert outcome.donation.donor_id == chosen.id
    assert outcome.donation.patient_name == "Jane Patient"

    responses = _rows(session_factory, DonorResponse, request_id=active_request.id)
    statuses = {r.donor_id: r.status for r in responses}
    assert [s for s in statuses.values()].count(ResponseStatus.ACCEPTED) == 1
    assert statuses[chosen.id] == ResponseStatus.ACCEPTED
    assert statuses[donors[0].id] == ResponseStatus.REJECTED
    assert statuses[donors[2].id] == ResponseStatus.REJECTED
    assert len(_rows(session_factory, Donation, request_id=active_request.id)) == 1
    assert _rows(session_factory, BloodRequest, id=active_request.id)[0].status == RequestStatus.FULFILLED


def test_second_selection_fails_invalid_state(call, session_factory, active_request, requester, donor, make_user):
    other = make_user(role=UserRole.DONOR)
    call(request_service.respond_to_request, donor, active_request.id, "b")
    call(request_service.respond_to_request, other, active_request.id, "c")
    call(request_service.select_donor, requester, active_request.id, donor.id)

    with pytest.raises(InvalidStateError):
        call(request_service.select_donor, requester, active_request.id, other.id)

    assert len(_rows(session_factory, Donation, request_id=active_request.id)) == 1


def test_select_donor_requires_owner(call, session_factory, active_request, donor, make_user):
    call(request_service.respond_to_request, donor, active_request.id, "b")
    stranger = make_user(role=UserRole.RECIPIENT)

    with pytest.raises(AuthorizationError):
        call(request_service.select_donor, stranger, active_request.id, donor.id)

    assert _rows(session_factory, BloodRequest, id=active_request.id)[0].status == RequestStatus.ACTIVE


def test_select_donor_without_pending_response(call, session_factory, active_request, requester, donor):
    with pytest.raises(InvalidDonorError):
        call(request_service.select_donor, requester, active_request.id, donor.id)

    assert _rows(session_factory, BloodRequest, id=active_request.id)[0].status == RequestStatus.ACTIVE
    assert _rows(session_factory, Donation) == []


def test_select_donor_missing_request(call, requester, donor):
    with pytest.raises(NotFoundError):
        call(request_service.select_donor, requester, 999, donor.id)


def test_select_donor_rolls_back_on_failure(call, session_factory, active_request, requester, donor, make_user):
    other = make_user(role=UserRole.DONOR)
    call(request_service.respond_to_request, donor, active_request.id, "b")
    call(request_service.respond_to_request, other, active_request.id, "c")

    async def existing_donation():
        async with session_factory() as db:
            db.add(Donation(request_id=active_request.id, donor_id=other.id))
            await db.commit()
    asyncio.run(existing_donation())

    with pytest.raises(InvalidStateError):
        call(request_service.select_donor, requester, active_request.id, donor.id)

    statuses = {r.donor_id: r.status for r in _rows(session_factory, DonorResponse, request_id=active_request.id)}
    assert statuses == {donor.id: ResponseStatus.PENDING, other.id: ResponseStatus.PENDING}
    assert _rows(session_factory, BloodRequest, id=active_request.id)[0].status == RequestStatus.ACTIVE


@pytest.mark.parametrize("status", ["cancelled", "expired", " Cancelled "])
def test_update_status(call, active_request, requester, status):
    request = call(request_service.update_status, requester, active_request.id, status)
    assert request.status.value == status.strip().lower()


@pytest.mark.parametrize("status", ["fulfilled", "active", "archived", ""])
def test_update_status_rejects_other_targets(call, active_request, requester, status):
    with pytest.raises(ValidationError):
        call(request_service.update_status, requester, active_request.id, status)


def test_terminal_status_has_no_exit(call, active_request, requester):
    call(request_service.cancel_request, requester, active_request.id)
    with pytest.raises(InvalidStateError):
        call(request_service.update_status, requester, active_request.id, "expired")


def test_update_status_requires_owner(call, active_request, donor):
    with pytest.raises(AuthorizationError):
        call(request_service.cancel_request, donor, active_request.id)


def test_participant_ids(call, active_request, requester, donor):
    call(request_service.respond_to_request, donor, active_request.id, "b")
    assert call(request_service.participant_ids, active_request) == {requester.id, donor.id}


def test_request_history_and_donations(call, requester, donor, make_user):
    first = call(request_service.create_request, requester, request_data())
    second = call(request_service.create_request, requester, request_data(patient_name="John"))
    call(request_service.respond_to_request, donor, first.id, "b")
    call(request_service.respond_to_request, make_user(role=UserRole.BOTH), first.id, "c")
    call(request_service.select_donor, requester, first.id, donor.id)

    history = call(request_service.get_user_request_history, requester)
    assert [(r.id, count) for r, count in history] == [(second.id, 0), (first.id, 2)]

    donations = call(request_service.get_user_donation_history, donor)
    assert [d.request_id for d in donations] == [first.id]
    assert donations[0].hospital == "City General"


def test_request_details_and_responses(call, active_request, requester, donor):
    call(request_service.respond_to_request, donor, active_request.id, "b")

    request, responses = call(request_service.get_request_details, active_request.id)
    assert request.id == active_request.id
    assert [r.donor_id for r in responses] == [donor.id]

    assert len(call(request_service.get_request_responses, requester, active_request.id)) == 1
    with pytest.raises(AuthorizationError):
        call(request_service.get_request_responses, donor, active_request.id)

    assert call(request_service.get_existing_response, donor, active_request.id).message == "b"
    assert call(request_service.get_existing_response, requester, active_request.id) is None
