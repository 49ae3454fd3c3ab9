from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional
import logging
from lifestream.api.deps import get_connection_manager, get_current_identity, get_db
from lifestream.core.config import settings
from lifestream.database import MAX_RECORD_ID
from lifestream.models.blood_request import Urgency
from lifestream.realtime import notifications
from lifestream.realtime.manager import ConnectionManager
from lifestream.schemas.common import RecordIdPath
from lifestream.schemas.blood_request import (
    BloodRequestCreate,
    BloodRequestResponse,
    DonationResponse,
    DonorResponseCreate,
    DonorResponseOut,
    ExistingResponseCheck,
    RequestDetailsResponse,
    RequestHistoryItem,
    RequestStatusUpdate,
    SelectDonorRequest,
    SelectDonorResponse,
)
from lifestream.services.identity import Identity
from lifestream.services.request_service import request_service

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/", response_model=BloodRequestResponse, status_code=status.HTTP_201_CREATED)
async def create_blood_request(
    data: BloodRequestCreate,
    db: AsyncSession = Depends(get_db),
    current_user: Identity = Depends(get_current_identity),
    manager: ConnectionManager = Depends(get_connection_manager),
):
    """Create a blood request and announce it to every connected session."""
    request = await request_service.create_request(db, current_user, data)
    await notifications.notify_new_request(manager, request)
    return request


@router.post("/emergency", response_model=BloodRequestResponse, status_code=status.HTTP_201_CREATED)
async def create_emergency_request(
    data: BloodRequestCreate,
    db: AsyncSession = Depends(get_db),
    current_user: Identity = Depends(get_current_identity),
    manager: ConnectionManager = Depends(get_connection_manager),
):
    """Create a critical emergency request."""
    request = await request_service.create_request(db, current_user, data, emergency=True)
    await notifications.notify_new_request(manager, request)
    return request


@router.get("/active", response_model=List[BloodRequestResponse])
async def list_active_requests(
    blood_type: Optional[str] = None,
    urgency: Optional[Urgency] = None,
    limit: int = Query(50, ge=1, le=settings.ACTIVE_REQUESTS_MAX_LIMIT),
    offset: int = Query(0, ge=0, le=MAX_RECORD_ID),
    db: AsyncSession = Depends(get_db),
    current_user: Identity = Depends(get_current_identity),
):
    """Active requests, critical first, then newest first."""
    return await request_service.list_active_requests(db, blood_type, urgency, limit, offset)


@router.get("/emergency/active", response_model=List[BloodRequestResponse])
async def list_active_emergencies(
    db: AsyncSession = Depends(get_db),
    current_user: Identity = Depends(get_current_identity),
):
    return await request_service.list_active_emergencies(db)


@router.get("/history", response_model=List[RequestHistoryItem])
async def get_request_history(
    limit: int = Query(50, ge=1, le=settings.ACTIVE_REQUESTS_MAX_LIMIT),
    offset: int = Query(0, ge=0, le=MAX_RECORD_ID),
    db: AsyncSession = Depends(get_db),
    current_user: Identity = Depends(get_current_identity),
):
    """Requests created by the current user with their response counts."""
    rows = await request_service.get_user_request_history(db, current_user, limit, offset)
    return [
        RequestHistoryItem(**BloodRequestResponse.model_validate(request).model_dump(), response_count=count)
        for request, count in rows
    ]


@router.get("/donations", response_model=List[DonationResponse])
async def get_donation_history(
    limit: int = Query(50, ge=1, le=settings.ACTIVE_REQUESTS_MAX_LIMIT),
    offset: int = Query(0, ge=0, le=MAX_RECORD_ID),
    db: AsyncSession = Depends(get_db),
    current_user: Identity = Depends(get_current_identity),
):
    return await request_service.get_user_donation_history(db, current_user, limit, offset)


@router.get("/{request_id}", response_model=RequestDetailsResponse)
async def get_request_details(
    request_id: RecordIdPath,
    db: AsyncSession = Depends(get_db),
    current_user: Identity = Depends(get_current_identity),
):
    request, responses = await request_service.get_request_details(db, request_id)
    return RequestDetailsResponse(
        request=BloodRequestResponse.model_validate(request),
        responses=[DonorResponseOut.model_validate(r) for r in responses],
    )


@router.put("/{request_id}/status", response_model=BloodRequestResponse)
async def update_request_status(
    request_id: RecordIdPath,
    update: RequestStatusUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: Identity = Depends(get_current_identity),
    manager: ConnectionManager = Depends(get_connection_manager),
):
    """Cancel or expire one of the current user's active requests."""
    request = await request_service.update_status(db, current_user, request_id, update.status)
    participants = None
    if settings.REQUEST_STATUS_BROADCAST_SCOPE == "participants":
        participants = await request_service.participant_ids(db, request)
    await notifications.notify_status_updated(manager, request, current_user.id, participants)
    return request


@router.delete("/{request_id}", response_model=BloodRequestResponse)
async def cancel_request(
    request_id: RecordIdPath,
    db: AsyncSession = Depends(get_db),
    current_user: Identity = Depends(get_current_identity),
    manager: ConnectionManager = Depends(get_connection_manager),
):
    request = await request_service.cancel_request(db, current_user, request_id)
    participants = None
    if settings.REQUEST_STATUS_BROADCAST_SCOPE == "participants":
        participants = await request_service.participant_ids(db, request)
    await notifications.notify_status_updated(manager, request, current_user.id, participants)
    return request


@router.post("/{request_id}/respond", response_model=DonorResponseOut, status_code=status.HTTP_201_CREATED)
async def respond_to_request(
    request_id: RecordIdPath,
    data: DonorResponseCreate,
    db: AsyncSession = Depends(get_db),
    current_user: Identity = Depends(get_current_identity),
    manager: ConnectionManager = Depends(get_connection_manager),
):
    """Offer to donate for an active request; the requester is notified if online."""
    response, request = await request_service.respond_to_request(
        db, current_user, request_id, data.message, data.availability
    )
    await notifications.notify_donor_available(manager, response, request)
    return response


@router.get("/{request_id}/responses", response_model=List[DonorResponseOut])
async def get_request_responses(
    request_id: RecordIdPath,
    db: AsyncSession = Depends(get_db),
    current_user: Identity = Depends(get_current_identity),
):
    return await request_service.get_request_responses(db, current_user, request_id)


@router.get("/{request_id}/existing-response", response_model=ExistingResponseCheck)
async def get_existing_response(
    request_id: RecordIdPath,
    db: AsyncSession = Depends(get_db),
    current_user: Identity = Depends(get_current_identity),
):
    response = await request_service.get_existing_response(db, current_user, request_id)
    return ExistingResponseCheck(
        has_responded=response is not None,
        response=DonorResponseOut.model_validate(response) if response is not None else None,
    )


@router.post("/{request_id}/select-donor", response_model=SelectDonorResponse)
async def select_donor(
    request_id: RecordIdPath,
    data: SelectDonorRequest,
    db: AsyncSession = Depends(get_db),
    current_user: Identity = Depends(get_current_identity),
    manager: ConnectionManager = Depends(get_connection_manager),
):
    """
    Accept one donor's response, reject the rest and schedule the donation.

    All effects commit together; on any failure nothing changes.
    """
    outcome = await request_service.select_donor(db, current_user, request_id, data.donor_id)
    participants = await request_service.participant_ids(db, outcome.request)
    await notifications.notify_donor_selected(manager, outcome, current_user.id, participants)
    return SelectDonorResponse(
        request=BloodRequestResponse.model_validate(outcome.request),
        donation=DonationResponse.model_validate(outcome.donation),
        rejected_donor_ids=outcome.rejected_donor_ids,
    )
