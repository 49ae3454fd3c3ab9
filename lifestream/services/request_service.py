"""
Blood request lifecycle: creation, donor responses, donor selection and
status transitions.

A request starts ``active`` and ends in exactly one of ``fulfilled``,
``cancelled`` or ``expired``. Only donor selection reaches ``fulfilled``.
Every multi-row effect runs in one transaction and relies on the table
constraints for cross-process safety.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Set, Tuple
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from lifestream.core.config import settings
from lifestream.core.exceptions import (
    AuthorizationError,
    DuplicateResponseError,
    InvalidDonorError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from lifestream.models.blood_request import BloodRequest, RequestStatus, Urgency, urgency_rank_expression
from lifestream.models.donation import Donation, DonationStatus
from lifestream.models.donor_response import DonorResponse, ResponseStatus
from lifestream.models.user import DONOR_ROLES, User
from lifestream.schemas.blood_request import BloodRequestCreate
from lifestream.services.identity import Identity
from lifestream.services.persistence import reading, unit_of_work

logger = logging.getLogger(__name__)

BLOOD_TYPES = frozenset({"A+", "A-", "B+", "B-", "AB+", "AB-", "O+", "O-"})

# Transitions a requester may ask for directly
REQUESTABLE_STATUSES = (RequestStatus.CANCELLED, RequestStatus.EXPIRED)


@dataclass
class SelectionOutcome:
    request: BloodRequest
    donation: Donation
    accepted: DonorResponse
    rejected_donor_ids: List[int] = field(default_factory=list)


def _normalize_blood_type(value: Optional[str]) -> str:
    blood_type = (value or "").strip().upper()
    if not blood_type:
        raise ValidationError("Blood type is required")
    if blood_type not in BLOOD_TYPES:
        raise ValidationError(f"Unknown blood type '{value}'")
    return blood_type


def _clamp(limit: int, maximum: int) -> int:
    return max(1, min(limit, maximum))


class RequestService:
    """Coordinates the request → response → selection workflow."""

    @staticmethod
    async def _load_request(db: AsyncSession, request_id: int, for_update: bool = False) -> Optional[BloodRequest]:
        stmt = select(BloodRequest).where(BloodRequest.id == request_id)
        if for_update:
            stmt = stmt.with_for_update(of=BloodRequest)
        result = await db.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    @staticmethod
    async def _load_response(db: AsyncSession, response_id: int) -> DonorResponse:
        result = await db.execute(
            select(DonorResponse)
            .where(DonorResponse.id == response_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    @staticmethod
    async def _find_response(db: AsyncSession, request_id: int, donor_id: int) -> Optional[DonorResponse]:
        result = await db.execute(
            select(DonorResponse).where(
                DonorResponse.request_id == request_id,
                DonorResponse.donor_id == donor_id,
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def create_request(
        db: AsyncSession,
        requester: Identity,
        data: BloodRequestCreate,
        emergency: bool = False,
    ) -> BloodRequest:
        """
        Persist a new ``active`` request.

        Args:
            db: Database session
            requester: Identity of the creating user
            data: Request fields as submitted
            emergency: Force critical urgency and the emergency flag

        Returns:
            The stored request with its requester loaded
        """
        patient_name = (data.patient_name or "").strip()
        if not patient_name:
            raise ValidationError("Patient name is required")
        blood_type = _normalize_blood_type(data.blood_type)
        if data.units_needed is None or data.units_needed <= 0:
            raise ValidationError("Units needed must be a positive number")

        is_emergency = emergency or data.is_emergency
        request = BloodRequest(
            requester_id=requester.id,
            patient_name=patient_name,
            blood_type=blood_type,
            units_needed=data.units_needed,
            hospital=(data.hospital or "").strip() or None,
            urgency=Urgency.CRITICAL if is_emergency else data.urgency,
            latitude=data.location.latitude if data.location else None,
            longitude=data.location.longitude if data.location else None,
            additional_notes=data.additional_notes,
            status=RequestStatus.ACTIVE,
            is_emergency=is_emergency,
        )
        async with unit_of_work(db, "create blood request"):
            db.add(request)
            await db.flush()
            request_id = request.id

        logger.info(f"Blood request {request_id} created by user {requester.id} ({blood_type}, {data.units_needed} units)")
        async with reading("load blood request"):
            return await RequestService._load_request(db, request_id)

    @staticmethod
    async def respond_to_request(
        db: AsyncSession,
        donor: Identity,
        request_id: int,
        message: Optional[str] = None,
        availability: Optional[datetime] = None,
    ) -> Tuple[DonorResponse, BloodRequest]:
        """Record a ``pending`` response from a donor to an active request."""
        if not donor.can_donate:
            raise AuthorizationError("Only donors can respond to blood requests")

        async with unit_of_work(db, "record donor response", on_conflict=DuplicateResponseError):
            request = await RequestService._load_request(db, request_id)
            if request is None or request.status != RequestStatus.ACTIVE:
                raise NotFoundError("Blood request not found or no longer active")
            if request.requester_id == donor.id:
                raise ValidationError("You cannot respond to your own request")
            if await RequestService._find_response(db, request_id, donor.id) is not None:
                raise DuplicateResponseError()

            response = DonorResponse(
                request_id=request_id,
                donor_id=donor.id,
                message=message,
                availability=availability,
                status=ResponseStatus.PENDING,
            )
            db.add(response)
            await db.flush()
            response_id = response.id

        logger.info(f"Donor {donor.id} responded to request {request_id} (response {response_id})")
        async with reading("load donor response"):
            return await RequestService._load_response(db, response_id), request

    @staticmethod
    async def select_donor(
        db: AsyncSession,
        requester: Identity,
        request_id: int,
        donor_id: int,
    ) -> SelectionOutcome:
        """
        Accept one donor's response and close the request.

        In a single transaction: lock the request row, accept the chosen
        response, reject the other pending ones, flip the request to
        ``fulfilled`` with a compare-and-set and schedule one Donation.
        Nothing is visible unless all of it commits.

        Raises:
            NotFoundError: request does not exist
            AuthorizationError: caller does not own the request
            InvalidStateError: request is not active, or a concurrent change won
            InvalidDonorError: no pending response from a donor with that id
        """
        if db.get_bind().dialect.name == "postgresql" and not db.in_transaction():
            await db.connection(execution_options={"isolation_level": "SERIALIZABLE"})

        async with unit_of_work(db, "select donor", on_conflict=InvalidStateError):
            request = await RequestService._load_request(db, request_id, for_update=True)
            if request is None:
                raise NotFoundError("Blood request not found")
            if request.requester_id != requester.id:
                raise AuthorizationError("Only the requester can select a donor")
            if request.status != RequestStatus.ACTIVE:
                raise InvalidStateError("Blood request is no longer active")

            result = await db.execute(
                select(DonorResponse)
                .join(User, DonorResponse.donor_id == User.id)
                .where(
                    DonorResponse.request_id == request_id,
                    DonorResponse.donor_id == donor_id,
                    DonorResponse.status == ResponseStatus.PENDING,
                    User.role.in_(DONOR_ROLES),
                )
            )
            chosen = result.scalar_one_or_none()
            if chosen is None:
                raise InvalidDonorError()
            chosen.status = ResponseStatus.ACCEPTED

            result = await db.execute(
                select(DonorResponse).where(
                    DonorResponse.request_id == request_id,
                    DonorResponse.status == ResponseStatus.PENDING,
                    DonorResponse.id != chosen.id,
                )
            )
            rejected_donor_ids = []
            for other in result.scalars().all():
                other.status = ResponseStatus.REJECTED
                rejected_donor_ids.append(other.donor_id)
            await db.flush()

            flipped = await db.execute(
                update(BloodRequest)
                .where(BloodRequest.id == request_id, BloodRequest.status == RequestStatus.ACTIVE)
                .values(status=RequestStatus.FULFILLED)
                .execution_options(synchronize_session=False)
            )
            if flipped.rowcount != 1:
                raise InvalidStateError("Blood request is no longer active")

            donation = Donation(
                request_id=request_id,
                donor_id=donor_id,
                status=DonationStatus.SCHEDULED,
            )
            db.add(donation)
            await db.flush()
            donation_id = donation.id
            accepted_id = chosen.id

        logger.info(
            f"Request {request_id}: donor {donor_id} selected by {requester.id}, "
            f"{len(rejected_donor_ids)} other response(s) rejected, donation {donation_id}"
        )
        async with reading("load donor selection"):
            request = await RequestService._load_request(db, request_id)
            accepted = await RequestService._load_response(db, accepted_id)
            result = await db.execute(
                select(Donation).where(Donation.id == donation_id).execution_options(populate_existing=True)
            )
            donation = result.scalar_one()
        return SelectionOutcome(
            request=request,
            donation=donation,
            accepted=accepted,
            rejected_donor_ids=rejected_donor_ids,
        )

    @staticmethod
    async def update_status(
        db: AsyncSession,
        requester: Identity,
        request_id: int,
        new_status: str,
    ) -> BloodRequest:
        """Move an active request to ``cancelled`` or ``expired``."""
        try:
            target = RequestStatus((new_status or "").strip().lower())
        except ValueError:
            raise ValidationError(f"Unknown status '{new_status}'")
        if target == RequestStatus.FULFILLED:
            raise ValidationError("A request is fulfilled by selecting a donor")
        if target not in REQUESTABLE_STATUSES:
            raise ValidationError("Status must be 'cancelled' or 'expired'")

        async with unit_of_work(db, "update request status", on_conflict=InvalidStateError):
            request = await RequestService._load_request(db, request_id, for_update=True)
            if request is None:
                raise NotFoundError("Blood request not found")
            if request.requester_id != requester.id:
                raise AuthorizationError("Only the requester can update this request")
            if request.status != RequestStatus.ACTIVE:
                raise InvalidStateError(f"Blood request is already {request.status.value}")

            flipped = await db.execute(
                update(BloodRequest)
                .where(BloodRequest.id == request_id, BloodRequest.status == RequestStatus.ACTIVE)
                .values(status=target)
                .execution_options(synchronize_session=False)
            )
            if flipped.rowcount != 1:
                raise InvalidStateError("Blood request is no longer active")

        logger.info(f"Request {request_id} marked {target.value} by user {requester.id}")
        async with reading("load blood request"):
            return await RequestService._load_request(db, request_id)

    @staticmethod
    async def cancel_request(db: AsyncSession, requester: Identity, request_id: int) -> BloodRequest:
        return await RequestService.update_status(db, requester, request_id, RequestStatus.CANCELLED.value)

    @staticmethod
    async def participant_ids(db: AsyncSession, request: BloodRequest) -> Set[int]:
        """The requester plus every donor who responded to the request."""
        async with reading("load request participants"):
            result = await db.execute(
                select(DonorResponse.donor_id).where(DonorResponse.request_id == request.id)
            )
            return {request.requester_id, *result.scalars().all()}

    @staticmethod
    async def list_active_requests(
        db: AsyncSession,
        blood_type: Optional[str] = None,
        urgency: Optional[Urgency] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[BloodRequest]:
        """Active requests, critical first, newest first within an urgency."""
        stmt = select(BloodRequest).where(BloodRequest.status == RequestStatus.ACTIVE)
        if blood_type:
            stmt = stmt.where(BloodRequest.blood_type == _normalize_blood_type(blood_type))
        if urgency:
            stmt = stmt.where(BloodRequest.urgency == urgency)
        stmt = stmt.order_by(
            urgency_rank_expression().asc(),
            BloodRequest.created_at.desc(),
            BloodRequest.id.desc(),
        ).offset(max(offset, 0)).limit(_clamp(limit, settings.ACTIVE_REQUESTS_MAX_LIMIT))

        async with reading("list active requests"):
            result = await db.execute(stmt)
            return list(result.scalars().all())

    @staticmethod
    async def list_active_emergencies(db: AsyncSession, limit: Optional[int] = None) -> List[BloodRequest]:
        stmt = (
            select(BloodRequest)
            .where(BloodRequest.status == RequestStatus.ACTIVE, BloodRequest.is_emergency.is_(True))
            .order_by(BloodRequest.created_at.desc(), BloodRequest.id.desc())
            .limit(_clamp(limit or settings.EMERGENCY_LIST_LIMIT, settings.EMERGENCY_LIST_LIMIT))
        )
        async with reading("list emergency requests"):
            result = await db.execute(stmt)
            return list(result.scalars().all())

    @staticmethod
    async def get_request(db: AsyncSession, request_id: int) -> BloodRequest:
        async with reading("load blood request"):
            request = await RequestService._load_request(db, request_id)
        if request is None:
            raise NotFoundError("Blood request not found")
        return request

    @staticmethod
    async def get_request_details(db: AsyncSession, request_id: int) -> Tuple[BloodRequest, List[DonorResponse]]:
        """A request together with every response to it, oldest first."""
        request = await RequestService.get_request(db, request_id)
        async with reading("load request responses"):
            result = await db.execute(
                select(DonorResponse)
                .where(DonorResponse.request_id == request_id)
                .order_by(DonorResponse.created_at.asc(), DonorResponse.id.asc())
            )
            return request, list(result.scalars().all())

    @staticmethod
    async def get_request_responses(db: AsyncSession, owner: Identity, request_id: int) -> List[DonorResponse]:
        request, responses = await RequestService.get_request_details(db, request_id)
        if request.requester_id != owner.id:
            raise AuthorizationError("Only the requester can view responses")
        return responses

    @staticmethod
    async def get_existing_response(db: AsyncSession, donor: Identity, request_id: int) -> Optional[DonorResponse]:
        async with reading("load donor response"):
            return await RequestService._find_response(db, request_id, donor.id)

    @staticmethod
    async def get_user_request_history(
        db: AsyncSession,
        user: Identity,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Tuple[BloodRequest, int]]:
        """Requests created by the user, newest first, with their response counts."""
        response_count = (
            select(func.count(DonorResponse.id))
            .where(DonorResponse.request_id == BloodRequest.id)
            .correlate(BloodRequest)
            .scalar_subquery()
        )
        stmt = (
            select(BloodRequest, response_count)
            .where(BloodRequest.requester_id == user.id)
            .order_by(BloodRequest.created_at.desc(), BloodRequest.id.desc())
            .offset(max(offset, 0))
            .limit(_clamp(limit, settings.ACTIVE_REQUESTS_MAX_LIMIT))
        )
        async with reading("load request history"):
            result = await db.execute(stmt)
            return [(request, count or 0) for request, count in result.all()]

    @staticmethod
    async def get_user_donation_history(
        db: AsyncSession,
        user: Identity,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Donation]:
        stmt = (
            select(Donation)
            .where(Donation.donor_id == user.id)
            .order_by(Donation.created_at.desc(), Donation.id.desc())
            .offset(max(offset, 0))
            .limit(_clamp(limit, settings.ACTIVE_REQUESTS_MAX_LIMIT))
        )
        async with reading("load donation history"):
            result = await db.execute(stmt)
            return list(result.scalars().all())


request_service = RequestService()
